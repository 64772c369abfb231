"""Tests for the message pipeline: ordering, receipts, unread counts, soft delete."""

import pytest
from sqlalchemy import func, select

from casechat.core.config import settings
from casechat.core.errors import AccessDenied, Forbidden, InvalidArgument, NotFound
from casechat.db.enums import MessageType
from casechat.db.models import MessageReadReceipt
from casechat.services import conversation_service, message_service
from casechat.services.message_service import Upload


@pytest.fixture
def conversation(db, case, consultant, teammate):
    return conversation_service.create_conversation(
        db,
        case_id=case.id,
        title="Documents",
        creator_id=consultant.id,
        creator_role=consultant.role,
        participant_ids=[teammate.id],
    )


@pytest.fixture
def storage_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "STORAGE_BACKEND", "local")
    monkeypatch.setattr(settings, "LOCAL_STORAGE_PATH", str(tmp_path))
    return tmp_path


def _receipt_count(db, user_id):
    return db.scalar(
        select(func.count()).select_from(MessageReadReceipt).where(
            MessageReadReceipt.user_id == user_id
        )
    )


# =============================================================================
# Send
# =============================================================================

def test_message_ids_increase_in_send_order(db, conversation, consultant, teammate):
    sent = [
        message_service.send_message(db, conversation.id, consultant.id, content="one"),
        message_service.send_message(db, conversation.id, teammate.id, content="two"),
        message_service.send_message(db, conversation.id, consultant.id, content="three"),
    ]

    ids = [m.id for m in sent]
    assert ids == sorted(ids)
    assert len(set(ids)) == 3

    page = message_service.get_messages(db, conversation.id, teammate.id)
    assert [m.content for m in page] == ["one", "two", "three"]


def test_send_message_sets_recency_and_sender(db, conversation, consultant):
    sent = message_service.send_message(db, conversation.id, consultant.id, content="hello")

    assert sent.sender.id == consultant.id
    assert sent.sender.name == "Alice Consultant"
    assert sent.is_read_by_me is True
    detail = conversation_service.get_conversation(db, conversation.id, consultant.id)
    assert detail.last_message_at is not None
    assert detail.last_message == "hello"


def test_send_message_requires_participant(db, conversation, outsider):
    with pytest.raises(AccessDenied):
        message_service.send_message(db, conversation.id, outsider.id, content="let me in")


def test_send_message_validation(db, conversation, consultant):
    with pytest.raises(InvalidArgument):
        message_service.send_message(db, conversation.id, consultant.id, content="   ")
    with pytest.raises(InvalidArgument):
        message_service.send_message(
            db, conversation.id, consultant.id, content="x", message_type="system"
        )
    with pytest.raises(InvalidArgument):
        message_service.send_message(
            db, conversation.id, consultant.id, content="x", message_type="video"
        )
    with pytest.raises(InvalidArgument):
        message_service.send_message(
            db, conversation.id, consultant.id, content="x", message_type="file"
        )


def test_send_file_message_stores_attachment(db, conversation, consultant, storage_dir):
    sent = message_service.send_message(
        db,
        conversation.id,
        consultant.id,
        content="see attached",
        attachment=Upload(data=b"%PDF-1.4 test", filename="scan.pdf", content_type="application/pdf"),
    )

    assert sent.message_type == MessageType.FILE
    assert sent.content == "see attached"
    assert sent.file_name == "scan.pdf"
    assert sent.file_size == len(b"%PDF-1.4 test")
    assert sent.file_type == "application/pdf"
    assert sent.file_url.startswith(settings.LOCAL_STORAGE_URL_PREFIX)
    assert len(list((storage_dir / "conversations").iterdir())) == 1


def test_attachment_makes_file_message_whatever_type_is_requested(
    db, conversation, consultant, storage_dir
):
    sent = message_service.send_message(
        db,
        conversation.id,
        consultant.id,
        content="caption",
        message_type=MessageType.TEXT,
        attachment=Upload(data=b"hello", filename="notes.txt", content_type="text/plain"),
    )

    assert sent.message_type == MessageType.FILE
    assert sent.content == "caption"
    assert sent.file_name == "notes.txt"


def test_send_file_message_rejects_disallowed_type(db, conversation, consultant, storage_dir):
    with pytest.raises(InvalidArgument):
        message_service.send_message(
            db,
            conversation.id,
            consultant.id,
            attachment=Upload(data=b"MZ", filename="tool.exe", content_type="application/octet-stream"),
        )
    assert not (storage_dir / "conversations").exists()


# =============================================================================
# Read receipts and unread counts
# =============================================================================

def test_unread_count_tracks_receipts(db, conversation, consultant, teammate):
    for text in ("a", "b", "c"):
        message_service.send_message(db, conversation.id, consultant.id, content=text)

    assert message_service.get_unread_count(db, teammate.id) == 3
    assert message_service.get_unread_count(db, consultant.id) == 0

    page = message_service.get_messages(db, conversation.id, teammate.id)
    assert [m.is_read_by_me for m in page] == [False, False, False]
    assert message_service.get_unread_count(db, teammate.id) == 0

    # Second fetch sees its own earlier reads
    again = message_service.get_messages(db, conversation.id, teammate.id)
    assert [m.is_read_by_me for m in again] == [True, True, True]


def test_get_messages_does_not_write_receipts_for_own_messages(db, conversation, consultant):
    message_service.send_message(db, conversation.id, consultant.id, content="mine")

    page = message_service.get_messages(db, conversation.id, consultant.id)

    assert page[0].is_read_by_me is True
    assert _receipt_count(db, consultant.id) == 0


def test_get_messages_paginates_backwards(db, conversation, consultant, teammate):
    sent = [
        message_service.send_message(db, conversation.id, consultant.id, content=str(i))
        for i in range(5)
    ]

    latest = message_service.get_messages(db, conversation.id, teammate.id, limit=2)
    assert [m.content for m in latest] == ["3", "4"]

    older = message_service.get_messages(
        db, conversation.id, teammate.id, before_id=latest[0].id, limit=2
    )
    assert [m.content for m in older] == ["1", "2"]

    oldest = message_service.get_messages(
        db, conversation.id, teammate.id, before_id=sent[0].id
    )
    assert oldest == []

    # Only fetched messages were marked read
    assert message_service.get_unread_count(db, teammate.id) == 1


def test_get_messages_clamps_limit(db, conversation, teammate, monkeypatch):
    monkeypatch.setattr(settings, "MESSAGE_PAGE_MAX", 2)
    with pytest.raises(InvalidArgument):
        message_service.get_messages(db, conversation.id, teammate.id, limit=0)
    assert message_service.get_messages(db, conversation.id, teammate.id, limit=500) == []


def test_mark_message_read_is_idempotent(db, conversation, consultant, teammate):
    sent = message_service.send_message(db, conversation.id, consultant.id, content="ack me")

    first = message_service.mark_message_read(db, sent.id, conversation.id, teammate.id)
    second = message_service.mark_message_read(db, sent.id, conversation.id, teammate.id)

    assert first == second
    assert _receipt_count(db, teammate.id) == 1
    assert message_service.get_unread_count(db, teammate.id) == 0


def test_mark_message_read_checks_conversation(db, conversation, consultant, teammate, outsider):
    sent = message_service.send_message(db, conversation.id, consultant.id, content="x")

    with pytest.raises(AccessDenied):
        message_service.mark_message_read(db, sent.id, conversation.id, outsider.id)
    with pytest.raises(NotFound):
        message_service.mark_message_read(db, sent.id + 100, conversation.id, teammate.id)


def test_unread_count_spans_conversations(db, case, conversation, consultant, teammate):
    other = conversation_service.create_conversation(
        db,
        case_id=case.id,
        title="Other",
        creator_id=teammate.id,
        creator_role=teammate.role,
        participant_ids=[consultant.id],
    )
    message_service.send_message(db, conversation.id, teammate.id, content="1")
    message_service.send_message(db, other.id, teammate.id, content="2")
    message_service.send_message(db, other.id, teammate.id, content="3")

    assert message_service.get_unread_count(db, consultant.id) == 3
    summaries = {
        c.id: c.unread_count
        for c in conversation_service.get_recent_conversations(db, consultant.id)
    }
    assert summaries == {conversation.id: 1, other.id: 2}


# =============================================================================
# Soft delete
# =============================================================================

def test_delete_message_is_soft(db, conversation, consultant, teammate):
    keep_before = message_service.send_message(db, conversation.id, consultant.id, content="a")
    target = message_service.send_message(db, conversation.id, consultant.id, content="secret")
    keep_after = message_service.send_message(db, conversation.id, consultant.id, content="c")

    deleted = message_service.delete_message(db, target.id, conversation.id, consultant.id)
    assert deleted.is_deleted is True
    assert deleted.content == settings.DELETED_MESSAGE_PLACEHOLDER

    page = message_service.get_messages(db, conversation.id, teammate.id)
    assert [m.id for m in page] == [keep_before.id, target.id, keep_after.id]
    assert page[1].content == settings.DELETED_MESSAGE_PLACEHOLDER
    assert page[1].is_deleted is True


def test_delete_message_only_by_sender(db, conversation, consultant, teammate):
    target = message_service.send_message(db, conversation.id, consultant.id, content="mine")
    with pytest.raises(Forbidden):
        message_service.delete_message(db, target.id, conversation.id, teammate.id)


def test_delete_message_clears_attachment(db, conversation, consultant, storage_dir):
    sent = message_service.send_message(
        db,
        conversation.id,
        consultant.id,
        attachment=Upload(data=b"hello", filename="notes.txt", content_type="text/plain"),
    )

    deleted = message_service.delete_message(db, sent.id, conversation.id, consultant.id)

    assert deleted.file_url is None
    assert deleted.file_name is None
    assert list((storage_dir / "conversations").iterdir()) == []


def test_outsider_cannot_touch_conversation(db, conversation, consultant, outsider):
    """A user outside the conversation gets AccessDenied and changes nothing."""
    sent = message_service.send_message(db, conversation.id, consultant.id, content="private")

    with pytest.raises(AccessDenied):
        message_service.get_messages(db, conversation.id, outsider.id)
    with pytest.raises(AccessDenied):
        message_service.delete_message(db, sent.id, conversation.id, outsider.id)
    with pytest.raises(AccessDenied):
        conversation_service.get_conversation(db, conversation.id, outsider.id)

    assert _receipt_count(db, outsider.id) == 0
    page = message_service.get_messages(db, conversation.id, consultant.id)
    assert page[0].content == "private"
