"""Message pipeline - ordered append, read receipts and unread counts.

Ordering is defined by message id only. The database assigns ids from its
sequence (autoincrement on SQLite), so concurrent sends serialize there and
nowhere else. created_at is informational.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session, selectinload

from casechat.core.config import settings
from casechat.core.errors import Forbidden, InvalidArgument, NotFound
from casechat.db.enums import MessageType
from casechat.db.models import (
    Conversation,
    ConversationParticipant,
    Message,
    MessageReadReceipt,
    utcnow,
)
from casechat.db.utils import as_utc, upsert_insert
from casechat.schemas.conversation import MessageRead, SenderRead
from casechat.services import conversation_events, conversation_service, file_storage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Upload:
    """A file received with a message, before it is stored."""
    data: bytes
    filename: str
    content_type: str | None = None


# =============================================================================
# Serialization
# =============================================================================

def message_sender(message: Message) -> SenderRead:
    if message.sender is not None:
        return conversation_service.user_sender(message.sender)
    if message.sender_user_id is not None:
        # Sender account was removed
        return SenderRead(id=message.sender_user_id, name="Unknown user")
    return SenderRead(
        name=message.sender_display_name or message.sender_external_id or "External contact",
        external_id=message.sender_external_id,
    )


def to_message_read(message: Message, is_read_by_me: bool = False) -> MessageRead:
    return MessageRead(
        id=message.id,
        conversation_id=message.conversation_id,
        sender=message_sender(message),
        content=message.content,
        message_type=message.message_type,
        file_url=message.file_url,
        file_name=message.file_name,
        file_size=message.file_size,
        file_type=message.file_type,
        is_deleted=message.is_deleted,
        created_at=message.created_at,
        is_read_by_me=is_read_by_me,
    )


# =============================================================================
# Append
# =============================================================================

def append_message(
    db: Session,
    conversation: Conversation,
    *,
    content: str,
    message_type: MessageType,
    sender_user_id: UUID | None = None,
    sender_external_id: str | None = None,
    sender_display_name: str | None = None,
    file_url: str | None = None,
    file_name: str | None = None,
    file_size: int | None = None,
    file_type: str | None = None,
    external_message_id: str | None = None,
) -> Message:
    """
    Insert a message and advance conversation recency.

    Flushes (so the id is assigned) but does not commit.
    """
    now = utcnow()
    message = Message(
        conversation_id=conversation.id,
        sender_user_id=sender_user_id,
        sender_external_id=sender_external_id,
        sender_display_name=sender_display_name,
        content=content or "",
        message_type=message_type.value,
        file_url=file_url,
        file_name=file_name,
        file_size=file_size,
        file_type=file_type,
        external_message_id=external_message_id,
        created_at=now,
    )
    db.add(message)
    db.flush()

    conversation.last_message_at = now
    conversation.updated_at = now
    return message


def notify_message_created(db: Session, message: Message) -> None:
    """Fan out a committed message to the room and refresh unread badges."""
    conversation_events.publish_new_message(to_message_read(message))
    push_unread_counts(db, message.conversation_id, exclude_user_id=message.sender_user_id)


def push_unread_counts(
    db: Session, conversation_id: UUID, exclude_user_id: UUID | None = None
) -> None:
    user_ids = db.scalars(
        select(ConversationParticipant.user_id).where(
            ConversationParticipant.conversation_id == conversation_id
        )
    ).all()
    for user_id in user_ids:
        if user_id == exclude_user_id or not conversation_events.wants_user_events(user_id):
            continue
        conversation_events.publish_unread_count(user_id, get_unread_count(db, user_id))


def _discard_file(url: str) -> None:
    try:
        file_storage.delete(url)
    except OSError:
        logger.warning("Failed to remove attachment %s", url, exc_info=True)


def send_message(
    db: Session,
    conversation_id: UUID,
    sender_id: UUID,
    content: str = "",
    message_type: MessageType | str = MessageType.TEXT,
    attachment: Upload | None = None,
) -> MessageRead:
    """
    Post a message as a participant.

    An attachment is stored before the message row is written, so the file
    is retrievable by the time anyone can see the message. Messages with an
    attachment are always file messages; content is kept as a caption.

    Raises:
        AccessDenied: sender is not a participant
        InvalidArgument: empty message, unknown type, or rejected file
    """
    conversation, _ = conversation_service.require_participant(db, conversation_id, sender_id)
    message_type = conversation_service.coerce_enum(
        MessageType, message_type or MessageType.TEXT, "message type"
    )
    if message_type == MessageType.SYSTEM:
        raise InvalidArgument("System messages are generated by the server")

    content = content or ""
    if attachment is None:
        if message_type == MessageType.FILE:
            raise InvalidArgument("A file is required for file messages")
        if not content.strip():
            raise InvalidArgument("Message content or file is required")

    stored = None
    if attachment is not None:
        stored = file_storage.store(attachment.data, attachment.filename, attachment.content_type)
        message_type = MessageType.FILE

    try:
        message = append_message(
            db,
            conversation,
            content=content,
            message_type=message_type,
            sender_user_id=sender_id,
            file_url=stored.url if stored else None,
            file_name=stored.name if stored else None,
            file_size=stored.size if stored else None,
            file_type=stored.mime_type if stored else None,
        )
        result = to_message_read(message, is_read_by_me=True)
        db.commit()
    except Exception:
        db.rollback()
        if stored is not None:
            _discard_file(stored.url)
        raise

    conversation_events.publish_new_message(result)
    push_unread_counts(db, conversation.id, exclude_user_id=sender_id)
    return result


# =============================================================================
# Read
# =============================================================================

def _page_limit(limit: int | None) -> int:
    if limit is None:
        return settings.MESSAGE_PAGE_DEFAULT
    if limit < 1:
        raise InvalidArgument("limit must be at least 1")
    return min(limit, settings.MESSAGE_PAGE_MAX)


def insert_receipts(
    db: Session,
    user_id: UUID,
    message_ids: list[int],
    read_at: datetime | None = None,
) -> list[int]:
    """Record reads, ignoring ones that already exist. Returns newly inserted ids."""
    if not message_ids:
        return []
    read_at = read_at or utcnow()
    rows = [
        {"message_id": message_id, "user_id": user_id, "read_at": read_at}
        for message_id in dict.fromkeys(message_ids)
    ]
    stmt = (
        upsert_insert(db, MessageReadReceipt)
        .values(rows)
        .on_conflict_do_nothing(index_elements=["message_id", "user_id"])
        .returning(MessageReadReceipt.message_id)
    )
    return list(db.execute(stmt).scalars())


def _read_ids(db: Session, user_id: UUID, message_ids: list[int]) -> set[int]:
    if not message_ids:
        return set()
    return set(
        db.scalars(
            select(MessageReadReceipt.message_id).where(
                MessageReadReceipt.user_id == user_id,
                MessageReadReceipt.message_id.in_(message_ids),
            )
        ).all()
    )


def get_messages(
    db: Session,
    conversation_id: UUID,
    user_id: UUID,
    before_id: int | None = None,
    limit: int | None = None,
) -> list[MessageRead]:
    """
    A page of history, oldest first, ending just before before_id.

    Fetching marks every returned message from someone else as read.
    is_read_by_me reflects the state before this call.
    """
    conversation, participant = conversation_service.require_participant(
        db, conversation_id, user_id
    )
    limit = _page_limit(limit)
    if before_id is not None and before_id < 1:
        raise InvalidArgument("before must be a positive message id")

    stmt = (
        select(Message)
        .options(selectinload(Message.sender))
        .where(Message.conversation_id == conversation.id)
    )
    if before_id is not None:
        stmt = stmt.where(Message.id < before_id)
    messages = list(db.scalars(stmt.order_by(Message.id.desc()).limit(limit)).all())
    messages.reverse()

    already_read = _read_ids(db, user_id, [m.id for m in messages])
    result = [
        to_message_read(m, is_read_by_me=m.sender_user_id == user_id or m.id in already_read)
        for m in messages
    ]

    now = utcnow()
    unread_ids = [
        m.id for m in messages if m.sender_user_id != user_id and m.id not in already_read
    ]
    inserted = insert_receipts(db, user_id, unread_ids, read_at=now)
    participant.last_seen_at = now
    db.commit()

    if inserted and conversation_events.wants_user_events(user_id):
        conversation_events.publish_unread_count(user_id, get_unread_count(db, user_id))
    return result


def list_transcript(db: Session, conversation_id: UUID, user_id: UUID) -> list[MessageRead]:
    """Every message in id order, without side effects."""
    messages = db.scalars(
        select(Message)
        .options(selectinload(Message.sender))
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.id)
    ).all()
    already_read = _read_ids(db, user_id, [m.id for m in messages])
    return [
        to_message_read(m, is_read_by_me=m.sender_user_id == user_id or m.id in already_read)
        for m in messages
    ]


def _get_conversation_message(db: Session, conversation_id: UUID, message_id: int) -> Message:
    message = db.get(Message, message_id)
    if message is None or message.conversation_id != conversation_id:
        raise NotFound("Message not found")
    return message


def mark_message_read(
    db: Session, message_id: int, conversation_id: UUID, user_id: UUID
) -> datetime:
    """
    Acknowledge a single message. Idempotent; returns when it was first read.
    """
    conversation, participant = conversation_service.require_participant(
        db, conversation_id, user_id
    )
    message = _get_conversation_message(db, conversation.id, message_id)

    now = utcnow()
    inserted = insert_receipts(db, user_id, [message.id], read_at=now)
    participant.last_seen_at = now
    if inserted:
        read_at = now
    else:
        read_at = as_utc(db.scalar(
            select(MessageReadReceipt.read_at).where(
                MessageReadReceipt.message_id == message.id,
                MessageReadReceipt.user_id == user_id,
            )
        )) or now
    db.commit()

    conversation_events.publish_read_receipt(conversation.id, message.id, user_id, read_at)
    if inserted and conversation_events.wants_user_events(user_id):
        conversation_events.publish_unread_count(user_id, get_unread_count(db, user_id))
    return read_at


def delete_message(
    db: Session, message_id: int, conversation_id: UUID, acting_user_id: UUID
) -> MessageRead:
    """
    Soft delete: the row and its position stay, content becomes a placeholder.

    Raises:
        AccessDenied: actor is not a participant
        NotFound: message is not in this conversation
        Forbidden: actor did not send the message
    """
    conversation, _ = conversation_service.require_participant(db, conversation_id, acting_user_id)
    message = _get_conversation_message(db, conversation.id, message_id)
    if message.sender_user_id is None or message.sender_user_id != acting_user_id:
        raise Forbidden("You can only delete your own messages")

    if message.is_deleted:
        return to_message_read(message, is_read_by_me=True)

    file_url = message.file_url
    message.is_deleted = True
    message.content = settings.DELETED_MESSAGE_PLACEHOLDER
    message.file_url = None
    message.file_name = None
    message.file_size = None
    message.file_type = None
    conversation.updated_at = utcnow()
    db.flush()
    result = to_message_read(message, is_read_by_me=True)
    db.commit()
    logger.info("Message %s soft-deleted by %s", message_id, acting_user_id)

    if file_url:
        _discard_file(file_url)
    conversation_events.publish_message_deleted(conversation.id, message.id)
    return result


def get_unread_count(db: Session, user_id: UUID) -> int:
    """Unread messages across every conversation the user belongs to (one query)."""
    count = db.scalar(
        select(func.count(Message.id))
        .join(
            ConversationParticipant,
            and_(
                ConversationParticipant.conversation_id == Message.conversation_id,
                ConversationParticipant.user_id == user_id,
            ),
        )
        .where(conversation_service.unread_condition(user_id))
    )
    return count or 0
