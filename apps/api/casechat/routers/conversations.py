"""
Conversations Router - /conversations endpoints.

Conversation lifecycle, membership, and the message pipeline
(send, history, read receipts, soft delete).
"""

from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from sqlalchemy.orm import Session

from casechat.core.config import settings
from casechat.core.deps import get_current_session, get_db, require_csrf_header
from casechat.core.errors import InvalidArgument
from casechat.schemas.auth import UserSession
from casechat.schemas.conversation import (
    ConversationCreate,
    ConversationDetail,
    ConversationExport,
    ConversationSummary,
    MessageRead,
    ParticipantAdd,
    ParticipantRead,
    PriorityUpdate,
    StatusUpdate,
    UnreadCountRead,
)
from casechat.services import conversation_service, message_service
from casechat.services.message_service import Upload

router = APIRouter()


# =============================================================================
# Conversations
# =============================================================================

@router.post(
    "",
    response_model=ConversationDetail,
    status_code=201,
    dependencies=[Depends(require_csrf_header)],
)
def create_conversation(
    data: ConversationCreate,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Create a conversation on a case, optionally with a first message."""
    return conversation_service.create_conversation(
        db,
        case_id=data.case_id,
        title=data.title,
        creator_id=session.user_id,
        creator_role=session.role,
        participant_ids=data.participant_ids,
        priority=data.priority,
        initial_message=data.initial_message,
    )


@router.get("/case/{case_id}", response_model=list[ConversationSummary])
def list_case_conversations(
    case_id: UUID,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    return conversation_service.list_case_conversations(
        db, case_id, session.user_id, session.role
    )


@router.get("/recent", response_model=list[ConversationSummary])
def recent_conversations(
    limit: int = Query(conversation_service.RECENT_LIMIT, ge=1, le=50),
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """The caller's most recently active conversations across cases."""
    return conversation_service.get_recent_conversations(db, session.user_id, limit=limit)


@router.get("/search", response_model=list[ConversationSummary])
def search_conversations(
    q: str = Query(..., min_length=1, max_length=200),
    limit: int = Query(conversation_service.SEARCH_LIMIT, ge=1, le=50),
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    return conversation_service.search_conversations(db, session.user_id, q, limit=limit)


@router.get("/unread-count", response_model=UnreadCountRead)
def unread_count(
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Unread messages across all of the caller's conversations (for polling)."""
    return UnreadCountRead(unread_count=message_service.get_unread_count(db, session.user_id))


@router.get("/{conversation_id}", response_model=ConversationDetail)
def get_conversation(
    conversation_id: UUID,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    return conversation_service.get_conversation(db, conversation_id, session.user_id)


@router.patch(
    "/{conversation_id}/status",
    response_model=ConversationDetail,
    dependencies=[Depends(require_csrf_header)],
)
def update_status(
    conversation_id: UUID,
    data: StatusUpdate,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    return conversation_service.set_status(db, conversation_id, data.status, session.user_id)


@router.patch(
    "/{conversation_id}/priority",
    response_model=ConversationDetail,
    dependencies=[Depends(require_csrf_header)],
)
def update_priority(
    conversation_id: UUID,
    data: PriorityUpdate,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    return conversation_service.set_priority(db, conversation_id, data.priority, session.user_id)


@router.get("/{conversation_id}/export", response_model=ConversationExport)
def export_conversation(
    conversation_id: UUID,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Full transcript (participants and management)."""
    return conversation_service.export_conversation(
        db, conversation_id, session.user_id, session.role
    )


# =============================================================================
# Participants
# =============================================================================

@router.get("/{conversation_id}/participants", response_model=list[ParticipantRead])
def list_participants(
    conversation_id: UUID,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    return conversation_service.list_participants(db, conversation_id, session.user_id)


@router.post(
    "/{conversation_id}/participants",
    response_model=list[ParticipantRead],
    dependencies=[Depends(require_csrf_header)],
)
def add_participant(
    conversation_id: UUID,
    data: ParticipantAdd,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Add a user (no-op if already a participant). Returns the updated roster."""
    conversation_service.add_participant(db, conversation_id, data.user_id, session.user_id)
    return conversation_service.list_participants(db, conversation_id, session.user_id)


@router.delete(
    "/{conversation_id}/participants/me",
    status_code=204,
    dependencies=[Depends(require_csrf_header)],
)
def leave_conversation(
    conversation_id: UUID,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    conversation_service.leave_conversation(db, conversation_id, session.user_id)


# =============================================================================
# Messages
# =============================================================================

@router.get("/{conversation_id}/messages", response_model=list[MessageRead])
def list_messages(
    conversation_id: UUID,
    before: int | None = Query(None, ge=1, description="Return messages with id below this"),
    limit: int = Query(settings.MESSAGE_PAGE_DEFAULT, ge=1, le=settings.MESSAGE_PAGE_MAX),
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Page of history, oldest first. Fetched messages are marked read."""
    return message_service.get_messages(
        db, conversation_id, session.user_id, before_id=before, limit=limit
    )


@router.post(
    "/{conversation_id}/messages",
    response_model=MessageRead,
    status_code=201,
    dependencies=[Depends(require_csrf_header)],
)
def send_message(
    conversation_id: UUID,
    content: str = Form(""),
    message_type: str = Form("text"),
    file: UploadFile | None = File(None),
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Send a text message, or a file with an optional caption (multipart)."""
    attachment = None
    if file is not None and file.filename:
        data = file.file.read(settings.MAX_UPLOAD_BYTES + 1)
        if len(data) > settings.MAX_UPLOAD_BYTES:
            max_mb = settings.MAX_UPLOAD_BYTES / (1024 * 1024)
            raise InvalidArgument(f"File size exceeds {max_mb:.0f} MB limit")
        attachment = Upload(data=data, filename=file.filename, content_type=file.content_type)

    return message_service.send_message(
        db,
        conversation_id,
        session.user_id,
        content=content,
        message_type=message_type,
        attachment=attachment,
    )


@router.post(
    "/{conversation_id}/messages/{message_id}/read",
    dependencies=[Depends(require_csrf_header)],
)
def mark_message_read(
    conversation_id: UUID,
    message_id: int,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    read_at = message_service.mark_message_read(db, message_id, conversation_id, session.user_id)
    return {"message_id": message_id, "read_at": read_at}


@router.delete(
    "/{conversation_id}/messages/{message_id}",
    response_model=MessageRead,
    dependencies=[Depends(require_csrf_header)],
)
def delete_message(
    conversation_id: UUID,
    message_id: int,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Soft delete one of the caller's own messages."""
    return message_service.delete_message(db, message_id, conversation_id, session.user_id)
