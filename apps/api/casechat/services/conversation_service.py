"""Conversation service - lifecycle, membership and conversation-level access.

Every read or write scoped to a conversation goes through require_participant
first, so non-members get AccessDenied before any data is loaded or changed.
"""

from __future__ import annotations

import logging
from datetime import datetime, time, timedelta, timezone
from uuid import UUID

from sqlalchemy import and_, exists, func, or_, select
from sqlalchemy.orm import Session

from casechat.core.case_access import get_case_for_user
from casechat.core.config import settings
from casechat.core.errors import AccessDenied, InvalidArgument, NotFound
from casechat.db.enums import ConversationPriority, ConversationStatus, MessageType, Role
from casechat.db.models import (
    Conversation,
    ConversationParticipant,
    Message,
    MessageReadReceipt,
    User,
    utcnow,
)
from casechat.db.utils import as_utc, upsert_insert
from casechat.schemas.conversation import (
    ConversationDetail,
    ConversationExport,
    ConversationPage,
    ConversationStatistics,
    ConversationSummary,
    ParticipantRead,
    SenderRead,
)

logger = logging.getLogger(__name__)

# Most recently active first
RECENCY = func.coalesce(Conversation.last_message_at, Conversation.created_at)

RECENT_LIMIT = 10
SEARCH_LIMIT = 20


# =============================================================================
# Helpers
# =============================================================================

def coerce_enum(enum_cls, value, label: str):
    """Convert to a closed enum or raise InvalidArgument."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise InvalidArgument(f"Invalid {label} '{value}'. Must be one of: {allowed}")


def _role_value(role: Role | str) -> str:
    return role.value if hasattr(role, "value") else role


def is_online(user: User, now: datetime | None = None) -> bool:
    """Active within the presence window."""
    last_active = as_utc(user.last_active_at)
    if last_active is None:
        return False
    now = now or datetime.now(timezone.utc)
    return now - last_active <= timedelta(minutes=settings.PRESENCE_WINDOW_MINUTES)


def user_sender(user: User) -> SenderRead:
    return SenderRead(
        id=user.id,
        name=user.display_name,
        email=user.email,
        role=user.role,
        avatar_url=user.avatar_url,
    )


def unread_condition(user_id: UUID):
    """A message is unread for a user who did not send it and has no receipt."""
    return and_(
        or_(Message.sender_user_id.is_(None), Message.sender_user_id != user_id),
        ~exists().where(
            MessageReadReceipt.message_id == Message.id,
            MessageReadReceipt.user_id == user_id,
        ),
    )


# =============================================================================
# Access
# =============================================================================

def get_conversation_or_404(db: Session, conversation_id: UUID) -> Conversation:
    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        raise NotFound("Conversation not found")
    return conversation


def get_participant(
    db: Session, conversation_id: UUID, user_id: UUID
) -> ConversationParticipant | None:
    return db.get(ConversationParticipant, (conversation_id, user_id))


def is_participant(db: Session, conversation_id: UUID, user_id: UUID) -> bool:
    return get_participant(db, conversation_id, user_id) is not None


def require_participant(
    db: Session, conversation_id: UUID, user_id: UUID
) -> tuple[Conversation, ConversationParticipant]:
    """
    Load a conversation the user belongs to.

    Raises:
        NotFound: conversation does not exist
        AccessDenied: user is not a participant
    """
    conversation = get_conversation_or_404(db, conversation_id)
    participant = get_participant(db, conversation_id, user_id)
    if participant is None:
        raise AccessDenied("You are not a participant in this conversation")
    return conversation, participant


# =============================================================================
# Read models (batched: one query per concern, never per conversation)
# =============================================================================

def _unread_counts(db: Session, conversation_ids: list[UUID], user_id: UUID) -> dict[UUID, int]:
    rows = db.execute(
        select(Message.conversation_id, func.count(Message.id))
        .join(
            ConversationParticipant,
            and_(
                ConversationParticipant.conversation_id == Message.conversation_id,
                ConversationParticipant.user_id == user_id,
            ),
        )
        .where(Message.conversation_id.in_(conversation_ids), unread_condition(user_id))
        .group_by(Message.conversation_id)
    ).all()
    return {conversation_id: count for conversation_id, count in rows}


def _last_messages(db: Session, conversation_ids: list[UUID]) -> dict[UUID, Message]:
    latest_ids = (
        select(func.max(Message.id))
        .where(Message.conversation_id.in_(conversation_ids))
        .group_by(Message.conversation_id)
    )
    messages = db.scalars(select(Message).where(Message.id.in_(latest_ids))).all()
    return {message.conversation_id: message for message in messages}


def _participant_read(participant: ConversationParticipant, user: User, now: datetime) -> ParticipantRead:
    return ParticipantRead(
        user_id=user.id,
        display_name=user.display_name,
        email=user.email,
        avatar_url=user.avatar_url,
        role=participant.role,
        joined_at=participant.joined_at,
        last_seen_at=participant.last_seen_at,
        is_online=is_online(user, now),
    )


def _participants(db: Session, conversation_ids: list[UUID]) -> dict[UUID, list[ParticipantRead]]:
    rows = db.execute(
        select(ConversationParticipant, User)
        .join(User, User.id == ConversationParticipant.user_id)
        .where(ConversationParticipant.conversation_id.in_(conversation_ids))
        .order_by(User.display_name, User.id)
    ).all()
    now = datetime.now(timezone.utc)
    result: dict[UUID, list[ParticipantRead]] = {}
    for participant, user in rows:
        result.setdefault(participant.conversation_id, []).append(
            _participant_read(participant, user, now)
        )
    return result


def _preview(message: Message | None) -> str | None:
    if message is None:
        return None
    return message.content or message.file_name


def _summary_fields(
    conversation: Conversation,
    unread_count: int,
    last_message: Message | None,
    participants: list[ParticipantRead],
) -> dict:
    return {
        "id": conversation.id,
        "case_id": conversation.case_id,
        "title": conversation.title,
        "status": conversation.status,
        "priority": conversation.priority,
        "created_by_user_id": conversation.created_by_user_id,
        "created_at": conversation.created_at,
        "updated_at": conversation.updated_at,
        "last_message_at": conversation.last_message_at,
        "unread_count": unread_count,
        "last_message": _preview(last_message),
        "last_message_time": last_message.created_at if last_message else None,
        "participants": participants,
    }


def build_summaries(
    db: Session, conversations: list[Conversation], user_id: UUID
) -> list[ConversationSummary]:
    """Attach unread count, last message and roster, preserving input order."""
    ids = [conversation.id for conversation in conversations]
    if not ids:
        return []
    unread = _unread_counts(db, ids, user_id)
    last = _last_messages(db, ids)
    rosters = _participants(db, ids)
    return [
        ConversationSummary(
            **_summary_fields(c, unread.get(c.id, 0), last.get(c.id), rosters.get(c.id, []))
        )
        for c in conversations
    ]


def build_detail(db: Session, conversation: Conversation, user_id: UUID) -> ConversationDetail:
    ids = [conversation.id]
    message_count = db.scalar(
        select(func.count(Message.id)).where(Message.conversation_id == conversation.id)
    )
    creator = conversation.created_by
    return ConversationDetail(
        **_summary_fields(
            conversation,
            _unread_counts(db, ids, user_id).get(conversation.id, 0),
            _last_messages(db, ids).get(conversation.id),
            _participants(db, ids).get(conversation.id, []),
        ),
        created_by=user_sender(creator) if creator else None,
        message_count=message_count or 0,
    )


# =============================================================================
# Lifecycle
# =============================================================================

def create_conversation(
    db: Session,
    case_id: UUID,
    title: str,
    creator_id: UUID,
    creator_role: Role | str,
    participant_ids: list[UUID] | None = None,
    priority: ConversationPriority | str = ConversationPriority.MEDIUM,
    initial_message: str | None = None,
) -> ConversationDetail:
    """
    Create a conversation on a case the creator can access.

    Participant ids that don't resolve to an active user are skipped, not
    rejected. The creator always becomes a participant.

    Raises:
        InvalidArgument: empty title or unknown priority
        NotFound: case does not exist
        AccessDenied: creator has no access to the case
    """
    from casechat.services import message_service

    title = (title or "").strip()
    if not title:
        raise InvalidArgument("Title is required")
    priority = coerce_enum(ConversationPriority, priority, "priority")
    get_case_for_user(db, case_id, creator_id, creator_role)

    conversation = Conversation(
        case_id=case_id,
        title=title,
        status=ConversationStatus.ACTIVE.value,
        priority=priority.value,
        created_by_user_id=creator_id,
    )
    db.add(conversation)
    db.flush()

    db.add(
        ConversationParticipant(
            conversation_id=conversation.id,
            user_id=creator_id,
            role=_role_value(creator_role),
        )
    )

    requested = {pid for pid in (participant_ids or []) if pid != creator_id}
    if requested:
        users = db.scalars(
            select(User).where(User.id.in_(requested), User.is_active.is_(True))
        ).all()
        for user in users:
            db.add(
                ConversationParticipant(
                    conversation_id=conversation.id,
                    user_id=user.id,
                    role=user.role,
                )
            )
        skipped = len(requested) - len(users)
        if skipped:
            logger.info(
                "Conversation %s: skipped %s unknown participant id(s)",
                conversation.id,
                skipped,
            )

    message = None
    text = (initial_message or "").strip()
    if text:
        message = message_service.append_message(
            db,
            conversation,
            content=text,
            message_type=MessageType.TEXT,
            sender_user_id=creator_id,
        )

    db.commit()
    logger.info(
        "Conversation %s created on case %s by user %s", conversation.id, case_id, creator_id
    )

    if message is not None:
        message_service.notify_message_created(db, message)
    return build_detail(db, conversation, creator_id)


def list_case_conversations(
    db: Session, case_id: UUID, user_id: UUID, user_role: Role | str
) -> list[ConversationSummary]:
    """
    The caller's conversations on a case, most recently active first.

    Case access is required; conversations the caller is not a participant
    of are never listed, whatever their role.
    """
    get_case_for_user(db, case_id, user_id, user_role)
    conversations = db.scalars(
        _member_conversations(user_id)
        .where(Conversation.case_id == case_id)
        .order_by(RECENCY.desc(), Conversation.created_at.desc())
    ).all()
    return build_summaries(db, list(conversations), user_id)


def get_conversation(db: Session, conversation_id: UUID, user_id: UUID) -> ConversationDetail:
    conversation, _ = require_participant(db, conversation_id, user_id)
    return build_detail(db, conversation, user_id)


def _record_system_event(
    db: Session, conversation: Conversation, acting_user_id: UUID, text: str
) -> Message:
    """Append a system message, commit, and fan it out."""
    from casechat.services import message_service

    message = message_service.append_message(
        db,
        conversation,
        content=text,
        message_type=MessageType.SYSTEM,
        sender_user_id=acting_user_id,
    )
    db.commit()
    message_service.notify_message_created(db, message)
    return message


def set_status(
    db: Session,
    conversation_id: UUID,
    new_status: ConversationStatus | str,
    acting_user_id: UUID,
) -> ConversationDetail:
    conversation, _ = require_participant(db, conversation_id, acting_user_id)
    status = coerce_enum(ConversationStatus, new_status, "status")

    conversation.status = status.value
    _record_system_event(db, conversation, acting_user_id, f"Conversation marked as {status.value}")
    logger.info("Conversation %s status -> %s", conversation_id, status.value)
    return build_detail(db, conversation, acting_user_id)


def set_priority(
    db: Session,
    conversation_id: UUID,
    new_priority: ConversationPriority | str,
    acting_user_id: UUID,
) -> ConversationDetail:
    conversation, _ = require_participant(db, conversation_id, acting_user_id)
    priority = coerce_enum(ConversationPriority, new_priority, "priority")

    conversation.priority = priority.value
    _record_system_event(db, conversation, acting_user_id, f"Priority changed to {priority.value}")
    logger.info("Conversation %s priority -> %s", conversation_id, priority.value)
    return build_detail(db, conversation, acting_user_id)


# =============================================================================
# Membership
# =============================================================================

def add_participant(
    db: Session, conversation_id: UUID, user_id: UUID, acting_user_id: UUID
) -> bool:
    """
    Add a user to a conversation. Returns False if they already were one.

    The announcement message is pre-marked read for the new member, so their
    unread count grows only by the history they have not seen.
    """
    from casechat.services import message_service

    conversation, _ = require_participant(db, conversation_id, acting_user_id)
    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise NotFound("User not found")

    if is_participant(db, conversation_id, user_id):
        return False

    inserted = db.execute(
        upsert_insert(db, ConversationParticipant)
        .values(conversation_id=conversation.id, user_id=user.id, role=user.role)
        .on_conflict_do_nothing(index_elements=["conversation_id", "user_id"])
        .returning(ConversationParticipant.user_id)
    ).first()
    if inserted is None:
        # Concurrent add won the race
        db.rollback()
        return False

    message = message_service.append_message(
        db,
        conversation,
        content=f"{user.display_name} was added to the conversation",
        message_type=MessageType.SYSTEM,
        sender_user_id=acting_user_id,
    )
    message_service.insert_receipts(db, user.id, [message.id])
    db.commit()
    logger.info("User %s added to conversation %s by %s", user_id, conversation_id, acting_user_id)

    message_service.notify_message_created(db, message)
    return True


def leave_conversation(db: Session, conversation_id: UUID, user_id: UUID) -> None:
    conversation, participant = require_participant(db, conversation_id, user_id)
    user = db.get(User, user_id)
    name = user.display_name if user else "A participant"

    db.delete(participant)
    _record_system_event(db, conversation, user_id, f"{name} left the conversation")
    logger.info("User %s left conversation %s", user_id, conversation_id)


def list_participants(
    db: Session, conversation_id: UUID, user_id: UUID
) -> list[ParticipantRead]:
    """Roster ordered by display name."""
    conversation, _ = require_participant(db, conversation_id, user_id)
    return _participants(db, [conversation.id]).get(conversation.id, [])


# =============================================================================
# Cross-conversation views
# =============================================================================

def _member_conversations(user_id: UUID):
    return select(Conversation).join(
        ConversationParticipant,
        and_(
            ConversationParticipant.conversation_id == Conversation.id,
            ConversationParticipant.user_id == user_id,
        ),
    )


def get_recent_conversations(
    db: Session, user_id: UUID, limit: int = RECENT_LIMIT
) -> list[ConversationSummary]:
    conversations = db.scalars(
        _member_conversations(user_id).order_by(RECENCY.desc()).limit(max(1, limit))
    ).all()
    return build_summaries(db, list(conversations), user_id)


def search_conversations(
    db: Session, user_id: UUID, query: str, limit: int = SEARCH_LIMIT
) -> list[ConversationSummary]:
    """Case-insensitive match on title or visible message content."""
    term = (query or "").strip()
    if not term:
        raise InvalidArgument("Search query is required")

    content_match = exists().where(
        Message.conversation_id == Conversation.id,
        Message.is_deleted.is_(False),
        Message.content.icontains(term, autoescape=True),
    )
    conversations = db.scalars(
        _member_conversations(user_id)
        .where(or_(Conversation.title.icontains(term, autoescape=True), content_match))
        .order_by(RECENCY.desc())
        .limit(max(1, limit))
    ).all()
    return build_summaries(db, list(conversations), user_id)


def list_all_conversations(
    db: Session,
    viewer_id: UUID,
    page: int = 1,
    page_size: int = 20,
    status: ConversationStatus | str | None = None,
) -> ConversationPage:
    """Every conversation in the system (management view)."""
    page = max(1, page)
    page_size = min(max(1, page_size), 100)

    stmt = select(Conversation)
    count_stmt = select(func.count(Conversation.id))
    if status is not None:
        status = coerce_enum(ConversationStatus, status, "status")
        stmt = stmt.where(Conversation.status == status.value)
        count_stmt = count_stmt.where(Conversation.status == status.value)

    conversations = db.scalars(
        stmt.order_by(RECENCY.desc()).offset((page - 1) * page_size).limit(page_size)
    ).all()
    return ConversationPage(
        items=build_summaries(db, list(conversations), viewer_id),
        total=db.scalar(count_stmt) or 0,
        page=page,
        page_size=page_size,
    )


def get_statistics(db: Session) -> ConversationStatistics:
    by_status = dict(
        db.execute(
            select(Conversation.status, func.count(Conversation.id)).group_by(Conversation.status)
        ).all()
    )
    start_of_day = datetime.combine(datetime.now(timezone.utc).date(), time.min, tzinfo=timezone.utc)
    messages_today = db.scalar(
        select(func.count(Message.id)).where(Message.created_at >= start_of_day)
    )
    total_users = db.scalar(select(func.count(User.id)).where(User.is_active.is_(True)))
    return ConversationStatistics(
        active=by_status.get(ConversationStatus.ACTIVE.value, 0),
        resolved=by_status.get(ConversationStatus.RESOLVED.value, 0),
        archived=by_status.get(ConversationStatus.ARCHIVED.value, 0),
        total=sum(by_status.values()),
        messages_today=messages_today or 0,
        total_users=total_users or 0,
    )


def export_conversation(
    db: Session, conversation_id: UUID, user_id: UUID, user_role: Role | str
) -> ConversationExport:
    """Full transcript for participants (or management). No read receipts are written."""
    from casechat.services import message_service

    conversation = get_conversation_or_404(db, conversation_id)
    if _role_value(user_role) != Role.MANAGEMENT.value and not is_participant(
        db, conversation_id, user_id
    ):
        raise AccessDenied("You are not a participant in this conversation")

    return ConversationExport(
        conversation=build_detail(db, conversation, user_id),
        messages=message_service.list_transcript(db, conversation.id, user_id),
        exported_at=utcnow(),
    )


# =============================================================================
# External channel routing
# =============================================================================

def find_external_conversation(db: Session, case_id: UUID, phone: str) -> Conversation | None:
    """
    Canonical conversation for inbound messages from a phone on a case.

    Prefers a conversation pinned to the phone, then the most recently active
    unpinned one. Archived conversations never receive external messages.
    Never creates a conversation.
    """
    base = select(Conversation).where(
        Conversation.case_id == case_id,
        Conversation.status != ConversationStatus.ARCHIVED.value,
    )
    pinned = db.scalars(
        base.where(Conversation.external_phone == phone).order_by(RECENCY.desc()).limit(1)
    ).first()
    if pinned is not None:
        return pinned
    return db.scalars(
        base.where(Conversation.external_phone.is_(None)).order_by(RECENCY.desc()).limit(1)
    ).first()


def pin_external_phone(conversation: Conversation, phone: str) -> None:
    """Route future inbound messages from phone to this conversation."""
    if conversation.external_phone is None:
        conversation.external_phone = phone
