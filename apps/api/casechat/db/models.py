"""SQLAlchemy ORM models for the conversation subsystem."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from casechat.db.base import Base
from casechat.db.enums import ConversationPriority, ConversationStatus, MessageType, Role


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _in_clause(column: str, enum_cls) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


# Message ids must be strictly increasing across the store (cursor pagination).
# SQLite only auto-increments INTEGER PRIMARY KEY columns.
MessageId = BigInteger().with_variant(Integer, "sqlite")


# =============================================================================
# Collaborators: user directory and cases
# =============================================================================

class User(Base):
    """
    Application user (user directory).

    last_active_at is refreshed by authenticated requests and drives the
    is_online flag shown in participant rosters.
    """
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    avatar_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    role: Mapped[str] = mapped_column(
        String(50), default=Role.INTERNAL_TEAM.value, nullable=False
    )
    token_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_active_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )


class Case(Base):
    """
    Business referral owning zero or more conversations.

    Case CRUD and approval live elsewhere; this table only carries what
    case-level access checks need.
    """
    __tablename__ = "cases"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    created_by_user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )

    members: Mapped[list["CaseMember"]] = relationship(
        back_populates="case", cascade="all, delete-orphan"
    )


class CaseMember(Base):
    """Users assigned to a case (admins and sub-consultants)."""
    __tablename__ = "case_members"

    case_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("cases.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    added_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )

    case: Mapped["Case"] = relationship(back_populates="members")


# =============================================================================
# Conversations
# =============================================================================

class Conversation(Base):
    """
    A thread of messages scoped to one case.

    last_message_at advances on every appended message; archival is a status,
    rows are never deleted. external_phone pins the conversation that inbound
    WhatsApp messages for that number land in.
    """
    __tablename__ = "conversations"
    __table_args__ = (
        CheckConstraint(_in_clause("status", ConversationStatus), name="status_valid"),
        CheckConstraint(_in_clause("priority", ConversationPriority), name="priority_valid"),
        Index("idx_conversations_case", "case_id"),
        Index("idx_conversations_case_phone", "case_id", "external_phone"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    case_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("cases.id", ondelete="RESTRICT"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=ConversationStatus.ACTIVE.value, nullable=False
    )
    priority: Mapped[str] = mapped_column(
        String(20), default=ConversationPriority.MEDIUM.value, nullable=False
    )
    created_by_user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    external_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    last_message_at: Mapped[datetime | None] = mapped_column(nullable=True)

    case: Mapped["Case"] = relationship()
    created_by: Mapped["User | None"] = relationship(foreign_keys=[created_by_user_id])
    participants: Mapped[list["ConversationParticipant"]] = relationship(
        back_populates="conversation", cascade="all, delete-orphan"
    )


class ConversationParticipant(Base):
    """Conversation membership. (conversation_id, user_id) is the primary key."""
    __tablename__ = "conversation_participants"
    __table_args__ = (
        Index("idx_participants_user", "user_id"),
    )

    conversation_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    role: Mapped[str] = mapped_column(String(50), nullable=False)  # role at join time
    joined_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    last_seen_at: Mapped[datetime | None] = mapped_column(nullable=True)

    conversation: Mapped["Conversation"] = relationship(back_populates="participants")
    user: Mapped["User"] = relationship()


class Message(Base):
    """
    A message in a conversation.

    The id is the only ordering key. Senders are either a registered user
    (sender_user_id) or an external handle such as "whatsapp:15550100001"
    (sender_external_id). external_message_id makes inbound ingestion
    idempotent: a provider message id is stored at most once.
    """
    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint(_in_clause("message_type", MessageType), name="type_valid"),
        CheckConstraint(
            "sender_user_id IS NOT NULL OR sender_external_id IS NOT NULL",
            name="sender_present",
        ),
        Index("idx_messages_conversation_id", "conversation_id", "id"),
    )

    id: Mapped[int] = mapped_column(MessageId, primary_key=True, autoincrement=True)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    sender_user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    sender_external_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    sender_display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    content: Mapped[str] = mapped_column(Text, default="", nullable=False)
    message_type: Mapped[str] = mapped_column(
        String(20), default=MessageType.TEXT.value, nullable=False
    )
    file_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    file_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    external_message_id: Mapped[str | None] = mapped_column(
        String(64), unique=True, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )

    sender: Mapped["User | None"] = relationship()


class MessageReadReceipt(Base):
    """Marks that a user has seen a message. Unique per (message, user)."""
    __tablename__ = "message_read_receipts"
    __table_args__ = (
        Index("idx_read_receipts_user", "user_id"),
    )

    message_id: Mapped[int] = mapped_column(
        MessageId, ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    read_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )


class PhoneCaseMapping(Base):
    """Normalized phone number (digits only) -> case. Last write wins."""
    __tablename__ = "phone_case_mappings"

    phone: Mapped[str] = mapped_column(String(32), primary_key=True)
    case_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("cases.id", ondelete="CASCADE"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )
