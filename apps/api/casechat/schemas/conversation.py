"""Pydantic schemas for conversations, participants and messages."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from casechat.db.enums import ConversationPriority, ConversationStatus, MessageType


# =============================================================================
# Requests
# =============================================================================

class ConversationCreate(BaseModel):
    case_id: UUID
    title: str = Field(..., min_length=1, max_length=255)
    participant_ids: list[UUID] = Field(default_factory=list)
    priority: ConversationPriority = ConversationPriority.MEDIUM
    initial_message: str | None = Field(None, max_length=10000)


class StatusUpdate(BaseModel):
    status: ConversationStatus


class PriorityUpdate(BaseModel):
    priority: ConversationPriority


class ParticipantAdd(BaseModel):
    user_id: UUID


# =============================================================================
# Responses
# =============================================================================

class SenderRead(BaseModel):
    """Sender of a message: a registered user or an external handle."""
    id: UUID | None = None
    name: str
    email: str | None = None
    role: str | None = None
    avatar_url: str | None = None
    external_id: str | None = None


class MessageRead(BaseModel):
    id: int
    conversation_id: UUID
    sender: SenderRead
    content: str
    message_type: MessageType
    file_url: str | None = None
    file_name: str | None = None
    file_size: int | None = None
    file_type: str | None = None
    is_deleted: bool = False
    created_at: datetime
    is_read_by_me: bool = False


class ParticipantRead(BaseModel):
    user_id: UUID
    display_name: str
    email: str
    avatar_url: str | None = None
    role: str
    joined_at: datetime
    last_seen_at: datetime | None = None
    is_online: bool = False


class ConversationSummary(BaseModel):
    """Conversation as shown in lists."""
    id: UUID
    case_id: UUID
    title: str
    status: ConversationStatus
    priority: ConversationPriority
    created_by_user_id: UUID | None = None
    created_at: datetime
    updated_at: datetime
    last_message_at: datetime | None = None
    unread_count: int = 0
    last_message: str | None = None
    last_message_time: datetime | None = None
    participants: list[ParticipantRead] = Field(default_factory=list)


class ConversationDetail(ConversationSummary):
    created_by: SenderRead | None = None
    message_count: int = 0


class ConversationPage(BaseModel):
    items: list[ConversationSummary]
    total: int
    page: int
    page_size: int


class ConversationStatistics(BaseModel):
    active: int
    resolved: int
    archived: int
    total: int
    messages_today: int
    total_users: int


class ConversationExport(BaseModel):
    conversation: ConversationDetail
    messages: list[MessageRead]
    exported_at: datetime


class UnreadCountRead(BaseModel):
    unread_count: int
