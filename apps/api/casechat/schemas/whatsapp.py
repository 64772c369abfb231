"""Pydantic schemas for the WhatsApp bridge."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


class PhoneMappingCreate(BaseModel):
    phone: str = Field(..., min_length=1, max_length=64)
    case_id: UUID


class PhoneMappingRead(BaseModel):
    phone: str
    case_id: UUID
    created_at: datetime
    updated_at: datetime


class OutboundMessageCreate(BaseModel):
    to: str = Field(..., min_length=1, max_length=64)
    body: str = Field(..., min_length=1, max_length=4096)
    case_id: UUID
    conversation_id: UUID | None = None  # also record the text in this conversation


class OutboundMessageRead(BaseModel):
    message_sid: str
    status: str | None = None
    to: str
    phone: str
    mapping_created: bool
    message_id: int | None = None


class InboundMessage(BaseModel):
    """Fields of a Twilio inbound message webhook."""
    from_address: str
    to_address: str | None = None
    body: str = ""
    message_sid: str | None = None
    profile_name: str | None = None
    media_url: str | None = None
    media_content_type: str | None = None
