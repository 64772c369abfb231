"""WhatsApp bridge - phone/case mapping, inbound ingestion and outbound sends.

Phone numbers are keyed in one normalized form (digits only). Every mapping
read or write goes through normalize_phone first.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from urllib.parse import urlparse
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from casechat.core.async_utils import run_async
from casechat.core.config import settings
from casechat.core.errors import InvalidArgument, NotFound
from casechat.db.enums import ExternalChannel, MessageType
from casechat.db.models import Case, Message, PhoneCaseMapping, utcnow
from casechat.db.utils import upsert_insert
from casechat.services import conversation_service, message_service, whatsapp_gateway

logger = logging.getLogger(__name__)

NON_DIGITS = re.compile(r"\D")
MAX_PHONE_DIGITS = 15  # E.164


@dataclass(frozen=True)
class OutboundResult:
    message_sid: str
    status: str | None
    to: str
    phone: str
    mapping_created: bool
    message_id: int | None = None


def normalize_phone(raw: str | None) -> str:
    """
    Reduce any phone representation to its mapping key.

    "whatsapp:+1 (555) 010-0001", "+15550100001" and "15550100001" all
    become "15550100001".

    Raises:
        InvalidArgument: no digits, or longer than an E.164 number
    """
    value = (raw or "").strip()
    if ":" in value:
        value = value.split(":", 1)[1]  # channel prefix
    digits = NON_DIGITS.sub("", value)
    if not digits:
        raise InvalidArgument("Phone number is required")
    if len(digits) > MAX_PHONE_DIGITS:
        raise InvalidArgument("Phone number is too long")
    return digits


def external_sender_id(phone: str) -> str:
    return f"{ExternalChannel.WHATSAPP.value}:{phone}"


def mask_phone(phone: str) -> str:
    return f"***{phone[-4:]}"


# =============================================================================
# Mapping store
# =============================================================================

def map_phone_to_case(db: Session, phone_raw: str, case_id: UUID) -> PhoneCaseMapping:
    """Point a phone at a case. Last write wins."""
    phone = normalize_phone(phone_raw)
    if db.get(Case, case_id) is None:
        raise NotFound("Case not found")

    now = utcnow()
    db.execute(
        upsert_insert(db, PhoneCaseMapping)
        .values(phone=phone, case_id=case_id, created_at=now, updated_at=now)
        .on_conflict_do_update(
            index_elements=["phone"],
            set_={"case_id": case_id, "updated_at": now},
        )
    )
    db.commit()
    logger.info("Phone %s mapped to case %s", mask_phone(phone), case_id)
    return db.get(PhoneCaseMapping, phone, populate_existing=True)


def _map_if_unmapped(db: Session, phone: str, case_id: UUID) -> bool:
    """Create the mapping only if the phone has none. Returns True if created."""
    created = db.execute(
        upsert_insert(db, PhoneCaseMapping)
        .values(phone=phone, case_id=case_id)
        .on_conflict_do_nothing(index_elements=["phone"])
        .returning(PhoneCaseMapping.phone)
    ).first()
    return created is not None


def resolve_case_for_phone(db: Session, phone_raw: str) -> UUID:
    """
    Raises:
        NotFound: phone is not mapped to a case
    """
    phone = normalize_phone(phone_raw)
    case_id = db.scalar(select(PhoneCaseMapping.case_id).where(PhoneCaseMapping.phone == phone))
    if case_id is None:
        raise NotFound("No case mapped to this phone number")
    return case_id


def list_mappings(db: Session) -> list[PhoneCaseMapping]:
    return list(
        db.scalars(select(PhoneCaseMapping).order_by(PhoneCaseMapping.updated_at.desc())).all()
    )


def unmap_phone(db: Session, phone_raw: str) -> bool:
    mapping = db.get(PhoneCaseMapping, normalize_phone(phone_raw))
    if mapping is None:
        return False
    db.delete(mapping)
    db.commit()
    logger.info("Phone %s unmapped", mask_phone(mapping.phone))
    return True


# =============================================================================
# Inbound
# =============================================================================

def _media_file_name(media_url: str) -> str:
    return os.path.basename(urlparse(media_url).path) or "attachment"


def ingest_inbound_message(
    db: Session,
    from_raw: str,
    display_name: str | None,
    body: str | None,
    external_message_id: str | None,
    media_url: str | None = None,
    media_content_type: str | None = None,
) -> Message | None:
    """
    Turn an inbound WhatsApp delivery into a conversation message.

    Returns None (after logging) whenever the delivery is dropped: unknown
    sender, unmapped phone, no conversation to land in, or a provider
    message id that was already ingested. Callers acknowledge the provider
    either way.
    """
    try:
        phone = normalize_phone(from_raw)
    except InvalidArgument:
        logger.warning("Inbound WhatsApp message %s has no sender; dropped", external_message_id)
        return None

    if external_message_id and db.scalar(
        select(Message.id).where(Message.external_message_id == external_message_id)
    ) is not None:
        logger.info("Inbound WhatsApp message %s already ingested", external_message_id)
        return None

    content = body or ""
    if not content.strip() and not media_url:
        logger.info("Inbound WhatsApp message %s is empty; dropped", external_message_id)
        return None

    try:
        case_id = resolve_case_for_phone(db, phone)
    except NotFound:
        logger.warning(
            "Inbound WhatsApp message %s from unmapped phone %s; dropped",
            external_message_id,
            mask_phone(phone),
        )
        return None

    conversation = conversation_service.find_external_conversation(db, case_id, phone)
    if conversation is None:
        logger.warning(
            "Case %s has no open conversation for WhatsApp message %s; dropped",
            case_id,
            external_message_id,
        )
        return None

    try:
        message = message_service.append_message(
            db,
            conversation,
            content=content,
            message_type=MessageType.FILE if media_url else MessageType.TEXT,
            sender_external_id=external_sender_id(phone),
            sender_display_name=(display_name or "").strip() or None,
            file_url=media_url or None,
            file_name=_media_file_name(media_url) if media_url else None,
            file_type=media_content_type if media_url else None,
            external_message_id=external_message_id or None,
        )
        db.commit()
    except IntegrityError:
        # Same provider id delivered concurrently
        db.rollback()
        logger.info("Inbound WhatsApp message %s already ingested", external_message_id)
        return None

    logger.info(
        "Inbound WhatsApp message %s stored as message %s in conversation %s",
        external_message_id,
        message.id,
        conversation.id,
    )
    message_service.notify_message_created(db, message)
    return message


# =============================================================================
# Outbound
# =============================================================================

def send_outbound_message(
    db: Session,
    to_raw: str,
    body: str,
    case_id: UUID,
    acting_user_id: UUID | None = None,
    conversation_id: UUID | None = None,
) -> OutboundResult:
    """
    Send a WhatsApp message to a phone on behalf of a case.

    An unmapped phone is mapped to case_id once the provider accepts the
    message; nothing is written while the provider call is in flight. With conversation_id,
    the text is also recorded in that conversation.

    Raises:
        InvalidArgument: bad phone or empty body
        NotFound: case does not exist
        AccessDenied: actor is not a participant of conversation_id
        GatewayError: provider rejected the send (provider_code preserved)
    """
    phone = normalize_phone(to_raw)
    if not (body or "").strip():
        raise InvalidArgument("Message body is required")
    if db.get(Case, case_id) is None:
        raise NotFound("Case not found")

    conversation = None
    if conversation_id is not None:
        conversation, _ = conversation_service.require_participant(
            db, conversation_id, acting_user_id
        )
        if conversation.case_id != case_id:
            raise InvalidArgument("Conversation belongs to a different case")

    to_address = whatsapp_gateway.to_channel_address(phone)
    sent = run_async(
        whatsapp_gateway.send_message(to_address, body),
        timeout=settings.TWILIO_TIMEOUT_SECONDS * 2,
    )

    message = None
    try:
        mapping_created = _map_if_unmapped(db, phone, case_id)
        if conversation is not None:
            conversation_service.pin_external_phone(conversation, phone)
            message = message_service.append_message(
                db,
                conversation,
                content=body,
                message_type=MessageType.TEXT,
                sender_user_id=acting_user_id,
                external_message_id=sent.sid,
            )
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("WhatsApp message %s was sent but could not be recorded", sent.sid)
        raise

    if mapping_created:
        logger.info("Phone %s auto-mapped to case %s on first send", mask_phone(phone), case_id)
    logger.info("WhatsApp message %s sent to %s", sent.sid, mask_phone(phone))

    if message is not None:
        message_service.notify_message_created(db, message)

    return OutboundResult(
        message_sid=sent.sid,
        status=sent.status,
        to=to_address,
        phone=phone,
        mapping_created=mapping_created,
        message_id=message.id if message is not None else None,
    )
