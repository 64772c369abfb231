"""
WhatsApp Router - phone/case mappings and outbound sends.

Inbound deliveries arrive through /webhooks/twilio/whatsapp instead.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from casechat.core.case_access import get_case_for_user
from casechat.core.deps import get_current_session, get_db, require_csrf_header, require_roles
from casechat.core.errors import NotFound
from casechat.db.enums import Role
from casechat.schemas.auth import UserSession
from casechat.schemas.whatsapp import (
    OutboundMessageCreate,
    OutboundMessageRead,
    PhoneMappingCreate,
    PhoneMappingRead,
)
from casechat.services import whatsapp_service

router = APIRouter(prefix="/whatsapp", tags=["whatsapp"])
logger = logging.getLogger(__name__)


@router.post(
    "/mappings",
    response_model=PhoneMappingRead,
    dependencies=[Depends(require_csrf_header)],
)
def map_phone_to_case(
    data: PhoneMappingCreate,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Link a phone number to a case (replaces any previous link)."""
    get_case_for_user(db, data.case_id, session.user_id, session.role)
    mapping = whatsapp_service.map_phone_to_case(db, data.phone, data.case_id)
    return PhoneMappingRead.model_validate(mapping, from_attributes=True)


@router.get("/mappings", response_model=list[PhoneMappingRead])
def list_mappings(
    session: UserSession = Depends(require_roles([Role.MANAGEMENT])),
    db: Session = Depends(get_db),
):
    return [
        PhoneMappingRead.model_validate(m, from_attributes=True)
        for m in whatsapp_service.list_mappings(db)
    ]


@router.delete(
    "/mappings/{phone}",
    status_code=204,
    dependencies=[Depends(require_csrf_header)],
)
def unmap_phone(
    phone: str,
    session: UserSession = Depends(require_roles([Role.MANAGEMENT])),
    db: Session = Depends(get_db),
):
    if not whatsapp_service.unmap_phone(db, phone):
        raise NotFound("Mapping not found")


@router.post(
    "/messages",
    response_model=OutboundMessageRead,
    dependencies=[Depends(require_csrf_header)],
)
def send_whatsapp_message(
    data: OutboundMessageCreate,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """
    Send a WhatsApp message for a case.

    Maps the number to the case if it is not mapped yet. Provider failures
    come back as gateway_error with the provider's code.
    """
    get_case_for_user(db, data.case_id, session.user_id, session.role)
    result = whatsapp_service.send_outbound_message(
        db,
        data.to,
        data.body,
        data.case_id,
        acting_user_id=session.user_id,
        conversation_id=data.conversation_id,
    )
    return OutboundMessageRead(
        message_sid=result.message_sid,
        status=result.status,
        to=result.to,
        phone=result.phone,
        mapping_created=result.mapping_created,
        message_id=result.message_id,
    )
