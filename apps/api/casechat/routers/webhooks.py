"""Webhooks router - inbound deliveries from messaging providers."""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from casechat.core.deps import get_db
from casechat.core.rate_limit import limiter
from casechat.services.webhooks.registry import get_handler

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/twilio/whatsapp")
@limiter.exempt
async def receive_twilio_whatsapp(
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Receive a Twilio WhatsApp inbound message (form-encoded).

    Always answers 200 with empty TwiML so Twilio never retries. Exempt from
    rate limiting: a 429 would make the gateway redeliver or drop messages.
    """
    handler = get_handler("twilio_whatsapp")
    return await handler.handle(request, db)
