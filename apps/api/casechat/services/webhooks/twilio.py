"""Twilio WhatsApp inbound webhook handler.

Twilio retries deliveries that don't get a 2xx, and nothing it could retry
would fix an unmapped phone or a bad signature. Every delivery is therefore
acknowledged with an empty TwiML response, whatever happened internally.
"""

from __future__ import annotations

import logging

from fastapi import Request, Response
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from casechat.core.config import settings
from casechat.schemas.whatsapp import InboundMessage
from casechat.services import whatsapp_gateway, whatsapp_service

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Twilio-Signature"
EMPTY_TWIML = "<Response></Response>"


def acknowledge() -> Response:
    return Response(content=EMPTY_TWIML, media_type="application/xml")


def parse_inbound(params: dict[str, str]) -> InboundMessage:
    return InboundMessage(
        from_address=params.get("From", ""),
        to_address=params.get("To"),
        body=params.get("Body", ""),
        message_sid=params.get("MessageSid") or params.get("SmsMessageSid"),
        profile_name=params.get("ProfileName"),
        media_url=params.get("MediaUrl0"),
        media_content_type=params.get("MediaContentType0"),
    )


class TwilioWhatsAppWebhookHandler:
    async def handle(self, request: Request, db: Session) -> Response:
        try:
            form = await request.form()
            params = {key: value for key, value in form.items() if isinstance(value, str)}

            if settings.TWILIO_VALIDATE_SIGNATURE:
                url = settings.TWILIO_WEBHOOK_URL or str(request.url)
                signature = request.headers.get(SIGNATURE_HEADER, "")
                if not whatsapp_gateway.verify_signature(url, params, signature):
                    logger.warning("Twilio webhook with invalid signature ignored")
                    return acknowledge()

            inbound = parse_inbound(params)
            await run_in_threadpool(
                whatsapp_service.ingest_inbound_message,
                db,
                inbound.from_address,
                inbound.profile_name,
                inbound.body,
                inbound.message_sid,
                inbound.media_url,
                inbound.media_content_type,
            )
        except Exception:
            logger.exception("Twilio webhook processing failed")
            db.rollback()
        return acknowledge()
