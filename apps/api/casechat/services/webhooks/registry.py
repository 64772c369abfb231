"""Webhook handler registry."""

from __future__ import annotations

from casechat.services.webhooks.base import WebhookHandler
from casechat.services.webhooks.twilio import TwilioWhatsAppWebhookHandler

_HANDLERS: dict[str, WebhookHandler] = {
    "twilio_whatsapp": TwilioWhatsAppWebhookHandler(),
}


def get_handler(name: str) -> WebhookHandler:
    handler = _HANDLERS.get(name)
    if not handler:
        raise KeyError(f"Unknown webhook handler: {name}")
    return handler
