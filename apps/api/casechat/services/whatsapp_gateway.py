"""Twilio WhatsApp gateway.

Outbound sends go through the Twilio Messages REST API. Inbound deliveries
arrive at the webhook router; this module only verifies their signature.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Mapping

import httpx

from casechat.core.config import settings
from casechat.core.errors import GatewayError
from casechat.services.http_service import request_with_retries

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "whatsapp:"
MESSAGES_PATH = "/2010-04-01/Accounts/{account_sid}/Messages.json"

# Twilio error codes operators act on differently
ERROR_INVALID_NUMBER = 21211
ERROR_NOT_OPTED_IN = 21408
ERROR_SANDBOX_NOT_JOINED = 63016
ERROR_AUTHENTICATION = 20003

PROVIDER_ERROR_HINTS = {
    ERROR_INVALID_NUMBER: "Invalid phone number",
    ERROR_NOT_OPTED_IN: "Recipient has not opted in to WhatsApp messages",
    ERROR_SANDBOX_NOT_JOINED: "Recipient has not joined the WhatsApp sandbox",
    ERROR_AUTHENTICATION: "Messaging provider authentication failed",
}


@dataclass(frozen=True)
class SendResult:
    sid: str
    status: str | None
    to: str
    from_: str


def to_channel_address(normalized_phone: str) -> str:
    """15550100001 -> whatsapp:+15550100001"""
    return f"{CHANNEL_PREFIX}+{normalized_phone}"


def _build_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.TWILIO_API_BASE_URL,
        timeout=settings.TWILIO_TIMEOUT_SECONDS,
        auth=(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN),
    )


def _provider_error(response: httpx.Response) -> GatewayError:
    code = None
    provider_message = None
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        code = data.get("code")
        provider_message = data.get("message")

    message = PROVIDER_ERROR_HINTS.get(code) or "Failed to send WhatsApp message"
    return GatewayError(
        message,
        provider_code=code,
        provider_status=response.status_code,
        detail=provider_message,
    )


async def send_message(to_address: str, body: str) -> SendResult:
    """
    Send a WhatsApp message.

    Args:
        to_address: channel address, e.g. "whatsapp:+15550100001"
        body: message text

    Raises:
        GatewayError: provider rejected the send, or it could not be reached
    """
    if not settings.gateway_configured:
        raise GatewayError("WhatsApp gateway is not configured")

    from_address = settings.TWILIO_WHATSAPP_NUMBER
    path = MESSAGES_PATH.format(account_sid=settings.TWILIO_ACCOUNT_SID)
    form = {"From": from_address, "To": to_address, "Body": body}

    try:
        async with _build_client() as client:

            async def request_fn() -> httpx.Response:
                return await client.post(path, data=form)

            response = await request_with_retries(request_fn)
    except httpx.HTTPError as exc:
        logger.warning("Twilio send failed: %s", exc.__class__.__name__)
        raise GatewayError(
            "Messaging provider unreachable", detail=exc.__class__.__name__
        ) from exc

    if response.status_code >= 400:
        error = _provider_error(response)
        logger.warning(
            "Twilio rejected send to %s: status=%s code=%s",
            to_address,
            response.status_code,
            error.provider_code,
        )
        raise error

    data = response.json()
    logger.info("Twilio accepted message sid=%s status=%s", data.get("sid"), data.get("status"))
    return SendResult(
        sid=data["sid"],
        status=data.get("status"),
        to=data.get("to") or to_address,
        from_=data.get("from") or from_address,
    )


# =============================================================================
# Webhook signatures
# =============================================================================

def compute_signature(url: str, params: Mapping[str, str], auth_token: str) -> str:
    """X-Twilio-Signature: base64(HMAC-SHA1(url + sorted key/value pairs))."""
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode(), payload.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


def verify_signature(url: str, params: Mapping[str, str], signature: str) -> bool:
    if not signature or not settings.TWILIO_AUTH_TOKEN:
        return False
    expected = compute_signature(url, params, settings.TWILIO_AUTH_TOKEN)
    return hmac.compare_digest(expected, signature)
