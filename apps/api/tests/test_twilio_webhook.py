"""Tests for the Twilio WhatsApp inbound webhook."""

import pytest
from sqlalchemy import func, select

from casechat.core.config import settings
from casechat.core.rate_limit import limiter
from casechat.db.models import Message
from casechat.services import conversation_service, whatsapp_gateway, whatsapp_service

WEBHOOK_PATH = "/webhooks/twilio/whatsapp"
WEBHOOK_URL = "https://api.example.test/webhooks/twilio/whatsapp"


@pytest.fixture
def mapped_conversation(db, case, consultant):
    detail = conversation_service.create_conversation(
        db,
        case_id=case.id,
        title="Client chat",
        creator_id=consultant.id,
        creator_role=consultant.role,
    )
    whatsapp_service.map_phone_to_case(db, "+15550100001", case.id)
    return detail


def _form(sid="SM100", body="Hello from WhatsApp", **extra):
    data = {
        "From": "whatsapp:+15550100001",
        "To": "whatsapp:+14155238886",
        "Body": body,
        "MessageSid": sid,
        "ProfileName": "Maria",
    }
    data.update(extra)
    return data


def _count(db):
    return db.scalar(select(func.count(Message.id)))


def _assert_ack(response):
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/xml")
    assert response.text == "<Response></Response>"


async def test_webhook_stores_inbound_message(client_for, db, mapped_conversation):
    async with client_for() as c:
        response = await c.post(WEBHOOK_PATH, data=_form())

    _assert_ack(response)
    stored = db.scalars(select(Message)).one()
    assert stored.conversation_id == mapped_conversation.id
    assert stored.content == "Hello from WhatsApp"
    assert stored.sender_display_name == "Maria"


async def test_webhook_redelivery_is_idempotent(client_for, db, mapped_conversation):
    async with client_for() as c:
        first = await c.post(WEBHOOK_PATH, data=_form(sid="SM200"))
        second = await c.post(WEBHOOK_PATH, data=_form(sid="SM200"))

    _assert_ack(first)
    _assert_ack(second)
    assert _count(db) == 1


async def test_webhook_unmapped_phone_still_acknowledged(client_for, db, case):
    async with client_for() as c:
        response = await c.post(WEBHOOK_PATH, data=_form(From="whatsapp:+15550109999"))

    _assert_ack(response)
    assert _count(db) == 0


async def test_webhook_acknowledges_internal_failure(client_for, db, mapped_conversation, monkeypatch):
    def _explode(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(whatsapp_service, "ingest_inbound_message", _explode)

    async with client_for() as c:
        response = await c.post(WEBHOOK_PATH, data=_form())

    _assert_ack(response)
    assert _count(db) == 0


async def test_webhook_rejects_bad_signature_silently(client_for, db, mapped_conversation, monkeypatch):
    monkeypatch.setattr(settings, "TWILIO_VALIDATE_SIGNATURE", True)
    monkeypatch.setattr(settings, "TWILIO_AUTH_TOKEN", "secret")
    monkeypatch.setattr(settings, "TWILIO_WEBHOOK_URL", WEBHOOK_URL)

    async with client_for() as c:
        response = await c.post(
            WEBHOOK_PATH, data=_form(), headers={"X-Twilio-Signature": "forged"}
        )

    _assert_ack(response)
    assert _count(db) == 0


async def test_webhook_accepts_valid_signature(client_for, db, mapped_conversation, monkeypatch):
    monkeypatch.setattr(settings, "TWILIO_VALIDATE_SIGNATURE", True)
    monkeypatch.setattr(settings, "TWILIO_AUTH_TOKEN", "secret")
    monkeypatch.setattr(settings, "TWILIO_WEBHOOK_URL", WEBHOOK_URL)
    form = _form(sid="SM300")
    signature = whatsapp_gateway.compute_signature(WEBHOOK_URL, form, "secret")

    async with client_for() as c:
        response = await c.post(
            WEBHOOK_PATH, data=form, headers={"X-Twilio-Signature": signature}
        )

    _assert_ack(response)
    assert _count(db) == 1


async def test_webhook_is_never_rate_limited(client_for, db, mapped_conversation, monkeypatch):
    monkeypatch.setattr(limiter, "enabled", True)
    limiter.reset()

    async with client_for() as c:
        responses = [
            await c.post(WEBHOOK_PATH, data=_form(sid=f"SM4{i:02d}")) for i in range(6)
        ]

    for response in responses:
        _assert_ack(response)
    assert _count(db) == 6
