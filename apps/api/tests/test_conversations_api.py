"""HTTP-level tests for /conversations, /admin/conversations and /whatsapp."""

import uuid

import pytest

from casechat.core.config import settings
from casechat.services import whatsapp_gateway
from casechat.services.whatsapp_gateway import SendResult


async def _create(c, case, participants=(), **extra):
    payload = {
        "case_id": str(case.id),
        "title": "Intake",
        "participant_ids": [str(p.id) for p in participants],
        **extra,
    }
    response = await c.post("/conversations", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


# =============================================================================
# Auth and errors
# =============================================================================

async def test_requires_authentication(client_for):
    async with client_for() as c:
        response = await c.get("/conversations/recent")

    assert response.status_code == 401
    body = response.json()
    assert body["success"] is False
    assert body["kind"] == "unauthenticated"


async def test_mutations_require_csrf_header(client_for, case, consultant):
    async with client_for(consultant) as c:
        response = await c.post(
            "/conversations",
            json={"case_id": str(case.id), "title": "x"},
            headers={"X-Requested-With": ""},
        )

    assert response.status_code == 403
    assert response.json()["kind"] == "forbidden"


async def test_validation_errors_are_invalid_argument(client_for, consultant):
    async with client_for(consultant) as c:
        response = await c.post("/conversations", json={"title": "no case"})

    assert response.status_code == 400
    assert response.json()["kind"] == "invalid_argument"


# =============================================================================
# Conversations
# =============================================================================

async def test_create_and_get_conversation(client_for, case, consultant, teammate):
    async with client_for(consultant) as c:
        created = await _create(c, case, [teammate], initial_message="Kickoff", priority="high")

    assert created["priority"] == "high"
    assert created["message_count"] == 1
    assert {p["user_id"] for p in created["participants"]} == {str(consultant.id), str(teammate.id)}

    async with client_for(teammate) as c:
        detail = await c.get(f"/conversations/{created['id']}")
        unread = await c.get("/conversations/unread-count")

    assert detail.status_code == 200
    assert detail.json()["unread_count"] == 1
    assert unread.json() == {"unread_count": 1}


async def test_get_conversation_errors(client_for, case, consultant, outsider):
    async with client_for(consultant) as c:
        created = await _create(c, case)
        missing = await c.get(f"/conversations/{uuid.uuid4()}")

    async with client_for(outsider) as c:
        denied = await c.get(f"/conversations/{created['id']}")

    assert missing.status_code == 404
    assert missing.json()["kind"] == "not_found"
    assert denied.status_code == 403
    assert denied.json()["kind"] == "access_denied"


async def test_case_listing_and_search(client_for, case, consultant):
    async with client_for(consultant) as c:
        await _create(c, case, title="Visa paperwork")
        await _create(c, case, title="Housing")
        listed = await c.get(f"/conversations/case/{case.id}")
        found = await c.get("/conversations/search", params={"q": "visa"})
        recent = await c.get("/conversations/recent")

    assert [item["title"] for item in listed.json()] == ["Housing", "Visa paperwork"]
    assert [item["title"] for item in found.json()] == ["Visa paperwork"]
    assert len(recent.json()) == 2


async def test_case_listing_excludes_conversations_without_membership(client_for, case, consultant, teammate):
    async with client_for(consultant) as c:
        await _create(c, case, title="Consultant only", initial_message="private note")
        shared = await _create(c, case, [teammate], title="Team")

    async with client_for(teammate) as c:
        listed = await c.get(f"/conversations/case/{case.id}")

    assert listed.status_code == 200
    assert [item["id"] for item in listed.json()] == [shared["id"]]


async def test_status_and_priority_updates(client_for, case, consultant):
    async with client_for(consultant) as c:
        created = await _create(c, case)
        status = await c.patch(f"/conversations/{created['id']}/status", json={"status": "resolved"})
        bad = await c.patch(f"/conversations/{created['id']}/status", json={"status": "closed"})
        priority = await c.patch(
            f"/conversations/{created['id']}/priority", json={"priority": "urgent"}
        )

    assert status.json()["status"] == "resolved"
    assert bad.status_code == 400
    assert priority.json()["priority"] == "urgent"
    assert priority.json()["last_message"] == "Priority changed to urgent"


async def test_participants_endpoints(client_for, case, consultant, outsider):
    async with client_for(consultant) as c:
        created = await _create(c, case)
        added = await c.post(
            f"/conversations/{created['id']}/participants", json={"user_id": str(outsider.id)}
        )
        again = await c.post(
            f"/conversations/{created['id']}/participants", json={"user_id": str(outsider.id)}
        )

    assert added.status_code == 200
    assert {p["user_id"] for p in added.json()} == {str(consultant.id), str(outsider.id)}
    assert len(again.json()) == 2

    async with client_for(outsider) as c:
        left = await c.delete(f"/conversations/{created['id']}/participants/me")
        after = await c.get(f"/conversations/{created['id']}/participants")

    assert left.status_code == 204
    assert after.status_code == 403


async def test_export_endpoint(client_for, case, consultant, manager_user):
    async with client_for(consultant) as c:
        created = await _create(c, case, initial_message="hello")

    async with client_for(manager_user) as c:
        export = await c.get(f"/conversations/{created['id']}/export")

    assert export.status_code == 200
    assert [m["content"] for m in export.json()["messages"]] == ["hello"]


# =============================================================================
# Messages
# =============================================================================

async def test_message_flow(client_for, case, consultant, teammate):
    async with client_for(consultant) as c:
        created = await _create(c, case, [teammate])
        conversation_id = created["id"]
        first = await c.post(f"/conversations/{conversation_id}/messages", data={"content": "one"})
        second = await c.post(f"/conversations/{conversation_id}/messages", data={"content": "two"})

    assert first.status_code == 201
    assert first.json()["id"] < second.json()["id"]
    assert first.json()["sender"]["id"] == str(consultant.id)

    async with client_for(teammate) as c:
        read = await c.post(
            f"/conversations/{conversation_id}/messages/{first.json()['id']}/read"
        )
        page = await c.get(f"/conversations/{conversation_id}/messages", params={"limit": 10})
        unread = await c.get("/conversations/unread-count")

    assert read.status_code == 200
    assert read.json()["message_id"] == first.json()["id"]
    assert [m["content"] for m in page.json()] == ["one", "two"]
    assert [m["is_read_by_me"] for m in page.json()] == [True, False]
    assert unread.json()["unread_count"] == 0


async def test_message_pagination_cursor(client_for, case, consultant):
    async with client_for(consultant) as c:
        created = await _create(c, case)
        conversation_id = created["id"]
        ids = []
        for text in ("a", "b", "c"):
            response = await c.post(
                f"/conversations/{conversation_id}/messages", data={"content": text}
            )
            ids.append(response.json()["id"])
        page = await c.get(
            f"/conversations/{conversation_id}/messages", params={"before": ids[2], "limit": 1}
        )

    assert [m["content"] for m in page.json()] == ["b"]


async def test_file_upload(client_for, case, consultant, tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "LOCAL_STORAGE_PATH", str(tmp_path))

    async with client_for(consultant) as c:
        created = await _create(c, case)
        response = await c.post(
            f"/conversations/{created['id']}/messages",
            data={"content": "scan attached"},
            files={"file": ("scan.png", b"\x89PNG\r\n\x1a\n", "image/png")},
        )
        rejected = await c.post(
            f"/conversations/{created['id']}/messages",
            files={"file": ("run.sh", b"echo", "text/x-sh")},
        )

    assert response.status_code == 201
    body = response.json()
    assert body["message_type"] == "file"
    assert body["file_name"] == "scan.png"
    assert body["file_type"] == "image/png"
    assert rejected.status_code == 400


async def test_delete_message_endpoint(client_for, case, consultant, teammate):
    async with client_for(consultant) as c:
        created = await _create(c, case, [teammate])
        sent = await c.post(f"/conversations/{created['id']}/messages", data={"content": "oops"})
    message_id = sent.json()["id"]

    async with client_for(teammate) as c:
        forbidden = await c.delete(f"/conversations/{created['id']}/messages/{message_id}")
    async with client_for(consultant) as c:
        deleted = await c.delete(f"/conversations/{created['id']}/messages/{message_id}")

    assert forbidden.status_code == 403
    assert forbidden.json()["kind"] == "forbidden"
    assert deleted.status_code == 200
    assert deleted.json()["content"] == settings.DELETED_MESSAGE_PLACEHOLDER


# =============================================================================
# Admin
# =============================================================================

async def test_admin_endpoints_require_management(client_for, case, consultant, manager_user):
    async with client_for(consultant) as c:
        await _create(c, case)
        denied = await c.get("/admin/conversations")

    async with client_for(manager_user) as c:
        listing = await c.get("/admin/conversations")
        stats = await c.get("/admin/conversations/statistics")

    assert denied.status_code == 403
    assert listing.json()["total"] == 1
    assert stats.json()["active"] == 1


# =============================================================================
# WhatsApp
# =============================================================================

@pytest.fixture
def accepted_sends(monkeypatch):
    sent = []

    async def _send(to_address, body):
        sent.append(to_address)
        return SendResult(sid="SM42", status="queued", to=to_address, from_="whatsapp:+14155238886")

    monkeypatch.setattr(whatsapp_gateway, "send_message", _send)
    return sent


async def test_whatsapp_mapping_endpoints(client_for, case, consultant, outsider, manager_user):
    async with client_for(consultant) as c:
        mapped = await c.post(
            "/whatsapp/mappings", json={"phone": "whatsapp:+15550100001", "case_id": str(case.id)}
        )
    async with client_for(outsider) as c:
        denied = await c.post(
            "/whatsapp/mappings", json={"phone": "+15550100002", "case_id": str(case.id)}
        )
    async with client_for(manager_user) as c:
        listing = await c.get("/whatsapp/mappings")
        removed = await c.delete("/whatsapp/mappings/15550100001")
        missing = await c.delete("/whatsapp/mappings/15550100001")

    assert mapped.status_code == 200
    assert mapped.json()["phone"] == "15550100001"
    assert denied.status_code == 403
    assert [m["phone"] for m in listing.json()] == ["15550100001"]
    assert removed.status_code == 204
    assert missing.status_code == 404


async def test_whatsapp_send_endpoint(client_for, case, consultant, accepted_sends):
    async with client_for(consultant) as c:
        response = await c.post(
            "/whatsapp/messages",
            json={"to": "+1 555 010 0001", "body": "Hello", "case_id": str(case.id)},
        )

    assert response.status_code == 200, response.text
    assert response.json()["mapping_created"] is True
    assert response.json()["message_sid"] == "SM42"
    assert accepted_sends == ["whatsapp:+15550100001"]


async def test_whatsapp_send_gateway_error(client_for, case, consultant):
    # No Twilio credentials in the test environment
    async with client_for(consultant) as c:
        response = await c.post(
            "/whatsapp/messages",
            json={"to": "+15550100001", "body": "Hello", "case_id": str(case.id)},
        )

    assert response.status_code == 502
    assert response.json()["kind"] == "gateway_error"
    assert "provider_code" in response.json()


async def test_health(client_for):
    async with client_for() as c:
        response = await c.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
