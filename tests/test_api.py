"""
Tests for the HTTP layer.

These tests verify:
1. Request context headers are required and validated
2. Domain errors map to the documented status codes
3. Each router is wired to its service
"""

from uuid import uuid4

import httpx
import pytest
from starlette.testclient import TestClient

from comms_engine.core.database import get_session
from comms_engine.main import create_app
from comms_engine.models import FormAccessStatus, MessageTemplate
from comms_engine.services.queue_processor import QueueProcessor
from comms_engine.services.realtime import ConnectionDirectory


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def app(session_factory, index, providers, directory, email_sender, clock):
    """Application with runtime state set directly; the lifespan does not run."""
    app = create_app()

    async def override_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_session] = override_session
    app.state.channel_providers = providers
    app.state.priority_index = index
    app.state.connection_directory = directory
    app.state.session_factory = session_factory
    app.state.queue_processor = QueueProcessor(session_factory, index, email_sender)
    return app


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def headers(tenant_id, user) -> dict[str, str]:
    return {"X-Tenant-ID": str(tenant_id), "X-User-ID": str(user.id)}


# =============================================================================
# TEST: REQUEST CONTEXT & ERRORS
# =============================================================================


class TestRequestContext:

    async def test_missing_tenant_header(self, client):
        response = await client.get("/api/v1/queue/stats")
        assert response.status_code == 400
        assert response.json()["detail"] == "X-Tenant-ID header required"

    async def test_malformed_tenant_header(self, client):
        response = await client.get("/api/v1/queue/stats", headers={"X-Tenant-ID": "acme"})
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid X-Tenant-ID format"

    async def test_not_found_maps_to_404(self, client, headers):
        response = await client.get(f"/api/v1/queue/emails/{uuid4()}", headers=headers)

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    async def test_template_validation_maps_to_422(self, client, session, headers, tenant_id):
        template = MessageTemplate(
            tenant_id=tenant_id,
            name="Welcome",
            subject="Hi {{name}}",
            html_content="<p>{{name}}</p>",
            variables=[{"name": "name", "type": "string", "required": True}],
        )
        session.add(template)
        await session.commit()

        response = await client.post(
            "/api/v1/queue/emails/template",
            headers=headers,
            json={"template_id": str(template.id), "recipient": "a@example.com"},
        )

        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "validation_error"
        assert "Required variable 'name' is missing" in body["message"]

    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["providers"] == {"email": True, "sms": True, "whatsapp": True}
        assert body["queue_processor"]["running"] is False


# =============================================================================
# TEST: QUEUE ROUTES
# =============================================================================


class TestQueueRoutes:

    async def test_enqueue_then_process(self, client, headers, email_sender):
        response = await client.post(
            "/api/v1/queue/emails",
            headers=headers,
            json={"recipient": "a@example.com", "subject": "Hello", "html_content": "<p>x</p>", "priority": 3},
        )
        assert response.status_code == 202
        message_id = response.json()["message_id"]
        assert response.json()["status"] == "pending"

        cycle = await client.post("/api/v1/queue/processor/cycle")
        assert cycle.json()["sent"] == 1

        state = await client.get(f"/api/v1/queue/emails/{message_id}", headers=headers)
        assert state.json()["status"] == "sent"
        assert state.json()["attempts"] == 1
        assert email_sender.sent[0]["to"] == "a@example.com"

    async def test_invalid_recipient_is_rejected(self, client, headers):
        response = await client.post(
            "/api/v1/queue/emails",
            headers=headers,
            json={"recipient": "nope", "subject": "Hello", "html_content": "<p>x</p>"},
        )
        assert response.status_code == 422

    async def test_stats(self, client, headers):
        await client.post(
            "/api/v1/queue/emails",
            headers=headers,
            json={"recipient": "a@example.com", "subject": "Hello", "html_content": "<p>x</p>"},
        )

        response = await client.get("/api/v1/queue/stats", headers=headers)
        assert response.json()["pending"] == 1
        assert response.json()["total"] == 1


# =============================================================================
# TEST: MESSAGING ROUTES
# =============================================================================


class TestMessagingRoutes:

    async def test_sms_failure_is_a_result_not_an_error(self, client, headers):
        response = await client.post(
            "/api/v1/messaging/sms", headers=headers, json={"to": "12345", "message": "Hi"}
        )

        assert response.status_code == 200
        assert response.json() == {
            "success": False,
            "provider_message_id": None,
            "error": "Invalid phone number format",
        }

        stats = await client.get("/api/v1/messaging/stats", headers=headers, params={"channel": "sms"})
        assert stats.json()["failed"] == 1


# =============================================================================
# TEST: NOTIFICATION ROUTES
# =============================================================================


class TestNotificationRoutes:

    async def test_send_list_and_read(self, client, headers, user):
        sent = await client.post(
            "/api/v1/notifications",
            headers=headers,
            json={"user_id": str(user.id), "title": "Form submitted", "message": "Sam is done"},
        )
        assert sent.status_code == 201
        [notification_id] = sent.json()["notification_ids"]

        listing = await client.get("/api/v1/notifications", headers=headers)
        body = listing.json()
        assert body["unread_count"] == 1
        assert body["page"]["total"] == 1
        assert body["notifications"][0]["title"] == "Form submitted"

        read = await client.patch(f"/api/v1/notifications/{notification_id}/read", headers=headers)
        assert read.status_code == 200

        count = await client.get("/api/v1/notifications/count", headers=headers)
        assert count.json()["count"] == 0

    async def test_other_users_notification_is_not_found(self, client, headers, user, tenant_id):
        sent = await client.post(
            "/api/v1/notifications",
            headers=headers,
            json={"user_id": str(user.id), "title": "Private", "message": "x"},
        )
        [notification_id] = sent.json()["notification_ids"]

        stranger = {"X-Tenant-ID": str(tenant_id), "X-User-ID": str(uuid4())}
        response = await client.delete(f"/api/v1/notifications/{notification_id}", headers=stranger)
        assert response.status_code == 404

    async def test_default_preferences(self, client, headers):
        response = await client.get("/api/v1/notifications/preferences", headers=headers)
        assert response.json()["is_default"] is True
        assert response.json()["email_enabled"] is True

        updated = await client.put(
            "/api/v1/notifications/preferences", headers=headers, json={"sms_enabled": True}
        )
        assert updated.json()["sms_enabled"] is True
        assert updated.json()["is_default"] is False


# =============================================================================
# TEST: REMINDER ROUTES
# =============================================================================


class TestReminderRoutes:

    async def test_fire_for_submitted_form_conflicts(self, client, headers, make_access, clock):
        access = await make_access(created_at=clock.now, status=FormAccessStatus.SUBMITTED)

        response = await client.post(f"/api/v1/reminders/{access.id}/fire", headers=headers)

        assert response.status_code == 409
        assert response.json()["error"] == "state_conflict"

    async def test_other_tenants_access_is_not_found(self, client, headers, make_access, clock, other_tenant_id):
        access = await make_access(created_at=clock.now, tenant=other_tenant_id)

        response = await client.delete(f"/api/v1/reminders/{access.id}", headers=headers)
        assert response.status_code == 404


class TestNotificationWebSocket:

    def test_connected_frame_comes_first_then_replies(self):
        app = create_app()
        app.state.connection_directory = ConnectionDirectory()
        url = f"/api/v1/notifications/ws?tenant_id={uuid4()}&user_id={uuid4()}"

        with TestClient(app).websocket_connect(url) as websocket:
            connected = websocket.receive_json()
            websocket.send_json({"action": "ping"})
            pong = websocket.receive_json()

        assert connected["event"] == "connected"
        assert connected["connection_id"]
        assert pong == {"event": "pong"}
