"""
Tests for the HTTP API (ingestion, management, queries).
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from app.api.auth import require_api_token
from app.domain.endpoint import SimEndpoint
from app.domain.message import IncomingMessage
from app.infrastructure.database import get_session
from app.main import app


@pytest.fixture
def mock_process_message():
    with patch("app.api.ingestion.process_message", new_callable=AsyncMock) as mock:
        yield mock


@pytest_asyncio.fixture
async def client(test_session, mock_process_message):
    """API client bound to the test database, with bearer auth satisfied."""
    async def override_get_session():
        yield test_session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[require_api_token] = lambda: "test-api-token"

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


INGEST_PAYLOAD = {
    "endpoint_id": "sim-1",
    "from_number": "+989121234567",
    "to_number": "+989120001122",
    "body": "ALERT: temp 46C",
    "raw_payload": {"signal": -70},
}


class TestHealth:
    """Tests for the service info endpoints."""

    def test_health_check(self):
        client = TestClient(app)
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "sms-forwarder"}

    def test_root(self):
        client = TestClient(app)
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["name"] == "SMS Forwarder"


class TestIngest:
    """Tests for POST /api/messages/ingest."""

    @pytest.mark.asyncio
    async def test_accepts_and_schedules_processing(self, client, test_session, mock_process_message):
        response = await client.post("/api/messages/ingest", json=INGEST_PAYLOAD)

        assert response.status_code == 202
        message_id = response.json()["id"]
        message = await test_session.get(IncomingMessage, message_id)
        assert message.body == "ALERT: temp 46C"
        assert message.processed is False
        mock_process_message.assert_awaited_once_with(message_id)

    @pytest.mark.asyncio
    async def test_idempotency_key_deduplicates(self, client, mock_process_message):
        payload = {**INGEST_PAYLOAD, "idempotency_key": "gw-42"}

        first = await client.post("/api/messages/ingest", json=payload)
        second = await client.post("/api/messages/ingest", json=payload)

        assert first.status_code == second.status_code == 202
        assert first.json()["id"] == second.json()["id"]
        assert mock_process_message.await_count == 1

    @pytest.mark.asyncio
    async def test_idempotency_key_is_scoped_to_endpoint(self, client, mock_process_message):
        from_a = await client.post(
            "/api/messages/ingest", json={**INGEST_PAYLOAD, "endpoint_id": "sim-a", "idempotency_key": "42"}
        )
        from_b = await client.post(
            "/api/messages/ingest", json={**INGEST_PAYLOAD, "endpoint_id": "sim-b", "idempotency_key": "42"}
        )

        assert from_a.status_code == from_b.status_code == 202
        assert from_a.json()["id"] != from_b.json()["id"]
        assert mock_process_message.await_count == 2

    @pytest.mark.asyncio
    async def test_duplicate_without_key_creates_two_messages(self, client, mock_process_message):
        first = await client.post("/api/messages/ingest", json=INGEST_PAYLOAD)
        second = await client.post("/api/messages/ingest", json=INGEST_PAYLOAD)

        assert first.json()["id"] != second.json()["id"]
        assert mock_process_message.await_count == 2

    @pytest.mark.asyncio
    async def test_missing_fields_rejected(self, client):
        response = await client.post("/api/messages/ingest", json={"endpoint_id": "sim-1"})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_registered_endpoint_requires_token(self, client, test_session, mock_process_message):
        test_session.add(SimEndpoint(id="sim-1", name="SIM", phone_number="+1", api_token="sk_live_secret"))
        await test_session.commit()

        missing = await client.post("/api/messages/ingest", json=INGEST_PAYLOAD)
        wrong = await client.post(
            "/api/messages/ingest", json=INGEST_PAYLOAD, headers={"X-Endpoint-Token": "nope"}
        )
        ok = await client.post(
            "/api/messages/ingest", json=INGEST_PAYLOAD, headers={"X-Endpoint-Token": "sk_live_secret"}
        )

        assert missing.status_code == 401
        assert wrong.status_code == 401
        assert ok.status_code == 202
        endpoint = await test_session.get(SimEndpoint, "sim-1", populate_existing=True)
        assert endpoint.last_seen_at is not None

    @pytest.mark.asyncio
    async def test_disabled_endpoint_rejected(self, client, test_session, mock_process_message):
        test_session.add(SimEndpoint(id="sim-1", name="SIM", phone_number="+1", is_enabled=False))
        await test_session.commit()

        response = await client.post("/api/messages/ingest", json=INGEST_PAYLOAD)

        assert response.status_code == 403
        mock_process_message.assert_not_called()


class TestBearerAuth:
    """Tests for the management API token."""

    @pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}])
    def test_rejects_missing_or_wrong_token(self, test_settings, headers):
        with patch("app.api.auth.get_settings", return_value=test_settings):
            client = TestClient(app)
            response = client.get("/api/rules", headers=headers)

        assert response.status_code == 401

    def test_auth_can_be_disabled(self, test_settings):
        test_settings.require_api_token = False
        app.dependency_overrides[get_session] = lambda: SimpleNamespace()

        with patch("app.api.auth.get_settings", return_value=test_settings), \
                patch("app.api.management.ManagementService") as mock_service_class:
            mock_service_class.return_value.list_rules = AsyncMock(return_value=[])
            client = TestClient(app)
            response = client.get("/api/rules")

        app.dependency_overrides.clear()
        assert response.status_code == 200
        assert response.json() == []


class TestManagementRoutes:
    """Tests for the rule, channel and destination routes."""

    @pytest.mark.asyncio
    async def test_rule_channel_destination_flow(self, client):
        rule = await client.post(
            "/api/rules",
            json={"name": "Alerts", "priority": 1, "filters": {"contains": "ALERT"}, "stop_processing": True},
        )
        assert rule.status_code == 201
        rule_id = rule.json()["id"]

        channel = await client.post(
            "/api/channels",
            json={"type": "telegram", "name": "Ops", "config": {"chat_id": "-100234234"}},
        )
        assert channel.status_code == 201
        channel_id = channel.json()["id"]

        destination = await client.post(
            f"/api/rules/{rule_id}/destinations",
            json={"channel_id": channel_id, "action_config": {"mute": True}},
        )
        assert destination.status_code == 201
        destination_id = destination.json()["id"]

        duplicate = await client.post(f"/api/rules/{rule_id}/destinations", json={"channel_id": channel_id})
        assert duplicate.status_code == 409

        listed = await client.get(f"/api/rules/{rule_id}/destinations")
        assert [d["id"] for d in listed.json()] == [destination_id]

        patched = await client.patch(
            f"/api/rule-destinations/{destination_id}", json={"override_text_template": "[{rule_name}] {body}"}
        )
        assert patched.json()["override_text_template"] == "[{rule_name}] {body}"

        deleted = await client.delete(f"/api/rules/{rule_id}")
        assert deleted.status_code == 204
        assert (await client.get(f"/api/rules/{rule_id}")).status_code == 404

    @pytest.mark.asyncio
    async def test_invalid_channel_config(self, client):
        response = await client.post("/api/channels", json={"type": "webhook", "name": "Hook", "config": {}})

        assert response.status_code == 422
        assert "url" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_unknown_channel_type(self, client):
        response = await client.post("/api/channels", json={"type": "fax", "name": "Fax", "config": {}})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_endpoint_registration(self, client):
        response = await client.post(
            "/api/endpoints", json={"id": "sim-1", "name": "Warehouse SIM", "phone_number": "+989121234567"}
        )

        assert response.status_code == 201
        assert response.json()["api_token"].startswith("sk_live_")
        assert (await client.get("/api/endpoints")).json()[0]["id"] == "sim-1"


class TestQueryRoutes:
    """Tests for the dashboard query routes."""

    @pytest.mark.asyncio
    async def test_messages_and_traffic(self, client):
        await client.post("/api/messages/ingest", json=INGEST_PAYLOAD)

        messages = await client.get("/api/messages")
        assert messages.status_code == 200
        assert messages.json()["total"] == 1
        message_id = messages.json()["items"][0]["id"]

        detail = await client.get(f"/api/messages/{message_id}")
        assert detail.json()["body"] == "ALERT: temp 46C"

        traffic = await client.get("/api/dashboard/sms-traffic", params={"hours": 6})
        assert len(traffic.json()) == 6
        assert sum(p["sms_count"] for p in traffic.json()) == 1

    @pytest.mark.asyncio
    async def test_traffic_hours_bounds(self, client):
        response = await client.get("/api/dashboard/sms-traffic", params={"hours": 0})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_deliveries_empty(self, client):
        response = await client.get("/api/deliveries", params={"status": "failed"})

        assert response.status_code == 200
        assert response.json() == {"total": 0, "items": []}

    @pytest.mark.asyncio
    async def test_missing_message(self, client):
        response = await client.get("/api/messages/missing")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_scheduler_status(self, client):
        jobs = [{"id": "retry_a1", "name": "Delivery retry a1", "next_run": "2024-05-01 08:00:30+00:00"}]
        with patch("app.api.queries.list_jobs", return_value=jobs), \
                patch("app.api.queries.get_scheduler") as mock_get_scheduler:
            mock_get_scheduler.return_value.running = True
            response = await client.get("/api/scheduler/status")

        assert response.status_code == 200
        assert response.json() == {"running": True, "jobs_count": 1, "jobs": jobs}
