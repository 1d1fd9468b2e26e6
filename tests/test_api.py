"""
test_api.py — HTTP and WebSocket surface tests.

Covers:
    • Alert create / active / cancel / resolve, status codes and error body
    • 429 with Retry-After on a second create inside the window
    • 400 for unknown alert type and malformed bodies, 401 without identity
    • Responder acknowledge, accepted-responders, location append
    • Contacts + invite round-trip, push registration
    • Health probes
    • Live socket: snapshot, ping/pong, invalid JSON, access denied

Run with:
    pytest tests/test_api.py -v
"""

from __future__ import annotations

import uuid

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from backend.app.alerts.models import ALERTS
from backend.app.api.deps import AppContext
from backend.app.api.v1.alerts import WS_CLOSE_FORBIDDEN, WS_CLOSE_NOT_FOUND
from backend.app.main import create_app
from backend.app.realtime.transport import LocalTransport
from backend.app.store.base import StoreError
from backend.app.store.memory import InMemoryStoreBackend

from tests.conftest import BOB, CAROL, JHB_LAT, JHB_LNG, OWNER

BOB_EMAIL = "bob@example.com"


class BrokenAlertsBackend(InMemoryStoreBackend):
    async def insert(self, relation, rows):
        if relation == ALERTS:
            raise StoreError("constraint violated")
        return await super().insert(relation, rows)


def _make_client(backend=None) -> TestClient:
    context = AppContext.create(
        backend=backend or InMemoryStoreBackend(),
        transport=LocalTransport(),
        lifecycle_options={"acceptance_retry_delay": 0.0},
    )
    return TestClient(create_app(context))


def _as(user_id: str) -> dict:
    return {"X-User-Id": user_id}


def _link(client: TestClient, owner_id: str, contact_id: str, email: str) -> None:
    invite = client.post("/api/v1/contacts/invites", json={"email": email}, headers=_as(owner_id))
    assert invite.status_code == 201
    token = invite.json()["token"]
    accepted = client.post(
        f"/api/v1/contacts/invites/{token}/accept", json={"email": email}, headers=_as(contact_id),
    )
    assert accepted.status_code == 200


def _create(client: TestClient, user_id: str = OWNER, alert_type: str = "robbery", **extra):
    body = {"alert_type": alert_type, "location": {"lat": JHB_LAT, "lng": JHB_LNG}, **extra}
    return client.post("/api/v1/alerts", json=body, headers=_as(user_id))


def _receive_until(ws, message_type: str, limit: int = 25) -> dict:
    """Skip interleaved snapshots until a message of ``message_type`` arrives."""
    for _ in range(limit):
        message = ws.receive_json()
        if message.get("type") == message_type:
            return message
    raise AssertionError(f"no {message_type!r} message within {limit} messages")


@pytest.fixture
def client():
    with _make_client() as c:
        yield c


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Alert lifecycle
# ═══════════════════════════════════════════════════════════════════════════

class TestAlertEndpoints:

    def test_create_alert(self, client):
        _link(client, OWNER, BOB, BOB_EMAIL)
        resp = _create(client)

        assert resp.status_code == 201
        data = resp.json()
        assert data["status"] == "active"
        assert data["alert_type"] == "robbery"
        assert data["location"]["lat"] == JHB_LAT
        assert data["contacts_notified"] == [BOB]

        active = client.get("/api/v1/alerts/active", headers=_as(OWNER)).json()
        assert active["alert"]["id"] == data["id"]

    def test_no_active_alert(self, client):
        assert client.get("/api/v1/alerts/active", headers=_as(OWNER)).json() == {"alert": None}

    def test_second_create_rate_limited(self, client):
        first = _create(client)
        assert first.status_code == 201

        second = _create(client)
        assert second.status_code == 429
        assert second.headers["Retry-After"] == "30"
        assert second.json()["error"]["code"] == "RATE_LIMITED"

        active = client.get("/api/v1/alerts/active", headers=_as(OWNER)).json()
        assert active["alert"]["id"] == first.json()["id"]

    def test_unknown_alert_type(self, client):
        resp = _create(client, alert_type="alien_invasion")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"
        assert client.get("/api/v1/alerts/active", headers=_as(OWNER)).json() == {"alert": None}

    def test_malformed_body(self, client):
        resp = client.post(
            "/api/v1/alerts", json={"location": {"lat": "north"}}, headers=_as(OWNER),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "Malformed request"

    @pytest.mark.parametrize("headers", [{}, {"X-User-Id": "   "}])
    def test_identity_required(self, client, headers):
        resp = client.post("/api/v1/alerts", json={}, headers=headers)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "UNAUTHENTICATED"

    def test_store_failure_is_500(self):
        with _make_client(BrokenAlertsBackend()) as client:
            resp = _create(client)
        assert resp.status_code == 500
        assert resp.json()["error"]["message"] == "Failed to create emergency alert"

    def test_cancel_and_resolve(self, client):
        alert_id = _create(client).json()["id"]

        cancelled = client.post(f"/api/v1/alerts/{alert_id}/cancel", headers=_as(OWNER))
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"
        assert cancelled.json()["resolved_at"] is not None

        # No-op on an already closed alert
        again = client.post(f"/api/v1/alerts/{alert_id}/resolve", headers=_as(OWNER))
        assert again.status_code == 200
        assert again.json()["status"] == "cancelled"

    def test_cancel_by_other_user(self, client):
        alert_id = _create(client).json()["id"]
        resp = client.post(f"/api/v1/alerts/{alert_id}/cancel", headers=_as(BOB))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "AUTHORIZATION_DENIED"

    def test_cancel_unknown_alert(self, client):
        resp = client.post(f"/api/v1/alerts/{uuid.uuid4()}/cancel", headers=_as(OWNER))
        assert resp.status_code == 404


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Responders & locations
# ═══════════════════════════════════════════════════════════════════════════

class TestResponderEndpoints:

    def test_acknowledge_and_share_location(self, client):
        _link(client, OWNER, BOB, BOB_EMAIL)
        alert_id = _create(client).json()["id"]

        ack = client.post(f"/api/v1/alerts/{alert_id}/acknowledge", headers=_as(BOB))
        assert ack.status_code == 200
        assert ack.json()["acknowledged_at"] is not None

        accepted = client.get(f"/api/v1/alerts/{alert_id}/accepted-responders", headers=_as(OWNER))
        assert accepted.json()["accepted_user_ids"] == [BOB]
        assert accepted.json()["count"] == 1

        loc = client.post(
            f"/api/v1/alerts/{alert_id}/locations",
            json={"latitude": -26.21, "longitude": 28.01, "accuracy": 10},
            headers=_as(BOB),
        )
        assert loc.status_code == 201
        assert loc.json()["user_id"] == BOB

        locations = client.get(f"/api/v1/alerts/{alert_id}/responder-locations", headers=_as(OWNER))
        assert locations.status_code == 200
        assert list(locations.json()["grouped_by_user"]) == [BOB]

    def test_location_before_acceptance_denied(self, client):
        _link(client, OWNER, BOB, BOB_EMAIL)
        alert_id = _create(client).json()["id"]
        resp = client.post(
            f"/api/v1/alerts/{alert_id}/locations",
            json={"latitude": -26.21, "longitude": 28.01},
            headers=_as(BOB),
        )
        assert resp.status_code == 403

    def test_location_out_of_range(self, client):
        alert_id = _create(client).json()["id"]
        resp = client.post(
            f"/api/v1/alerts/{alert_id}/locations",
            json={"latitude": 120, "longitude": 28.01},
            headers=_as(OWNER),
        )
        assert resp.status_code == 400

    def test_decline(self, client):
        _link(client, OWNER, BOB, BOB_EMAIL)
        alert_id = _create(client).json()["id"]
        resp = client.post(f"/api/v1/alerts/{alert_id}/decline", headers=_as(BOB))
        assert resp.status_code == 200
        assert resp.json()["declined_at"] is not None

    def test_non_participant_cannot_view(self, client):
        alert_id = _create(client).json()["id"]
        assert client.get(f"/api/v1/alerts/{alert_id}", headers=_as(CAROL)).status_code == 403
        assert client.get(f"/api/v1/alerts/{alert_id}", headers=_as(OWNER)).status_code == 200


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Contacts & push
# ═══════════════════════════════════════════════════════════════════════════

class TestContactEndpoints:

    def test_manual_contact(self, client):
        resp = client.post(
            "/api/v1/contacts", json={"name": "Bob", "email": BOB_EMAIL}, headers=_as(OWNER),
        )
        assert resp.status_code == 201
        assert resp.json()["notifiable"] is False

        listed = client.get("/api/v1/contacts", headers=_as(OWNER)).json()
        assert [c["name"] for c in listed] == ["Bob"]

    def test_invite_round_trip(self, client):
        invite = client.post("/api/v1/contacts/invites", json={"email": BOB_EMAIL}, headers=_as(OWNER))
        assert invite.status_code == 201
        token = invite.json()["token"]
        assert invite.json()["invite_url"].endswith(token)

        preview = client.get(f"/api/v1/contacts/invites/{token}")
        assert preview.status_code == 200
        assert preview.json()["target_email"] == BOB_EMAIL

        accepted = client.post(
            f"/api/v1/contacts/invites/{token}/accept", json={"email": BOB_EMAIL}, headers=_as(BOB),
        )
        assert accepted.status_code == 200
        assert accepted.json()["contact"]["notifiable"] is True
        assert accepted.json()["reverse_contact"]["contact_user_id"] == OWNER

        again = client.post(
            f"/api/v1/contacts/invites/{token}/accept", json={"email": BOB_EMAIL}, headers=_as(BOB),
        )
        assert again.status_code == 400

    def test_invite_wrong_email(self, client):
        token = client.post(
            "/api/v1/contacts/invites", json={"email": BOB_EMAIL}, headers=_as(OWNER),
        ).json()["token"]
        resp = client.post(
            f"/api/v1/contacts/invites/{token}/accept", json={"email": "carol@example.com"}, headers=_as(CAROL),
        )
        assert resp.status_code == 403

    def test_unknown_invite(self, client):
        assert client.get("/api/v1/contacts/invites/nope").status_code == 404

    def test_push_register(self, client):
        resp = client.post(
            "/api/v1/push/register",
            json={"endpoint": "https://fcm.example.com/send/abc", "keys": {"p256dh": "k", "auth": "a"}},
            headers=_as(BOB),
        )
        assert resp.status_code == 200
        assert resp.json() == {
            "user_id": BOB, "endpoint": "https://fcm.example.com/send/abc", "registered": True,
        }

    def test_push_register_rejects_bad_endpoint(self, client):
        resp = client.post(
            "/api/v1/push/register", json={"endpoint": "ftp://example.com/x"}, headers=_as(BOB),
        )
        assert resp.status_code == 400


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Health
# ═══════════════════════════════════════════════════════════════════════════

class TestHealth:

    def test_root(self, client):
        data = client.get("/").json()
        assert "alert-lifecycle" in data["modules"]

    def test_liveness(self, client):
        assert client.get("/health/live").json() == {"status": "alive"}

    def test_health_report(self, client):
        data = client.get("/health").json()
        names = [c["name"] for c in data["components"]]
        assert names == ["store:memory", "realtime:local", "channels"]
        assert data["status"] == "healthy"

    def test_readiness(self, client):
        assert client.get("/health/ready").status_code == 200


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Live socket
# ═══════════════════════════════════════════════════════════════════════════

class TestLiveSocket:

    def test_owner_snapshot_and_ping(self, client):
        _link(client, OWNER, BOB, BOB_EMAIL)
        alert_id = _create(client).json()["id"]

        with client.websocket_connect(f"/api/v1/alerts/{alert_id}/live?user_id={OWNER}") as ws:
            snapshot = _receive_until(ws, "snapshot")
            assert snapshot["alert_id"] == alert_id
            assert snapshot["tracked"] is True
            assert snapshot["accepted_count"] == 0

            ws.send_json({"type": "ping"})
            assert _receive_until(ws, "pong") == {"type": "pong"}

    def test_invalid_messages(self, client):
        alert_id = _create(client).json()["id"]

        with client.websocket_connect(f"/api/v1/alerts/{alert_id}/live?user_id={OWNER}") as ws:
            _receive_until(ws, "snapshot")

            ws.send_text("{not json")
            assert _receive_until(ws, "error")["message"] == "Invalid JSON"

            ws.send_json(["position"])
            assert _receive_until(ws, "error")["message"] == "Expected a JSON object"

            ws.send_json({"type": "teleport"})
            assert "Unknown message type" in _receive_until(ws, "error")["message"]

    def test_responder_sees_acceptance(self, client):
        _link(client, OWNER, BOB, BOB_EMAIL)
        alert_id = _create(client).json()["id"]
        client.post(f"/api/v1/alerts/{alert_id}/acknowledge", headers=_as(BOB))

        with client.websocket_connect(f"/api/v1/alerts/{alert_id}/live?user_id={BOB}") as ws:
            snapshot = _receive_until(ws, "snapshot")
            assert snapshot["accepted_ids"] == [BOB]
            assert snapshot["tracked"] is True

    def test_non_participant_rejected(self, client):
        alert_id = _create(client).json()["id"]

        with client.websocket_connect(f"/api/v1/alerts/{alert_id}/live?user_id={CAROL}") as ws:
            assert ws.receive_json()["type"] == "error"
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
        assert exc.value.code == WS_CLOSE_FORBIDDEN

    def test_unknown_alert(self, client):
        with client.websocket_connect(f"/api/v1/alerts/{uuid.uuid4()}/live?user_id={OWNER}") as ws:
            assert ws.receive_json()["type"] == "error"
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
        assert exc.value.code == WS_CLOSE_NOT_FOUND
