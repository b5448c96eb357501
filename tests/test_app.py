"""
API tests for the reference attendance store (presence.app).

Uses FastAPI's TestClient for the HTTP surface and httpx.ASGITransport to run
the real redemption protocol against the app in-process.
"""

from __future__ import annotations

import httpx
import pytest
from fastapi.testclient import TestClient

from presence.app import create_app
from presence.core.utils import utc_now
from presence.credentials.issuer import issue
from presence.domain.enums import RedemptionOutcome
from presence.redemption import RedemptionProtocol
from presence.redemption.store import HttpAttendanceStore, InMemoryAttendanceStore


@pytest.fixture
def app(boundary):
    return create_app(store=InMemoryAttendanceStore(boundary), boundary=boundary)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def _body(credential, holder="student-1", lat=5.298880, lon=-2.001131):
    return {
        "credential": credential.to_payload(),
        "holderIdentity": holder,
        "fix": {"latitude": lat, "longitude": lon, "accuracy": 6.0},
        "distanceMeters": 1.0,
    }


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["records"] == 0


def test_redeem_then_conflict(client):
    credential = issue("main_hall", "admin", utc_now())

    first = client.post("/api/attendance/redeem", json=_body(credential))
    assert first.status_code == 200
    assert first.json()["success"] is True
    assert first.json()["recordedAt"]

    second = client.post("/api/attendance/redeem", json=_body(credential))
    assert second.status_code == 409
    assert second.json()["conflict"] is True
    assert second.json()["recordedAt"] == first.json()["recordedAt"]

    assert len(client.get("/api/attendance").json()) == 1
    assert client.get("/api/health").json()["records"] == 1


def test_redeem_validation(client):
    credential = issue("main_hall", "admin", utc_now())
    body = _body(credential)
    body["holderIdentity"] = ""
    assert client.post("/api/attendance/redeem", json=body).status_code == 422

    body = _body(credential)
    body["credential"] = {"type": "attendance_check"}
    assert client.post("/api/attendance/redeem", json=body).status_code == 422


def test_redeem_publishes_event(client, app):
    queue = app.state.hub.subscribe()
    credential = issue("main_hall", "admin", utc_now())
    client.post("/api/attendance/redeem", json=_body(credential))

    envelope = queue.get_nowait()
    assert envelope["type"] == "credential_redeemed"
    assert envelope["payload"]["credentialId"] == credential.id
    assert envelope["payload"]["holderIdentity"] == "student-1"


def test_notifications_are_stored(client):
    body = {
        "id": "notif_1",
        "title": "Urgent Notice",
        "message": "Evacuate",
        "category": "system",
        "priority": "urgent",
        "timestamp": "2024-03-04T09:00:00.000Z",
        "actionRef": "/alerts/1",
        "persistent": True,
    }
    resp = client.post("/api/notifications", json=body)
    assert resp.status_code == 201
    stored = client.get("/api/notifications").json()
    assert stored[0]["actionRef"] == "/alerts/1"


def test_publish_event(client, app):
    queue = app.state.hub.subscribe()
    resp = client.post("/api/events", json={"type": "system_alert", "payload": {"message": "Drill"}})
    assert resp.status_code == 202
    assert resp.json()["delivered"] == 1
    assert queue.get_nowait()["payload"]["message"] == "Drill"

    assert client.post("/api/events", json={"type": "zoom_meeting"}).status_code == 400


def test_websocket_ack(client, app):
    with client.websocket_connect("/ws") as ws:
        ws.send_text("ping")
        assert ws.receive_json()["type"] == "ack"
        assert app.state.manager.client_count == 1


@pytest.mark.asyncio
async def test_protocol_against_app(app, boundary, make_fix):
    http = httpx.AsyncClient(transport=httpx.ASGITransport(app=app))
    store = HttpAttendanceStore("http://store.test", client=http)
    protocol = RedemptionProtocol(store, boundary)
    credential = issue("main_hall", "admin", utc_now())

    first = await protocol.submit(credential.to_json(), "student-7", make_fix(12), 12.0)
    again = await protocol.submit(credential.to_json(), "student-7", make_fix(12), 12.0)
    await store.close()

    assert first.outcome is RedemptionOutcome.RECORDED
    assert first.record.observed_distance_meters == pytest.approx(12.0, abs=0.05)
    assert again.outcome is RedemptionOutcome.ALREADY_REDEEMED
