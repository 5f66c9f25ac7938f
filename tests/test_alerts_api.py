"""HTTP and websocket API tests."""

import itertools
import uuid

import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import auth
from sosdispatch.models.enums import Role


def _uid(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


_spots = itertools.count()


def _point():
    """A spot of our own so alerts from other tests are not in range."""
    n = next(_spots)
    return {"latitude": 10.0 + n * 0.05, "longitude": 20.0 + n * 0.05}


def _create(client, requester, location, **overrides):
    body = {
        "category": "MEDICAL",
        "urgency": "HIGH",
        "description": "Cyclist down, not responding",
        "location": location,
        "cancel_window_seconds": 0,
    }
    body.update(overrides)
    response = client.post("/alerts", json=body, headers=auth(requester))
    assert response.status_code == 200, response.text
    return response.json()


def _go_on_duty(client, pid, location, role=Role.VOLUNTEER):
    headers = auth(pid, role)
    r = client.put("/responders/me", json={"on_duty": True, "service_radius_km": 5}, headers=headers)
    assert r.status_code == 200, r.text
    r = client.post("/responders/me/location", json=location, headers=headers)
    assert r.status_code == 200, r.text
    return headers


def test_requires_auth(client):
    assert client.post("/alerts", json={}).status_code == 401
    assert client.get("/alerts/mine", headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401


def test_create_and_read(client):
    requester = _uid("req")
    where = _point()
    alert = _create(client, requester, where, cancel_window_seconds=5)

    assert alert["status"] == "CREATED"
    assert alert["version"] == 1
    assert alert["requester_id"] == requester

    fetched = client.get(f"/alerts/{alert['id']}", headers=auth(requester))
    assert fetched.status_code == 200
    assert fetched.json()["id"] == alert["id"]

    mine = client.get("/alerts/mine", headers=auth(requester)).json()
    assert [a["id"] for a in mine] == [alert["id"]]


def test_create_validates_body(client):
    r = client.post(
        "/alerts",
        json={"category": "MEDICAL", "urgency": "HIGH", "location": {"latitude": 91, "longitude": 0}},
        headers=auth(_uid("req")),
    )
    assert r.status_code == 422


def test_nearby(client):
    requester = _uid("req")
    where = _point()
    alert = _create(client, requester, where)

    r = client.get("/alerts/nearby", params={**where, "radius_km": 1}, headers=auth(_uid("viewer")))
    assert r.status_code == 200
    found = r.json()
    assert [n["alert"]["id"] for n in found] == [alert["id"]]
    assert found[0]["distance_km"] == 0.0

    r = client.get("/alerts/nearby", params={**where, "categories": "FIRE"}, headers=auth(_uid("viewer")))
    assert r.json() == []


def test_claim_then_walk_to_resolution(client):
    requester = _uid("req")
    where = _point()
    responder = _uid("vol")
    headers = _go_on_duty(client, responder, where)
    alert = _create(client, requester, where)
    assert alert["status"] == "DISPATCHED"

    r = client.post(f"/alerts/{alert['id']}/claim", headers=headers)
    assert r.status_code == 200
    body = r.json()
    assert body["outcome"] == "OK"
    assert body["alert"]["claimed_by"] == responder
    version = body["alert"]["version"]

    rival = _go_on_duty(client, _uid("vol"), where)
    r = client.post(f"/alerts/{alert['id']}/claim", headers=rival)
    assert r.json()["outcome"] == "ALREADY_CLAIMED"

    r = client.post(
        f"/alerts/{alert['id']}/status",
        json={"target_status": "EN_ROUTE", "expected_version": version - 1},
        headers=headers,
    )
    assert r.status_code == 409

    for target in ("EN_ROUTE", "ARRIVED", "RESOLVED"):
        r = client.post(
            f"/alerts/{alert['id']}/status",
            json={"target_status": target, "expected_version": version},
            headers=headers,
        )
        assert r.status_code == 200, r.text
        version = r.json()["version"]

    claimed = client.get("/alerts/claimed", headers=headers).json()
    assert claimed[0]["id"] == alert["id"]

    audit = client.get(f"/alerts/{alert['id']}/audit", headers=auth(requester)).json()
    assert [a["sequence"] for a in audit] == list(range(1, version + 1))
    assert client.get(f"/alerts/{alert['id']}/audit", headers=rival).status_code == 403

    r = client.post(f"/alerts/{alert['id']}/feedback", json={"rating": 5}, headers=auth(requester))
    assert r.status_code == 200
    assert r.json()["rating"] == 5


def test_claim_unknown_alert(client):
    headers = _go_on_duty(client, _uid("vol"), _point())
    assert client.post("/alerts/missing/claim", headers=headers).status_code == 404


def test_cancel(client):
    requester = _uid("req")
    alert = _create(client, requester, _point(), cancel_window_seconds=30)

    r = client.post(f"/alerts/{alert['id']}/cancel", headers=auth(_uid("other")))
    assert r.status_code == 200
    assert r.json()["outcome"] == "TOO_LATE"
    assert r.json()["alert"]["status"] == "CREATED"

    r = client.post(f"/alerts/{alert['id']}/cancel", headers=auth(requester))
    assert r.status_code == 200
    assert r.json()["outcome"] == "OK"
    assert r.json()["alert"]["status"] == "CANCELLED"

    r = client.post(f"/alerts/{alert['id']}/cancel", headers=auth(requester))
    assert r.json()["outcome"] == "TOO_LATE"


def test_sweep_is_admin_only(client):
    assert client.post("/admin/sweep", headers=auth(_uid("user"))).status_code == 403
    r = client.post("/admin/sweep", headers=auth(_uid("admin"), Role.ADMIN))
    assert r.status_code == 200
    assert set(r.json()) >= {"promoted", "rejected", "escalated", "skipped", "errors"}


def test_safe_zones(client):
    where = _point()
    zone = {"name": "District Hospital", "kind": "hospital", **where}
    assert client.post("/safe-zones", json=zone, headers=auth(_uid("user"))).status_code == 403
    r = client.post("/safe-zones", json=zone, headers=auth(_uid("admin"), Role.ADMIN))
    assert r.status_code == 200, r.text

    nearby = client.get("/safe-zones/nearby", params={**where, "radius_km": 1}, headers=auth(_uid("user"))).json()
    assert [z["name"] for z in nearby] == ["District Hospital"]


def test_notifications_inbox(client):
    requester = _uid("req")
    alert = _create(client, requester, _point())
    client.app.state.dispatch.fanout.drain(5)

    inbox = client.get("/notifications", headers=auth(requester)).json()
    assert alert["id"] in {n["alert_id"] for n in inbox}

    r = client.post(f"/notifications/{inbox[0]['id']}/read", headers=auth(requester))
    assert r.status_code == 200
    assert r.json()["read_at"] is not None
    assert client.post(f"/notifications/{inbox[0]['id']}/read", headers=auth(_uid("other"))).status_code == 404


def test_alert_stream_sends_snapshot_then_events(client):
    requester = _uid("req")
    where = _point()
    responder = _go_on_duty(client, _uid("vol"), where)
    alert = _create(client, requester, where)
    token = auth(requester)["Authorization"].split(" ", 1)[1]

    with client.websocket_connect(f"/ws/alerts/{alert['id']}?token={token}") as ws:
        snapshot = ws.receive_json()
        assert snapshot["event"] == "alert.snapshot"
        assert snapshot["alert_version"] == alert["version"]

        client.post(f"/alerts/{alert['id']}/claim", headers=responder)
        event = ws.receive_json()
        assert event["event"] == "alert.claimed"
        assert event["alert_version"] == alert["version"] + 1


def test_alert_stream_rejects_bad_requests(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/alerts/anything") as ws:
            ws.receive_json()

    token = auth(_uid("req"))["Authorization"].split(" ", 1)[1]
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect(f"/ws/alerts/missing?token={token}") as ws:
            ws.receive_json()
    assert exc_info.value.code == 4004


def test_responder_profile_and_lookup(client):
    where = _point()
    pid = _uid("vol")
    headers = _go_on_duty(client, pid, where)

    me = client.get("/responders/me", headers=headers).json()
    assert me["on_duty"] is True
    assert me["service_radius_km"] == 5

    assert client.get("/responders/me", headers=auth(_uid("vol"), Role.VOLUNTEER)).status_code == 404
    assert client.put("/responders/me", json={"on_duty": True}, headers=auth(_uid("user"))).status_code == 403

    params = {**where, "radius_km": 1}
    assert client.get("/responders/nearby", params=params, headers=headers).status_code == 403
    staff = client.get("/responders/nearby", params=params, headers=auth(_uid("emp"), Role.EMPLOYEE))
    assert [r["responder_id"] for r in staff.json()] == [pid]
