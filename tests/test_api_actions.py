from __future__ import annotations

from uuid import uuid4

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

import api.main as api_main
from engine.errors import PaymentGatewayUnavailable


@pytest.fixture
def client(monkeypatch, controller):
    monkeypatch.setenv("ALLOW_OPS_WITHOUT_TOKEN", "1")
    monkeypatch.delenv("OPERATOR_TOKEN", raising=False)
    api_main.app.dependency_overrides[api_main.get_controller] = lambda: controller
    try:
        yield TestClient(api_main.app)
    finally:
        api_main.app.dependency_overrides.clear()


def _as(user_id: str, role: str = "customer") -> dict[str, str]:
    return {"X-User-Id": user_id, "X-User-Role": role}


def _capture(client, *, project_id=None, price=10000, revisions=4) -> dict:
    response = client.post(
        "/events/payment-captured",
        json={
            "project_id": str(project_id or uuid4()),
            "payment_reference": f"pi_{uuid4().hex[:12]}",
            "amount_minor_units": price,
            "owner_id": "customer-1",
            "owner_email": "customer@example.com",
            "tier": "pro",
            "number_of_revisions": revisions,
        },
    )
    assert response.status_code == 200, response.text
    return response.json()


def test_payment_event_creates_project(client) -> None:
    body = _capture(client, revisions=2)

    assert body["status"] == "paid"
    assert body["price"] == 10000
    assert body["recommended_refund"] == 100
    assert body["revisions"] == []


def test_payment_event_accepts_large_revision_packages(client) -> None:
    body = _capture(client, revisions=30)

    assert body["status"] == "paid"
    assert body["number_of_revisions"] == 30


def test_payment_event_validation_errors_are_400(client) -> None:
    response = client.post("/events/payment-captured", json={"project_id": "nope"})
    assert response.status_code == 400
    assert response.json()["detail"] == "validation_error"


def test_operator_token_is_enforced(monkeypatch, client) -> None:
    monkeypatch.setenv("OPERATOR_TOKEN", "secret")
    response = client.post("/ops/deadline-sweep", json={"inline": True})
    assert response.status_code == 401
    assert response.json()["detail"] == "operator_token_required"

    ok = client.post("/ops/deadline-sweep", json={"inline": True}, headers={"X-Operator-Token": "secret"})
    assert ok.status_code == 200
    assert ok.json()["mode"] == "inline"


def test_full_project_flow_through_actions(client, ledger) -> None:
    project_id = _capture(client, revisions=2)["id"]

    accepted = client.post(
        f"/projects/{project_id}/producer-actions", json={"action": "accept"}, headers=_as("producer-1", "producer")
    )
    assert accepted.status_code == 200
    assert accepted.json()["assigned_producer_id"] == "producer-1"
    assert len(accepted.json()["revisions"]) == 2

    requested = client.post(
        f"/projects/{project_id}/customer-actions",
        json={"action": "request_revision", "revision_number": 1, "client_notes": "more reverb"},
        headers=_as("customer-1"),
    )
    assert requested.json()["revisions"][0]["status"] == "requested"

    delivered = client.post(
        f"/projects/{project_id}/producer-actions",
        json={"action": "deliver_revision", "revision_number": 1, "drive_link": "https://drive.example/1"},
        headers=_as("producer-1", "producer"),
    )
    assert delivered.json()["delivered_revisions"] == 1

    cancelled = client.post(
        f"/projects/{project_id}/customer-actions",
        json={"action": "request_cancellation", "reason": "budget"},
        headers=_as("customer-1"),
    )
    assert cancelled.json()["status"] == "cancellation_requested"
    assert cancelled.json()["recommended_refund_percent"] == 50

    approved = client.post(
        f"/projects/{project_id}/admin-actions",
        json={"action": "approve_cancellation", "refund_percent": 50},
        headers=_as("admin-1", "admin"),
    )
    assert approved.status_code == 200
    assert approved.json()["refund_amount"] == 5000
    assert approved.json()["status"] == "refunded"
    assert approved.json()["noop"] is False
    assert ledger.get_project(project_id).status == "refunded"


def test_engine_errors_map_to_status_codes(client, clock) -> None:
    project_id = _capture(client)["id"]
    producer = _as("producer-1", "producer")

    clock.advance(hours=49)
    expired = client.post(f"/projects/{project_id}/producer-actions", json={"action": "accept"}, headers=producer)
    assert expired.status_code == 410
    assert expired.json()["detail"] == "acceptance_window_expired"

    missing = client.get(f"/projects/{uuid4()}", headers=_as("admin-1", "admin"))
    assert missing.status_code == 404

    not_admin = client.post(
        f"/projects/{project_id}/admin-actions", json={"action": "reassign_producer"}, headers=_as("customer-1")
    )
    assert not_admin.status_code == 403


def test_second_accept_is_a_conflict(client) -> None:
    project_id = _capture(client)["id"]
    first = client.post(
        f"/projects/{project_id}/producer-actions", json={"action": "accept"}, headers=_as("producer-1", "producer")
    )
    second = client.post(
        f"/projects/{project_id}/producer-actions", json={"action": "accept"}, headers=_as("producer-2", "producer")
    )

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.json()["detail"] == "state_conflict"


def test_gateway_outage_is_503(client, gateway) -> None:
    project_id = _capture(client)["id"]
    client.post(f"/projects/{project_id}/producer-actions", json={"action": "accept"}, headers=_as("producer-1", "producer"))
    client.post(f"/projects/{project_id}/customer-actions", json={"action": "request_cancellation"}, headers=_as("customer-1"))
    gateway.refund_error = PaymentGatewayUnavailable("timeout")

    response = client.post(
        f"/projects/{project_id}/admin-actions", json={"action": "approve_cancellation"}, headers=_as("admin-1", "admin")
    )

    assert response.status_code == 503
    assert response.json()["detail"] == "payment_gateway_unavailable"


def test_project_visibility(client) -> None:
    project_id = _capture(client)["id"]

    assert client.get(f"/projects/{project_id}", headers=_as("customer-1")).status_code == 200
    assert client.get(f"/projects/{project_id}", headers=_as("producer-7", "producer")).status_code == 200
    assert client.get(f"/projects/{project_id}", headers=_as("customer-2")).status_code == 403
    assert client.get(f"/projects/{project_id}").status_code == 401
    assert client.get(f"/projects/{project_id}", headers=_as("x", "root")).status_code == 403


def test_audit_events_are_admin_only(client) -> None:
    project_id = _capture(client)["id"]

    forbidden = client.get(f"/projects/{project_id}/audit-events", headers=_as("customer-1"))
    assert forbidden.status_code == 403

    events = client.get(
        f"/projects/{project_id}/audit-events", params={"event_type": "payment_captured"}, headers=_as("admin-1", "admin")
    )
    assert events.status_code == 200
    assert [e["event_type"] for e in events.json()] == ["payment_captured"]


def test_inline_sweep_refunds_expired_projects(client, clock, gateway) -> None:
    _capture(client)
    clock.advance(hours=49)

    response = client.post("/ops/deadline-sweep", json={"inline": True})

    assert response.status_code == 200
    assert response.json()["refunded"] == 1
    assert len(gateway.refunds) == 1


def test_queued_sweep_uses_rq(monkeypatch, client) -> None:
    import pipeline.queue as queue_module

    monkeypatch.setattr(queue_module, "enqueue_deadline_sweep", lambda: {"rq_id": "job-1", "queue": "default"})
    response = client.post("/ops/deadline-sweep")

    assert response.json() == {"mode": "queued", "rq_id": "job-1", "queue": "default"}


def test_identity_requires_user_header() -> None:
    with pytest.raises(HTTPException) as excinfo:
        api_main._identity(x_user_id=None, x_user_role=None)
    assert excinfo.value.status_code == 401
    assert api_main._identity(x_user_id=" admin-1 ", x_user_role="ADMIN").is_admin


def test_system_status_counts_projects(monkeypatch, client) -> None:
    monkeypatch.setattr(api_main, "_worker_state", lambda: {"redis_ok": False, "online": False})
    _capture(client)

    body = client.get("/system/status").json()

    assert body["projects_by_status"] == {"paid": 1}
    assert body["settlements_in_flight"] == 0
