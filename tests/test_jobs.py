from __future__ import annotations

import threading
from types import SimpleNamespace

from sqlalchemy import select

import pipeline.jobs as jobs
import pipeline.queue as queue_module
from db.models import AuditEvent
from engine.errors import PaymentGatewayUnavailable


def test_deadline_sweep_job_reports_refunds(monkeypatch, controller, paid_project, clock) -> None:
    monkeypatch.setattr(jobs, "build_controller", lambda settings=None: controller)
    monkeypatch.setattr(queue_module, "get_sweep_lock", lambda timeout_s=None: threading.Lock())
    paid_project()
    clock.advance(hours=49)

    result = jobs.deadline_sweep_job()

    assert result["processed"] == 1
    assert result["refunded"] == 1
    assert result["skipped"] is False


def test_reconcile_job_resumes_in_flight_settlements(monkeypatch, controller, active_project, gateway, ledger) -> None:
    monkeypatch.setattr(jobs, "build_controller", lambda settings=None: controller)
    project = active_project()
    controller.request_cancellation(project.id, "customer-1")
    gateway.refund_error = PaymentGatewayUnavailable("timeout")
    try:
        controller.resolve_cancellation(project.id, "approve", reviewer_is_admin=True)
    except PaymentGatewayUnavailable:
        pass

    first = jobs.reconcile_pending_job()
    assert first["resumed"] == 0
    assert first["failed"] == [
        {"project_id": str(project.id), "code": "payment_gateway_unavailable", "error": "timeout"}
    ]

    gateway.refund_error = None
    assert jobs.reconcile_pending_job() == {"resumed": 1, "failed": []}
    assert ledger.get_project(project.id).status == "refunded"


def test_notification_job_uses_delivery_channels(monkeypatch) -> None:
    sent: list[tuple] = []
    fake = SimpleNamespace(send=lambda kind, recipient, payload: sent.append((kind, recipient, payload)))
    monkeypatch.setattr(jobs, "build_delivery_notifier", lambda settings: fake)

    jobs.deliver_notification_job("producer_paid", "producer@example.com", {"payout_amount": 8500})

    assert sent == [("producer_paid", "producer@example.com", {"payout_amount": 8500})]


def test_failed_jobs_are_audited(monkeypatch, ledger) -> None:
    monkeypatch.setattr(jobs, "LedgerStore", lambda: ledger)
    job = SimpleNamespace(id="rq-1", func_name="pipeline.jobs.deadline_sweep_job", args=("x", 3))

    jobs.rq_on_failure(job, None, RuntimeError, RuntimeError("boom"), None)

    session = ledger.session()
    try:
        event = session.execute(select(AuditEvent).where(AuditEvent.event_type == "job_failed")).scalar_one()
    finally:
        session.close()
    assert event.source == "worker"
    assert event.payload == {"rq_id": "rq-1", "func": "pipeline.jobs.deadline_sweep_job", "error": "boom", "args": ["x", 3]}
