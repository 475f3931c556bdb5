from __future__ import annotations

import threading
from datetime import timedelta

from engine.controller import ProjectLifecycleController
from engine.errors import PaymentGatewayUnavailable, PaymentRejected, StateConflict
from scheduler import DeadlineScheduler


def test_expired_project_is_fully_refunded(controller, paid_project, clock, gateway, notifier, ledger) -> None:
    project = paid_project(price=10000)
    clock.advance(hours=48, minutes=1)

    report = DeadlineScheduler(controller).sweep_once()

    assert report.as_dict() == {
        "processed": 1,
        "refunded": 1,
        "conflicts": 0,
        "errors": 0,
        "skipped": False,
        "failures": [],
    }
    updated = ledger.get_project(project.id)
    assert updated.status == "refunded"
    assert updated.refund_amount == 10000
    assert updated.refund_reason == "no_producer_accepted"
    assert gateway.refunds == [(project.payment_reference, 10000, f"{project.id}:refund")]
    assert "deadline_expired" in notifier.to("customer@example.com")


def test_open_window_and_accepted_projects_are_left_alone(controller, paid_project, active_project, clock, gateway) -> None:
    paid_project()
    active_project()
    clock.advance(hours=47)
    assert DeadlineScheduler(controller).sweep_once().processed == 0

    clock.advance(hours=2)
    report = DeadlineScheduler(controller).sweep_once()
    assert report.processed == 1
    assert len(gateway.refunds) == 1


def test_second_sweep_finds_nothing(controller, paid_project, clock, gateway) -> None:
    paid_project()
    clock.advance(hours=49)
    scheduler = DeadlineScheduler(controller)

    assert scheduler.sweep_once().refunded == 1
    assert scheduler.sweep_once().processed == 0
    assert gateway.refund_calls == 1


def test_one_failure_does_not_stop_the_sweep(controller, paid_project, clock, gateway, ledger) -> None:
    failing = paid_project()
    healthy = paid_project()
    gateway.failing_references[failing.payment_reference] = PaymentRejected("charge disputed")
    clock.advance(hours=49)

    report = DeadlineScheduler(controller, concurrency=2).sweep_once()

    assert report.processed == 2
    assert report.refunded == 1
    assert report.errors == 1
    assert report.failures[0]["project_id"] == str(failing.id)
    assert report.failures[0]["code"] == "payment_rejected"
    assert ledger.get_project(healthy.id).status == "refunded"
    current = ledger.get_project(failing.id)
    assert current.status == "paid"
    assert current.pending_operation is None


def test_repeatedly_failing_projects_do_not_starve_later_ones(controller, paid_project, clock, gateway, ledger) -> None:
    failing = [paid_project(), paid_project()]
    for project in failing:
        gateway.failing_references[project.payment_reference] = PaymentRejected("charge disputed")
    clock.advance(minutes=5)
    later = paid_project()
    clock.advance(hours=49)
    scheduler = DeadlineScheduler(controller, batch_size=2)

    report = scheduler.sweep_once()

    assert report.processed == 3
    assert report.errors == 2
    assert report.refunded == 1
    assert ledger.get_project(later.id).status == "refunded"
    assert {ledger.get_project(p.id).status for p in failing} == {"paid"}

    again = scheduler.sweep_once()
    assert again.processed == 2
    assert again.refunded == 0


def test_expired_pages_share_a_deadline(controller, paid_project, clock, ledger) -> None:
    projects = [paid_project() for _ in range(3)]
    clock.advance(hours=49)

    first = ledger.find_expired_page(clock.now, limit=2)
    last_id, last_deadline = first[-1]
    rest = ledger.find_expired_page(clock.now, limit=2, after=(last_deadline, last_id))

    assert len(first) == 2
    assert len(rest) == 1
    assert {pid for pid, _ in first + rest} == {p.id for p in projects}


def test_unavailable_gateway_is_retried_next_sweep(controller, paid_project, clock, gateway, ledger) -> None:
    project = paid_project()
    gateway.failing_references[project.payment_reference] = PaymentGatewayUnavailable("timeout")
    clock.advance(hours=49)
    scheduler = DeadlineScheduler(controller)

    first = scheduler.sweep_once()
    assert first.errors == 1
    assert first.failures[0]["code"] == "payment_gateway_unavailable"
    assert ledger.get_project(project.id).pending_operation == "refund"

    del gateway.failing_references[project.payment_reference]
    second = scheduler.sweep_once()
    assert second.refunded == 1
    assert ledger.get_project(project.id).status == "refunded"
    assert len(gateway.refunds) == 1


def test_sweep_is_skipped_while_lock_is_held(controller, paid_project, clock) -> None:
    paid_project()
    clock.advance(hours=49)
    lock = threading.Lock()
    lock.acquire()

    report = DeadlineScheduler(controller, lock=lock).sweep_once()

    assert report.skipped is True
    assert report.processed == 0


def test_accept_and_expiry_race_has_one_winner(ledger, gateway, notifier, settings, paid_project, clock) -> None:
    for _ in range(5):
        project = paid_project()
        deadline = project.acceptance_deadline
        accepting = ProjectLifecycleController(
            ledger, gateway, notifier, settings=settings, clock=lambda d=deadline: d - timedelta(seconds=1)
        )
        sweeping = ProjectLifecycleController(
            ledger, gateway, notifier, settings=settings, clock=lambda d=deadline: d + timedelta(seconds=1)
        )
        barrier = threading.Barrier(2)
        outcome: dict[str, object] = {}

        def accept() -> None:
            barrier.wait()
            try:
                outcome["accept"] = accepting.producer_accept(project.id, "producer-1")
            except StateConflict as exc:
                outcome["accept"] = exc

        def expire() -> None:
            barrier.wait()
            try:
                outcome["expire"] = sweeping.auto_refund_expired(project.id)
            except StateConflict as exc:
                outcome["expire"] = exc

        threads = [threading.Thread(target=accept), threading.Thread(target=expire)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        final = ledger.get_project(project.id)
        refunds = [r for r in gateway.refunds if r[0] == project.payment_reference]
        if final.status == "accepted":
            assert isinstance(outcome["expire"], StateConflict)
            assert refunds == []
        else:
            assert final.status == "refunded"
            assert isinstance(outcome["accept"], StateConflict)
            assert refunds == [(project.payment_reference, project.price, f"{project.id}:refund")]
        assert final.pending_operation is None
        assert ledger.list_events(project.id, "state_conflict")
        clock.advance(minutes=1)


def test_run_forever_survives_a_failed_sweep(controller, monkeypatch) -> None:
    scheduler = DeadlineScheduler(controller)
    stop = threading.Event()
    calls: list[int] = []

    def fake_sweep():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("database unavailable")
        stop.set()
        return scheduler._sweep()

    monkeypatch.setattr(scheduler, "sweep_once", fake_sweep)
    scheduler.run_forever(0, stop)

    assert len(calls) == 2
