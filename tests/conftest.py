from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import db.models  # noqa: F401
from db.base import Base
from db.models import Project
from engine.controller import PaymentCapturedEvent, ProjectLifecycleController
from engine.errors import NotifierFailure
from engine.settings import EngineSettings
from ledger.store import LedgerStore

OWNER_ID = "customer-1"
OWNER_EMAIL = "customer@example.com"
START = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class FakeGateway:
    """Idempotent in-memory gateway: a replayed key returns the first reference."""

    def __init__(self) -> None:
        self.refunds: list[tuple[str, int, str]] = []
        self.transfers: list[tuple[str, int, str]] = []
        self.refund_error: Exception | None = None
        self.transfer_error: Exception | None = None
        self.failing_references: dict[str, Exception] = {}
        self.refund_calls = 0
        self._by_key: dict[str, str] = {}
        self._lock = threading.Lock()

    def capture(self, amount: int, customer_ref: str) -> str:
        return f"pi_{uuid4().hex[:12]}"

    def refund(self, payment_reference: str, amount: int, idempotency_key: str) -> str:
        with self._lock:
            self.refund_calls += 1
            if payment_reference in self.failing_references:
                raise self.failing_references[payment_reference]
            if self.refund_error is not None:
                raise self.refund_error
            if idempotency_key in self._by_key:
                return self._by_key[idempotency_key]
            reference = f"re_{len(self.refunds) + 1}"
            self.refunds.append((payment_reference, amount, idempotency_key))
            self._by_key[idempotency_key] = reference
            return reference

    def transfer(self, destination: str, amount: int, idempotency_key: str) -> str:
        with self._lock:
            if self.transfer_error is not None:
                raise self.transfer_error
            if idempotency_key in self._by_key:
                return self._by_key[idempotency_key]
            reference = f"tr_{len(self.transfers) + 1}"
            self.transfers.append((destination, amount, idempotency_key))
            self._by_key[idempotency_key] = reference
            return reference


class FakeNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.sent: list[tuple[str, str, dict]] = []
        self.fail = fail
        self._lock = threading.Lock()

    def send(self, kind: str, recipient: str, payload: dict) -> None:
        if self.fail:
            raise NotifierFailure(f"{kind} delivery failed")
        with self._lock:
            self.sent.append((kind, recipient, payload))

    def kinds(self) -> list[str]:
        return [kind for kind, _, _ in self.sent]

    def to(self, recipient: str) -> list[str]:
        return [kind for kind, sent_to, _ in self.sent if sent_to == recipient]


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def ledger(engine) -> LedgerStore:
    return LedgerStore(sessionmaker(bind=engine, autoflush=False, expire_on_commit=False))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(START)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings()


@pytest.fixture
def controller(ledger, gateway, notifier, settings, clock) -> ProjectLifecycleController:
    return ProjectLifecycleController(ledger, gateway, notifier, settings=settings, clock=clock)


@pytest.fixture
def paid_project(controller):
    def _make(price: int = 10000, revisions: int = 4, **fields) -> Project:
        tier = fields.pop("tier", "pro")
        event = PaymentCapturedEvent(
            project_id=uuid4(),
            payment_reference=f"pi_{uuid4().hex[:12]}",
            amount_minor_units=price,
            owner_id=OWNER_ID,
            owner_email=OWNER_EMAIL,
            tier=tier,
            number_of_revisions=revisions,
            **fields,
        )
        return controller.create_from_payment_event(event)

    return _make


@pytest.fixture
def active_project(controller, paid_project):
    """Accepted project with ``delivered`` revisions already delivered."""

    def _make(
        price: int = 10000,
        revisions: int = 4,
        producer_id: str = "producer-1",
        delivered: int = 0,
        status: str = "accepted",
    ) -> Project:
        project = paid_project(price=price, revisions=revisions)
        controller.producer_accept(project.id, producer_id)
        for number in range(1, delivered + 1):
            controller.revisions.request_revision(project.id, number, requester_id=OWNER_ID)
            controller.revisions.deliver(
                project.id,
                number,
                producer_id=producer_id,
                drive_link=f"https://drive.example/{number}",
            )
        path = ["accepted", "in_progress", "review", "completed"]
        for next_status in path[1 : path.index(status) + 1]:
            controller.advance_status(project.id, next_status, actor_id=producer_id)
        return controller.ledger.get_project(project.id)

    return _make


@pytest.fixture
def verified_producer(ledger):
    def _make(producer_id: str = "producer-1", account: str = "acct_123") -> str:
        ledger.upsert_producer(
            producer_id,
            name=producer_id,
            email=f"{producer_id}@example.com",
            payout_account_id=account,
            payout_onboarded_at=START - timedelta(days=30),
        )
        return producer_id

    return _make
