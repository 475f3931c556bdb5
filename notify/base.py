from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from db.models import Project
    from ledger.store import LedgerStore

logger = logging.getLogger(__name__)

NOTIFICATION_KINDS = (
    "new_request",
    "producer_assigned",
    "cancellation_requested",
    "cancellation_approved",
    "cancellation_denied",
    "producer_changed",
    "deadline_expired",
    "revision_requested",
    "revision_delivered",
    "delivery_completed",
    "producer_paid",
)

# chat channels are addressed with a leading "#", everything else is a person
PRODUCERS_CHANNEL = "#producers"
TEAM_CHANNEL = "#team"


class Notifier(Protocol):
    def send(self, kind: str, recipient: str, payload: dict[str, Any]) -> None: ...


class LoggingNotifier:
    """Writes notifications to the log; used when no delivery channel is configured."""

    def send(self, kind: str, recipient: str, payload: dict[str, Any]) -> None:
        logger.info("notification %s -> %s: %s", kind, recipient, payload)


def notify_safely(notifier: Notifier, kind: str, recipient: str | None, payload: dict[str, Any]) -> bool:
    if kind not in NOTIFICATION_KINDS:
        raise ValueError(f"unknown notification kind: {kind}")
    if not recipient:
        logger.info("notification %s skipped: no recipient", kind)
        return False
    try:
        notifier.send(kind, recipient, payload)
    except Exception as exc:
        logger.warning("notification %s to %s failed: %s", kind, recipient, exc)
        return False
    return True


def owner_recipient(project: "Project") -> str | None:
    if project.owner_email:
        return project.owner_email
    return f"user:{project.owner_id}" if project.owner_id else None


def producer_recipient(ledger: "LedgerStore", producer_id: str | None) -> str | None:
    if not producer_id:
        return None
    account = ledger.get_producer(producer_id)
    if account is not None and account.email:
        return account.email
    return f"user:{producer_id}"
