from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from fractions import Fraction
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from db.models import PROJECT_STATUSES, AuditEvent, Payout, Project, _utcnow
from engine import settlement
from engine.errors import (
    AcceptanceWindowExpired,
    AmountMismatch,
    InvalidTransition,
    PaymentRejected,
    ProducerBlocked,
    StateConflict,
    Unauthorized,
)
from engine.revisions import ACTIVE_DELIVERY_STATUSES, RevisionService
from engine.settings import EngineSettings
from engine.settlement import SettlementResult
from ledger.store import LedgerStore
from notify.base import PRODUCERS_CHANNEL, TEAM_CHANNEL, Notifier, notify_safely, owner_recipient, producer_recipient
from payments.gateway import PaymentGateway, idempotency_key

logger = logging.getLogger(__name__)

T = TypeVar("T")

FORWARD_TRANSITIONS = {
    "accepted": "in_progress",
    "in_progress": "review",
    "review": "completed",
}
EXPIRABLE_STATUSES = ("pending_payment", "paid")
REASSIGNABLE_STATUSES = ("accepted", "in_progress", "review", "cancellation_requested", "completed")

OP_REFUND = "refund"
OP_REASSIGN = "reassign"
OP_PAYOUT = "completion_payout"


@dataclass(frozen=True)
class PaymentCapturedEvent:
    project_id: UUID
    payment_reference: str
    amount_minor_units: int
    owner_id: str
    owner_email: str | None = None
    tier: str = "standard"
    currency: str | None = None
    number_of_revisions: int = 0
    wants_mixing: bool = False
    wants_mastering: bool = False
    wants_analog: bool = False
    wants_recorded_stems: bool = False
    genre_category: str | None = None
    song_idea: str | None = None


class ProjectLifecycleController:
    """Owns every status transition of a song request and the money it moves.

    Money-moving operations run in three steps: claim the row by setting
    ``pending_operation``, call the gateway with a stable idempotency key,
    then commit the outcome with a conditional update that clears the claim.
    A rejected payment releases the claim; an unavailable gateway keeps it so
    a retry or ``resume_pending`` finishes the same operation.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        gateway: PaymentGateway,
        notifier: Notifier,
        *,
        settings: EngineSettings | None = None,
        revisions: RevisionService | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.ledger = ledger
        self.gateway = gateway
        self.notifier = notifier
        self.settings = settings or EngineSettings()
        self.clock = clock
        self.revisions = revisions or RevisionService(ledger, notifier, clock=clock)

    # intake

    def capture_completed(self, project_id: UUID | str, payment_reference: str, *, source: str = "system") -> Project:
        if not payment_reference:
            raise ValueError("payment_reference is required")
        project = self.ledger.get_project(project_id)
        if project.payment_reference is not None:
            if project.payment_reference == payment_reference:
                return project
            raise self._conflict(project, "capture_completed", "already captured with a different payment reference")
        if project.status != "pending_payment":
            raise InvalidTransition(f"cannot capture payment while {project.status}", project_id=project.id)

        now = self.clock()
        deadline = now + timedelta(hours=self.settings.acceptance_window_hours)
        try:
            return self.ledger.compare_and_set(
                project.id,
                expected_status="pending_payment",
                changes={
                    "status": "paid",
                    "payment_reference": payment_reference,
                    "acceptance_deadline": deadline,
                },
                conditions=[Project.payment_reference.is_(None)],
                action="capture_completed",
                events=[
                    AuditEvent(
                        event_type="payment_captured",
                        source=source,
                        payload={
                            "payment_reference": payment_reference,
                            "price": project.price,
                            "acceptance_deadline": deadline.isoformat(),
                        },
                    )
                ],
                source=source,
            )
        except StateConflict:
            current = self.ledger.get_project(project.id)
            if current.payment_reference == payment_reference:
                return current
            raise

    def create_from_payment_event(self, event: PaymentCapturedEvent) -> Project:
        if event.amount_minor_units < 0:
            raise ValueError("amount_minor_units must be >= 0")
        if event.number_of_revisions < 0:
            raise ValueError("number_of_revisions must be >= 0")
        project = self.ledger.find_project(event.project_id)
        if project is None:
            project, _ = self.ledger.create_project(
                id=event.project_id,
                owner_id=event.owner_id,
                owner_email=event.owner_email,
                tier=event.tier,
                price=event.amount_minor_units,
                currency=(event.currency or self.settings.currency).lower(),
                status="pending_payment",
                payout_status="none",
                blocked_producer_ids=[],
                number_of_revisions=event.number_of_revisions,
                wants_mixing=event.wants_mixing,
                wants_mastering=event.wants_mastering,
                wants_analog=event.wants_analog,
                wants_recorded_stems=event.wants_recorded_stems,
                genre_category=event.genre_category,
                song_idea=event.song_idea,
            )
        if project.price != event.amount_minor_units:
            raise AmountMismatch(
                f"captured {event.amount_minor_units} but project price is {project.price}",
                project_id=project.id,
            )

        newly_captured = project.payment_reference is None
        project = self.capture_completed(project.id, event.payment_reference)
        if newly_captured:
            self._notify(
                "new_request",
                PRODUCERS_CHANNEL,
                {
                    **self._money_payload(project),
                    "tier": project.tier,
                    "number_of_revisions": project.number_of_revisions,
                    "genre_category": project.genre_category or "",
                    "acceptance_deadline": project.acceptance_deadline.isoformat()
                    if project.acceptance_deadline
                    else "",
                },
            )
        return project

    # producer side

    def producer_accept(self, project_id: UUID | str, producer_id: str) -> Project:
        if not producer_id:
            raise ValueError("producer_id is required")
        project = self.ledger.get_project(project_id)
        if producer_id in (project.blocked_producer_ids or []):
            raise ProducerBlocked("producer was removed from this project", project_id=project.id)
        if project.status != "paid":
            raise self._conflict(project, "producer_accept", f"project is {project.status}", actor_id=producer_id)
        now = self.clock()
        if project.acceptance_deadline is not None and now > project.acceptance_deadline:
            raise AcceptanceWindowExpired("acceptance window has closed", project_id=project.id)

        try:
            updated = self.ledger.compare_and_set(
                project.id,
                expected_status="paid",
                changes={
                    "status": "accepted",
                    "assigned_producer_id": producer_id,
                    "acceptance_deadline": None,
                },
                conditions=[
                    or_(Project.acceptance_deadline.is_(None), Project.acceptance_deadline >= now),
                ],
                action="producer_accept",
                events=[AuditEvent(event_type="producer_accepted", source="ui", actor_id=producer_id)],
                actor_id=producer_id,
                source="ui",
            )
        except StateConflict:
            current = self.ledger.get_project(project.id)
            if (
                current.status == "paid"
                and current.pending_operation is None
                and current.acceptance_deadline is not None
                and now > current.acceptance_deadline
            ):
                raise AcceptanceWindowExpired("acceptance window has closed", project_id=project.id) from None
            raise

        self.revisions.initialize(updated)
        self._notify(
            "producer_assigned",
            owner_recipient(updated),
            {"project_id": str(updated.id), "producer_id": producer_id},
        )
        return updated

    def start_work(self, project_id: UUID | str, *, actor_id: str, is_admin: bool = False) -> Project:
        return self.advance_status(project_id, "in_progress", actor_id=actor_id, is_admin=is_admin)

    def advance_status(
        self,
        project_id: UUID | str,
        new_status: str,
        *,
        actor_id: str,
        is_admin: bool = False,
        delivered_file_refs: list[str] | None = None,
    ) -> Project:
        if new_status not in PROJECT_STATUSES:
            raise ValueError(f"unknown status: {new_status}")
        project = self.ledger.get_project(project_id)
        if not is_admin and actor_id != project.assigned_producer_id:
            raise Unauthorized("only the assigned producer may advance this project", project_id=project.id)
        if FORWARD_TRANSITIONS.get(project.status) != new_status:
            raise InvalidTransition(f"cannot move from {project.status} to {new_status}", project_id=project.id)

        changes: dict[str, Any] = {"status": new_status}
        if new_status == "completed" and delivered_file_refs is not None:
            changes["delivered_file_refs"] = [str(ref) for ref in delivered_file_refs]
        updated = self.ledger.compare_and_set(
            project.id,
            expected_status=project.status,
            changes=changes,
            action="advance_status",
            events=[
                AuditEvent(
                    event_type="status_changed",
                    source="ui",
                    actor_id=actor_id,
                    payload={"from": project.status, "to": new_status},
                )
            ],
            actor_id=actor_id,
            source="ui",
        )
        if new_status == "completed":
            self._notify(
                "delivery_completed",
                owner_recipient(updated),
                {"project_id": str(updated.id), "delivered_file_refs": updated.delivered_file_refs or []},
            )
        return updated

    # cancellation

    def recommend_refund_percent(self, project: Project | UUID | str) -> int:
        if not isinstance(project, Project):
            project = self.ledger.get_project(project)
        return settlement.recommended_refund_percent(
            has_producer=bool(project.assigned_producer_id),
            delivered=self.revisions.delivered_count(project.id),
            purchased=self.revisions.purchased_count(project),
        )

    def request_cancellation(self, project_id: UUID | str, requester_id: str, reason: str | None = None) -> Project:
        project = self.ledger.get_project(project_id)
        if requester_id != project.owner_id:
            raise Unauthorized("only the project owner may request cancellation", project_id=project.id)
        if project.status not in ACTIVE_DELIVERY_STATUSES:
            raise InvalidTransition(f"cannot request cancellation while {project.status}", project_id=project.id)

        delivered = self.revisions.delivered_count(project.id)
        purchased = self.revisions.purchased_count(project)
        percent = self.recommend_refund_percent(project)
        updated = self.ledger.compare_and_set(
            project.id,
            expected_status=project.status,
            changes={
                "status": "cancellation_requested",
                "cancellation_reason": reason,
                "recommended_refund_percent": percent,
            },
            action="request_cancellation",
            events=[
                AuditEvent(
                    event_type="cancellation_requested",
                    source="ui",
                    actor_id=requester_id,
                    payload={
                        "from_status": project.status,
                        "reason": reason,
                        "recommended_refund_percent": percent,
                        "delivered": delivered,
                        "purchased": purchased,
                    },
                )
            ],
            actor_id=requester_id,
            source="ui",
        )
        self._notify(
            "cancellation_requested",
            TEAM_CHANNEL,
            {
                "project_id": str(updated.id),
                "reason": reason or "",
                "recommended_refund_percent": percent,
                "delivered": delivered,
                "purchased": purchased,
            },
        )
        return updated

    def resolve_cancellation(
        self,
        project_id: UUID | str,
        action: str,
        *,
        refund_percent: int | None = None,
        reviewer_id: str | None = None,
        reviewer_is_admin: bool = False,
    ) -> SettlementResult:
        if not reviewer_is_admin:
            raise Unauthorized("only an admin may resolve cancellations", project_id=project_id)
        if action not in ("approve", "deny"):
            raise ValueError(f"action must be approve or deny, got: {action}")
        percent = 100 if refund_percent is None else refund_percent
        if isinstance(percent, bool) or not isinstance(percent, int) or not 0 <= percent <= 100:
            raise ValueError(f"refund_percent must be an integer within [0, 100], got: {refund_percent}")

        project = self.ledger.get_project(project_id)
        if action == "deny":
            return self._deny_cancellation(project, reviewer_id)

        if project.status == "refunded":
            return self._settled(project, "approve_cancellation")
        if project.pending_operation == OP_REFUND:
            return self._dispatch(project)
        if project.status != "cancellation_requested":
            raise InvalidTransition(f"no cancellation pending, project is {project.status}", project_id=project.id)
        return self._settle_refund(
            project,
            percent=percent,
            reason="cancellation_approved",
            action="approve_cancellation",
            notify_kind="cancellation_approved",
            actor_id=reviewer_id,
            source="ui",
        )

    def _deny_cancellation(self, project: Project, reviewer_id: str | None) -> SettlementResult:
        if project.status == "refunded":
            return self._settled(project, "deny_cancellation")
        if project.status != "cancellation_requested":
            raise InvalidTransition(f"no cancellation pending, project is {project.status}", project_id=project.id)
        updated = self.ledger.compare_and_set(
            project.id,
            expected_status="cancellation_requested",
            changes={"status": "in_progress"},
            action="deny_cancellation",
            events=[AuditEvent(event_type="cancellation_denied", source="ui", actor_id=reviewer_id)],
            actor_id=reviewer_id,
            source="ui",
        )
        self._notify("cancellation_denied", owner_recipient(updated), {"project_id": str(updated.id)})
        return SettlementResult(project=updated, action="deny_cancellation", message="cancellation denied")

    # deadline

    def auto_refund_expired(self, project_id: UUID | str, *, source: str = "system") -> SettlementResult:
        project = self.ledger.get_project(project_id)
        if project.status == "refunded":
            return self._settled(project, "auto_refund_expired")
        if project.pending_operation == OP_REFUND:
            return self._dispatch(project)
        if project.status not in EXPIRABLE_STATUSES:
            raise self._conflict(project, "auto_refund_expired", f"project is {project.status}", source=source)
        now = self.clock()
        if project.acceptance_deadline is None or project.acceptance_deadline >= now:
            raise InvalidTransition("acceptance window is still open", project_id=project.id)
        if not project.payment_reference:
            raise InvalidTransition("no captured payment to refund", project_id=project.id)
        return self._settle_refund(
            project,
            percent=100,
            reason="no_producer_accepted",
            action="auto_refund_expired",
            notify_kind="deadline_expired",
            actor_id=None,
            source=source,
            conditions=[Project.acceptance_deadline < now],
        )

    # reassignment and payouts

    def reassign_producer(
        self,
        project_id: UUID | str,
        *,
        reason: str | None = None,
        reviewer_id: str | None = None,
        reviewer_is_admin: bool = False,
    ) -> SettlementResult:
        if not reviewer_is_admin:
            raise Unauthorized("only an admin may reassign producers", project_id=project_id)
        project = self.ledger.get_project(project_id)
        if project.pending_operation == OP_REASSIGN:
            return self._dispatch(project)
        if project.status == "refunded" or project.producer_paid_at is not None:
            return self._settled(project, "reassign_producer")
        if not project.assigned_producer_id:
            return SettlementResult(
                project=project,
                action="reassign_producer",
                payout_status=project.payout_status,
                noop=True,
                message="no producer assigned",
            )
        if project.status not in REASSIGNABLE_STATUSES:
            raise InvalidTransition(f"cannot reassign while {project.status}", project_id=project.id)
        if project.pending_operation is not None:
            raise self._conflict(project, "reassign_producer", f"{project.pending_operation} in flight")

        outgoing = project.assigned_producer_id
        delivered = self.revisions.delivered_count(project.id)
        purchased = self.revisions.purchased_count(project)
        ratio = settlement.progress_ratio(delivered, purchased, self.settings.reassignment_fallback_ratio)
        already_paid = self.ledger.sum_payouts(project.id)
        amount = min(
            settlement.partial_payout(project.price, self.settings.platform_fee_percent, ratio),
            project.price - already_paid,
        )
        payload = {
            "action": "reassign_producer",
            "producer_id": outgoing,
            "reason": reason,
            "delivered": delivered,
            "purchased": purchased,
            "ratio": str(ratio),
            "amount": amount,
            "already_paid": already_paid,
            "destination": self._payout_destination(outgoing),
            "idempotency_key": idempotency_key(project.id, f"reassign:{outgoing}"),
            "from_status": project.status,
            "actor_id": reviewer_id,
            "source": "ui",
        }
        claimed = self.ledger.compare_and_set(
            project.id,
            expected_status=project.status,
            changes={"pending_operation": OP_REASSIGN, "pending_operation_payload": payload},
            conditions=[Project.assigned_producer_id == outgoing],
            action="reassign_producer",
            actor_id=reviewer_id,
            source="ui",
        )
        return self._run_reassign(claimed, payload)

    def payout_producer(
        self,
        project_id: UUID | str,
        *,
        reviewer_id: str | None = None,
        reviewer_is_admin: bool = False,
    ) -> SettlementResult:
        if not reviewer_is_admin:
            raise Unauthorized("only an admin may release producer payouts", project_id=project_id)
        project = self.ledger.get_project(project_id)
        if project.pending_operation == OP_PAYOUT:
            return self._dispatch(project)
        if project.producer_paid_at is not None:
            return self._settled(project, "payout_producer")
        if project.status != "completed":
            raise InvalidTransition(f"payout requires a completed project, got {project.status}", project_id=project.id)
        if not project.assigned_producer_id:
            raise InvalidTransition("completed project has no producer", project_id=project.id)
        if project.pending_operation is not None:
            raise self._conflict(project, "payout_producer", f"{project.pending_operation} in flight")

        producer_id = project.assigned_producer_id
        already_paid = self.ledger.sum_payouts(project.id)
        amount = settlement.completion_payout(project.price, self.settings.platform_fee_percent, already_paid)
        payload = {
            "action": "payout_producer",
            "producer_id": producer_id,
            "amount": amount,
            "already_paid": already_paid,
            "destination": self._payout_destination(producer_id),
            "idempotency_key": idempotency_key(project.id, OP_PAYOUT),
            "from_status": "completed",
            "actor_id": reviewer_id,
            "source": "ui",
        }
        claimed = self.ledger.compare_and_set(
            project.id,
            expected_status="completed",
            changes={"pending_operation": OP_PAYOUT, "pending_operation_payload": payload},
            conditions=[Project.producer_paid_at.is_(None)],
            action="payout_producer",
            actor_id=reviewer_id,
            source="ui",
        )
        return self._run_payout(claimed, payload)

    def resume_pending(self, project_id: UUID | str) -> SettlementResult:
        """Finish whatever settlement the project has in flight, with its original key."""
        project = self.ledger.get_project(project_id)
        if project.pending_operation is None:
            return SettlementResult(
                project=project,
                action="resume_pending",
                payout_status=project.payout_status,
                noop=True,
                message="nothing in flight",
            )
        logger.info("resuming %s on %s", project.pending_operation, project.id)
        return self._dispatch(project)

    # settlement internals

    def _dispatch(self, project: Project) -> SettlementResult:
        payload = dict(project.pending_operation_payload or {})
        if project.pending_operation == OP_REFUND:
            return self._run_refund(project, payload)
        if project.pending_operation == OP_REASSIGN:
            return self._run_reassign(project, payload)
        if project.pending_operation == OP_PAYOUT:
            return self._run_payout(project, payload)
        raise InvalidTransition(f"unknown in-flight operation: {project.pending_operation}", project_id=project.id)

    def _settle_refund(
        self,
        project: Project,
        *,
        percent: int,
        reason: str,
        action: str,
        notify_kind: str,
        actor_id: str | None,
        source: str,
        conditions: tuple | list = (),
    ) -> SettlementResult:
        if project.pending_operation is not None:
            raise self._conflict(project, action, f"{project.pending_operation} in flight", actor_id=actor_id, source=source)
        amount = settlement.refund_amount(project.price, percent)
        if amount > 0 and not project.payment_reference:
            raise InvalidTransition("no captured payment to refund", project_id=project.id)
        payload = {
            "action": action,
            "amount": amount,
            "percent": percent,
            "reason": reason,
            "notify_kind": notify_kind,
            "idempotency_key": idempotency_key(project.id, OP_REFUND),
            "from_status": project.status,
            "actor_id": actor_id,
            "source": source,
        }
        claimed = self.ledger.compare_and_set(
            project.id,
            expected_status=project.status,
            changes={"pending_operation": OP_REFUND, "pending_operation_payload": payload},
            conditions=conditions,
            action=action,
            actor_id=actor_id,
            source=source,
        )
        return self._run_refund(claimed, payload)

    def _run_refund(self, project: Project, payload: dict[str, Any]) -> SettlementResult:
        amount = int(payload["amount"])
        key = payload["idempotency_key"]
        action = payload["action"]
        source = payload.get("source") or "system"
        reference = None
        if amount > 0:
            try:
                reference = self.gateway.refund(project.payment_reference, amount, key)
            except PaymentRejected as exc:
                self.ledger.release_claim(project.id, OP_REFUND, reason=str(exc), source=source)
                logger.warning("refund %s rejected, claim released: %s", key, exc)
                raise

        now = self.clock()

        def commit() -> Project:
            return self.ledger.compare_and_set(
                project.id,
                expected_status=payload["from_status"],
                claim=OP_REFUND,
                changes={
                    "status": "refunded",
                    "refunded_at": now,
                    "refund_amount": amount,
                    "refund_reference": reference,
                    "refund_reason": payload["reason"],
                    "pending_operation": None,
                    "pending_operation_payload": None,
                },
                action=f"{action}_commit",
                events=[
                    AuditEvent(
                        event_type="refund_issued",
                        source=source,
                        actor_id=payload.get("actor_id"),
                        payload={
                            "amount": amount,
                            "percent": payload["percent"],
                            "reason": payload["reason"],
                            "payment_reference": project.payment_reference,
                            "refund_reference": reference,
                            "idempotency_key": key,
                        },
                    )
                ],
                actor_id=payload.get("actor_id"),
                source=source,
            )

        try:
            updated = self._commit_with_retry(commit, project_id=project.id, operation=OP_REFUND)
        except StateConflict:
            current = self.ledger.get_project(project.id)
            if current.status == "refunded" and current.pending_operation is None:
                return self._settled(current, action)
            raise

        notify_payload = {**self._money_payload(updated), "refund_amount": amount, "refund_percent": payload["percent"]}
        self._notify(payload["notify_kind"], owner_recipient(updated), notify_payload)
        if payload["notify_kind"] == "cancellation_approved" and updated.assigned_producer_id:
            self._notify(
                "cancellation_approved",
                producer_recipient(self.ledger, updated.assigned_producer_id),
                {**notify_payload, "payout_amount": 0},
            )
        return SettlementResult(
            project=updated,
            action=action,
            refund_amount=amount,
            refund_reference=reference,
            payout_amount=updated.producer_payout_amount or 0,
            payout_status=updated.payout_status,
            message=f"refunded {amount} of {updated.price}" if amount else "approved without refund",
        )

    def _run_reassign(self, project: Project, payload: dict[str, Any]) -> SettlementResult:
        amount = int(payload["amount"])
        key = payload["idempotency_key"]
        outgoing = payload["producer_id"]
        source = payload.get("source") or "system"
        payout_status, transfer_reference = self._transfer(payload.get("destination"), amount, key)

        now = self.clock()
        blocked = list(project.blocked_producer_ids or [])
        if outgoing not in blocked:
            blocked.append(outgoing)
        changes: dict[str, Any] = {
            "status": "paid",
            "assigned_producer_id": None,
            "blocked_producer_ids": blocked,
            "acceptance_deadline": now + timedelta(hours=self.settings.acceptance_window_hours),
            "cancellation_reason": None,
            "recommended_refund_percent": None,
            "pending_operation": None,
            "pending_operation_payload": None,
        }
        if amount > 0:
            total_paid = int(payload["already_paid"]) + amount
            changes.update(
                producer_payout_amount=total_paid,
                platform_fee_amount=project.price - total_paid,
                payout_status=payout_status,
            )

        def commit() -> Project:
            rows = []
            if amount > 0:
                rows.append(
                    Payout(
                        project_id=project.id,
                        producer_id=outgoing,
                        kind="partial_reassignment",
                        amount=amount,
                        status=payout_status,
                        transfer_reference=transfer_reference,
                        idempotency_key=key,
                    )
                )
            return self.ledger.compare_and_set(
                project.id,
                expected_status=payload["from_status"],
                claim=OP_REASSIGN,
                changes=changes,
                add_rows=rows,
                action="reassign_producer_commit",
                events=[
                    AuditEvent(
                        event_type="producer_reassigned",
                        source=source,
                        actor_id=payload.get("actor_id"),
                        payload={
                            "producer_id": outgoing,
                            "reason": payload.get("reason"),
                            "delivered": payload.get("delivered"),
                            "purchased": payload.get("purchased"),
                            "ratio": payload.get("ratio"),
                            "payout_amount": amount,
                            "payout_status": payout_status,
                            "transfer_reference": transfer_reference,
                            "idempotency_key": key,
                        },
                    )
                ],
                actor_id=payload.get("actor_id"),
                source=source,
            )

        updated = self._commit_with_retry(commit, project_id=project.id, operation=OP_REASSIGN)
        change_payload = {
            **self._money_payload(updated),
            "reason": payload.get("reason") or "",
            "payout_amount": amount,
            "payout_status": payout_status or "none",
        }
        self._notify("producer_changed", producer_recipient(self.ledger, outgoing), change_payload)
        self._notify("producer_changed", owner_recipient(updated), change_payload)
        self._notify(
            "new_request",
            PRODUCERS_CHANNEL,
            {
                **self._money_payload(updated),
                "tier": updated.tier,
                "number_of_revisions": updated.number_of_revisions,
                "acceptance_deadline": updated.acceptance_deadline.isoformat() if updated.acceptance_deadline else "",
            },
        )
        return SettlementResult(
            project=updated,
            action="reassign_producer",
            payout_amount=amount,
            payout_status=payout_status or updated.payout_status,
            transfer_reference=transfer_reference,
            progress_ratio=Fraction(payload["ratio"]),
            message=f"producer {outgoing} removed",
            details={"outgoing_producer_id": outgoing},
        )

    def _run_payout(self, project: Project, payload: dict[str, Any]) -> SettlementResult:
        amount = int(payload["amount"])
        key = payload["idempotency_key"]
        producer_id = payload["producer_id"]
        source = payload.get("source") or "system"
        payout_status, transfer_reference = self._transfer(payload.get("destination"), amount, key)

        now = self.clock()
        total_paid = int(payload["already_paid"]) + amount
        changes: dict[str, Any] = {
            "producer_paid_at": now,
            "producer_payout_amount": total_paid,
            "platform_fee_amount": project.price - total_paid,
            "pending_operation": None,
            "pending_operation_payload": None,
        }
        if payout_status is not None:
            changes["payout_status"] = payout_status

        def commit() -> Project:
            rows = []
            if amount > 0:
                rows.append(
                    Payout(
                        project_id=project.id,
                        producer_id=producer_id,
                        kind="completion",
                        amount=amount,
                        status=payout_status,
                        transfer_reference=transfer_reference,
                        idempotency_key=key,
                    )
                )
            return self.ledger.compare_and_set(
                project.id,
                expected_status="completed",
                claim=OP_PAYOUT,
                changes=changes,
                add_rows=rows,
                action="payout_producer_commit",
                events=[
                    AuditEvent(
                        event_type="producer_paid",
                        source=source,
                        actor_id=payload.get("actor_id"),
                        payload={
                            "producer_id": producer_id,
                            "payout_amount": amount,
                            "total_paid": total_paid,
                            "platform_fee_amount": project.price - total_paid,
                            "payout_status": payout_status,
                            "transfer_reference": transfer_reference,
                            "idempotency_key": key,
                        },
                    )
                ],
                actor_id=payload.get("actor_id"),
                source=source,
            )

        updated = self._commit_with_retry(commit, project_id=project.id, operation=OP_PAYOUT)
        self._notify(
            "producer_paid",
            producer_recipient(self.ledger, producer_id),
            {**self._money_payload(updated), "payout_amount": amount, "payout_status": updated.payout_status},
        )
        return SettlementResult(
            project=updated,
            action="payout_producer",
            payout_amount=amount,
            payout_status=updated.payout_status,
            transfer_reference=transfer_reference,
            message=f"paid {amount} to {producer_id}" if amount else "nothing left to pay",
        )

    def _transfer(self, destination: str | None, amount: int, key: str) -> tuple[str | None, str | None]:
        if amount <= 0:
            return None, None
        if not destination:
            logger.info("payout %s has no verified destination, recording manual_required", key)
            return "manual_required", None
        try:
            return "transferred", self.gateway.transfer(destination, amount, key)
        except PaymentRejected as exc:
            logger.warning("transfer %s rejected, recording manual_required: %s", key, exc)
            return "manual_required", None

    def _payout_destination(self, producer_id: str) -> str | None:
        account = self.ledger.get_producer(producer_id)
        if account is None or not account.has_verified_destination:
            return None
        return account.payout_account_id

    def _commit_with_retry(self, commit: Callable[[], T], *, project_id: UUID, operation: str) -> T:
        attempts = max(1, self.settings.ledger_commit_retries)
        for attempt in range(attempts - 1):
            try:
                return commit()
            except SQLAlchemyError as exc:
                logger.warning(
                    "ledger commit of %s on %s failed (attempt %s/%s): %s",
                    operation,
                    project_id,
                    attempt + 1,
                    attempts,
                    exc,
                )
                time.sleep(min(2**attempt, 3))
        try:
            return commit()
        except SQLAlchemyError:
            logger.error("%s on %s left in flight for reconciliation", operation, project_id)
            raise

    def _settled(self, project: Project, action: str) -> SettlementResult:
        return SettlementResult(
            project=project,
            action=action,
            refund_amount=project.refund_amount or 0,
            refund_reference=project.refund_reference,
            payout_amount=project.producer_payout_amount or 0,
            payout_status=project.payout_status,
            noop=True,
            message=f"already settled ({project.status})",
        )

    def _conflict(
        self,
        project: Project,
        action: str,
        message: str,
        *,
        actor_id: str | None = None,
        source: str = "ui",
    ) -> StateConflict:
        self.ledger.record_event(
            "state_conflict",
            source=source,
            project_id=project.id,
            actor_id=actor_id,
            payload={
                "action": action,
                "found_status": project.status,
                "found_claim": project.pending_operation,
                "message": message,
            },
        )
        return StateConflict(f"{action}: {message}", project_id=project.id)

    def _money_payload(self, project: Project) -> dict[str, Any]:
        return {"project_id": str(project.id), "price": project.price, "currency": project.currency}

    def _notify(self, kind: str, recipient: str | None, payload: dict[str, Any]) -> None:
        notify_safely(self.notifier, kind, recipient, payload)
