from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from uuid import UUID

from db.models import AuditEvent, Project, Revision, _utcnow
from engine.errors import FeedbackAlreadySubmitted, RevisionNotAllowed, StateConflict, Unauthorized
from ledger.store import LedgerStore
from notify.base import Notifier, notify_safely, owner_recipient, producer_recipient

ACTIVE_DELIVERY_STATUSES = ("accepted", "in_progress", "review")


class RevisionService:
    """Per-project revision rounds: pending -> requested -> in_progress -> delivered.

    Only the lowest pending ordinal may be requested, and never while another
    round is outstanding. Every write is conditional on the previous status.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        notifier: Notifier,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.ledger = ledger
        self.notifier = notifier
        self.clock = clock

    def initialize(self, project: Project) -> list[Revision]:
        return self.ledger.ensure_revisions(project.id, project.number_of_revisions)

    def purchased_count(self, project: Project) -> int:
        return int(project.number_of_revisions or 0)

    def delivered_count(self, project_id: UUID | str) -> int:
        return self.ledger.delivered_count(project_id)

    def for_project(self, project_id: UUID | str) -> list[Revision]:
        return self.ledger.list_revisions(project_id)

    def request_revision(
        self,
        project_id: UUID | str,
        revision_number: int,
        *,
        requester_id: str,
        client_notes: str | None = None,
        wants_meeting: bool = False,
    ) -> Revision:
        project = self.ledger.get_project(project_id)
        if requester_id != project.owner_id:
            raise Unauthorized("only the project owner may request a revision", project_id=project.id)
        if project.status not in ACTIVE_DELIVERY_STATUSES:
            raise RevisionNotAllowed(
                f"revisions cannot be requested while project is {project.status}",
                project_id=project.id,
            )
        revisions = self.ledger.list_revisions(project.id)
        outstanding = [r for r in revisions if r.status in ("requested", "in_progress")]
        if outstanding:
            raise RevisionNotAllowed(
                f"revision {outstanding[0].revision_number} is still {outstanding[0].status}",
                project_id=project.id,
            )
        pending = [r.revision_number for r in revisions if r.status == "pending"]
        if not pending:
            raise RevisionNotAllowed("no revisions remaining", project_id=project.id)
        if revision_number != min(pending):
            raise RevisionNotAllowed(
                f"revision {min(pending)} must be requested before revision {revision_number}",
                project_id=project.id,
            )

        now = self.clock()
        try:
            revision = self.ledger.update_revision(
                project.id,
                revision_number,
                expected_status="pending",
                changes={
                    "status": "requested",
                    "client_notes": client_notes,
                    "wants_meeting": bool(wants_meeting),
                    "requested_at": now,
                },
                action="request_revision",
                project_statuses=ACTIVE_DELIVERY_STATUSES,
                require_no_outstanding=True,
                require_lowest_pending=True,
                events=[
                    AuditEvent(
                        event_type="revision_requested",
                        source="ui",
                        actor_id=requester_id,
                        payload={"revision_number": revision_number, "wants_meeting": bool(wants_meeting)},
                    )
                ],
                actor_id=requester_id,
            )
        except StateConflict as exc:
            raise RevisionNotAllowed(exc.message, project_id=project.id) from exc

        notify_safely(
            self.notifier,
            "revision_requested",
            producer_recipient(self.ledger, project.assigned_producer_id),
            {
                "project_id": str(project.id),
                "revision_number": revision_number,
                "client_notes": client_notes or "",
                "wants_meeting": bool(wants_meeting),
            },
        )
        return revision

    def start_revision(
        self,
        project_id: UUID | str,
        revision_number: int,
        *,
        producer_id: str,
        meeting_link: str | None = None,
    ) -> Revision:
        project = self._require_producer(project_id, producer_id)
        changes: dict = {"status": "in_progress", "started_at": self.clock()}
        if meeting_link:
            changes["meeting_link"] = meeting_link
        return self.ledger.update_revision(
            project.id,
            revision_number,
            expected_status="requested",
            changes=changes,
            action="start_revision",
            project_statuses=ACTIVE_DELIVERY_STATUSES,
            events=[
                AuditEvent(
                    event_type="revision_started",
                    source="ui",
                    actor_id=producer_id,
                    payload={"revision_number": revision_number},
                )
            ],
            actor_id=producer_id,
        )

    def deliver(
        self,
        project_id: UUID | str,
        revision_number: int,
        *,
        producer_id: str,
        drive_link: str,
    ) -> Revision:
        if not drive_link or not drive_link.strip():
            raise ValueError("drive_link is required")
        project = self._require_producer(project_id, producer_id)
        revision = self.ledger.update_revision(
            project.id,
            revision_number,
            expected_status=("requested", "in_progress"),
            changes={
                "status": "delivered",
                "drive_link": drive_link.strip(),
                "delivered_at": self.clock(),
                "delivered_by": producer_id,
            },
            action="deliver_revision",
            project_statuses=ACTIVE_DELIVERY_STATUSES,
            events=[
                AuditEvent(
                    event_type="revision_delivered",
                    source="ui",
                    actor_id=producer_id,
                    payload={"revision_number": revision_number, "drive_link": drive_link.strip()},
                )
            ],
            actor_id=producer_id,
        )
        notify_safely(
            self.notifier,
            "revision_delivered",
            owner_recipient(project),
            {
                "project_id": str(project.id),
                "revision_number": revision_number,
                "drive_link": revision.drive_link,
            },
        )
        return revision

    def submit_feedback(
        self,
        project_id: UUID | str,
        revision_number: int,
        *,
        requester_id: str,
        feedback: str,
    ) -> Revision:
        if not feedback or not feedback.strip():
            raise ValueError("feedback must not be empty")
        project = self.ledger.get_project(project_id)
        if requester_id != project.owner_id:
            raise Unauthorized("only the project owner may leave feedback", project_id=project.id)
        current = self.ledger.get_revision(project.id, revision_number)
        if current is None:
            raise RevisionNotAllowed(f"revision {revision_number} does not exist", project_id=project.id)
        if current.status != "delivered":
            raise RevisionNotAllowed(
                f"feedback requires a delivered revision, revision {revision_number} is {current.status}",
                project_id=project.id,
            )
        if current.client_feedback is not None:
            raise FeedbackAlreadySubmitted(
                f"feedback for revision {revision_number} was already submitted",
                project_id=project.id,
            )
        try:
            return self.ledger.update_revision(
                project.id,
                revision_number,
                expected_status="delivered",
                changes={"client_feedback": feedback.strip()},
                action="submit_feedback",
                conditions=[Revision.client_feedback.is_(None)],
                events=[
                    AuditEvent(
                        event_type="revision_feedback",
                        source="ui",
                        actor_id=requester_id,
                        payload={"revision_number": revision_number},
                    )
                ],
                actor_id=requester_id,
            )
        except StateConflict as exc:
            raise FeedbackAlreadySubmitted(exc.message, project_id=project.id) from exc

    def _require_producer(self, project_id: UUID | str, producer_id: str) -> Project:
        project = self.ledger.get_project(project_id)
        if project.assigned_producer_id is None or producer_id != project.assigned_producer_id:
            raise Unauthorized("only the assigned producer may work on revisions", project_id=project.id)
        return project
