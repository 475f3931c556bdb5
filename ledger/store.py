from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import and_, exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from db.models import AuditEvent, Payout, ProducerAccount, Project, Revision, _utcnow
from engine.errors import ProjectNotFound, StateConflict

logger = logging.getLogger(__name__)

OUTSTANDING_REVISION_STATUSES = ("requested", "in_progress")


def _as_tuple(value: str | Sequence[str]) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    return tuple(value)


def _as_uuid(value: UUID | str) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


class LedgerStore:
    """Durable record of projects, revisions, payouts and the audit trail.

    Every status change goes through ``compare_and_set``: a single
    ``UPDATE ... WHERE id = ? AND status IN (...)`` whose row count decides
    the winner. A zero-row update writes a ``state_conflict`` audit row for
    the losing side and raises ``StateConflict``.
    """

    def __init__(self, session_factory: Callable[[], Session] | None = None) -> None:
        if session_factory is None:
            from db.session import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory

    def session(self) -> Session:
        return self._session_factory()

    # projects

    def find_project(self, project_id: UUID | str) -> Project | None:
        session = self.session()
        try:
            return session.get(Project, _as_uuid(project_id))
        finally:
            session.close()

    def get_project(self, project_id: UUID | str) -> Project:
        project = self.find_project(project_id)
        if project is None:
            raise ProjectNotFound("project does not exist", project_id=project_id)
        return project

    def create_project(self, **fields: Any) -> tuple[Project, bool]:
        """Insert a project; returns ``(project, created)``.

        A concurrent insert of the same id loses on the primary key and gets
        the stored row back instead.
        """
        fields.setdefault("id", uuid4())
        session = self.session()
        try:
            project = Project(**fields)
            session.add(project)
            session.add(
                AuditEvent(
                    event_type="project_created",
                    source="system",
                    actor_id=fields.get("owner_id"),
                    project_id=project.id,
                    payload={"price": fields.get("price"), "tier": fields.get("tier")},
                )
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = session.get(Project, project.id)
                if existing is None:
                    raise
                return existing, False
            return project, True
        finally:
            session.close()

    def compare_and_set(
        self,
        project_id: UUID | str,
        *,
        expected_status: str | Sequence[str],
        changes: dict[str, Any],
        action: str,
        claim: str | None = None,
        conditions: Iterable[Any] = (),
        add_rows: Iterable[Any] = (),
        events: Iterable[AuditEvent] = (),
        actor_id: str | None = None,
        source: str = "system",
    ) -> Project:
        """Apply ``changes`` only if the row still matches what the caller saw.

        ``claim=None`` requires that no settlement is in flight; a claim name
        requires that exact in-flight operation, which is how a settlement
        commits its own outcome.
        """
        pid = _as_uuid(project_id)
        statuses = _as_tuple(expected_status)
        criteria = [Project.id == pid, Project.status.in_(statuses)]
        if claim is None:
            criteria.append(Project.pending_operation.is_(None))
        else:
            criteria.append(Project.pending_operation == claim)
        criteria.extend(conditions)

        values = dict(changes)
        values.setdefault("updated_at", _utcnow())

        session = self.session()
        try:
            stmt = (
                update(Project)
                .where(and_(*criteria))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = session.execute(stmt)
            if result.rowcount != 1:
                session.rollback()
                current = session.get(Project, pid)
                if current is None:
                    raise ProjectNotFound("project does not exist", project_id=pid)
                self._record_conflict(
                    session,
                    current,
                    action=action,
                    expected=statuses,
                    claim=claim,
                    actor_id=actor_id,
                    source=source,
                )
                raise StateConflict(
                    f"{action}: expected status in {list(statuses)}, found {current.status}"
                    + (f" with {current.pending_operation} in flight" if current.pending_operation else ""),
                    project_id=pid,
                )
            for row in add_rows:
                session.add(row)
            for event in events:
                if event.project_id is None:
                    event.project_id = pid
                session.add(event)
            session.commit()
            return (
                session.execute(select(Project).where(Project.id == pid).execution_options(populate_existing=True))
                .scalar_one()
            )
        finally:
            session.close()

    def _record_conflict(
        self,
        session: Session,
        current: Project,
        *,
        action: str,
        expected: tuple[str, ...],
        claim: str | None,
        actor_id: str | None,
        source: str,
    ) -> None:
        session.add(
            AuditEvent(
                event_type="state_conflict",
                source=source,
                actor_id=actor_id,
                project_id=current.id,
                payload={
                    "action": action,
                    "expected_status": list(expected),
                    "expected_claim": claim,
                    "found_status": current.status,
                    "found_claim": current.pending_operation,
                },
            )
        )
        session.commit()
        logger.info(
            "state conflict on %s: %s expected %s found %s",
            current.id,
            action,
            list(expected),
            current.status,
        )

    def release_claim(self, project_id: UUID | str, claim: str, *, reason: str, source: str = "system") -> bool:
        pid = _as_uuid(project_id)
        session = self.session()
        try:
            result = session.execute(
                update(Project)
                .where(Project.id == pid, Project.pending_operation == claim)
                .values(pending_operation=None, pending_operation_payload=None, updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            released = result.rowcount == 1
            if released:
                session.add(
                    AuditEvent(
                        event_type="settlement_released",
                        source=source,
                        project_id=pid,
                        payload={"operation": claim, "reason": reason},
                    )
                )
            session.commit()
            return released
        finally:
            session.close()

    def find_expired(
        self,
        now: datetime,
        limit: int = 200,
        *,
        after: tuple[datetime, UUID] | None = None,
    ) -> list[UUID]:
        return [project_id for project_id, _ in self.find_expired_page(now, limit, after=after)]

    def find_expired_page(
        self,
        now: datetime,
        limit: int = 200,
        *,
        after: tuple[datetime, UUID] | None = None,
    ) -> list[tuple[UUID, datetime]]:
        """Expired projects as ``(id, acceptance_deadline)``, keyset-paged after ``after``."""
        session = self.session()
        try:
            stmt = select(Project.id, Project.acceptance_deadline).where(
                Project.status.in_(("pending_payment", "paid")),
                Project.payment_reference.is_not(None),
                Project.refunded_at.is_(None),
                Project.acceptance_deadline.is_not(None),
                Project.acceptance_deadline < now,
            )
            if after is not None:
                deadline, last_id = after
                stmt = stmt.where(
                    or_(
                        Project.acceptance_deadline > deadline,
                        and_(Project.acceptance_deadline == deadline, Project.id > last_id),
                    )
                )
            stmt = stmt.order_by(Project.acceptance_deadline, Project.id).limit(limit)
            return [(row.id, row.acceptance_deadline) for row in session.execute(stmt).all()]
        finally:
            session.close()

    def find_pending_operations(self, limit: int = 200) -> list[UUID]:
        session = self.session()
        try:
            stmt = (
                select(Project.id)
                .where(Project.pending_operation.is_not(None))
                .order_by(Project.updated_at)
                .limit(limit)
            )
            return list(session.execute(stmt).scalars().all())
        finally:
            session.close()

    # revisions

    def list_revisions(self, project_id: UUID | str) -> list[Revision]:
        session = self.session()
        try:
            stmt = (
                select(Revision)
                .where(Revision.project_id == _as_uuid(project_id))
                .order_by(Revision.revision_number)
            )
            return list(session.execute(stmt).scalars().all())
        finally:
            session.close()

    def get_revision(self, project_id: UUID | str, revision_number: int) -> Revision | None:
        session = self.session()
        try:
            stmt = select(Revision).where(
                Revision.project_id == _as_uuid(project_id),
                Revision.revision_number == revision_number,
            )
            return session.execute(stmt).scalar_one_or_none()
        finally:
            session.close()

    def ensure_revisions(self, project_id: UUID | str, count: int) -> list[Revision]:
        """Create any missing ordinals ``1..count``; existing rows are kept."""
        pid = _as_uuid(project_id)
        session = self.session()
        try:
            existing = set(
                session.execute(select(Revision.revision_number).where(Revision.project_id == pid)).scalars().all()
            )
            missing = [number for number in range(1, count + 1) if number not in existing]
            if missing:
                for number in missing:
                    session.add(Revision(project_id=pid, revision_number=number, status="pending"))
                try:
                    session.commit()
                except IntegrityError:
                    # a concurrent initializer inserted the same ordinals
                    session.rollback()
        finally:
            session.close()
        return self.list_revisions(pid)

    def update_revision(
        self,
        project_id: UUID | str,
        revision_number: int,
        *,
        expected_status: str | Sequence[str],
        changes: dict[str, Any],
        action: str,
        project_statuses: Sequence[str] | None = None,
        require_no_outstanding: bool = False,
        require_lowest_pending: bool = False,
        conditions: Iterable[Any] = (),
        events: Iterable[AuditEvent] = (),
        actor_id: str | None = None,
        source: str = "ui",
    ) -> Revision:
        pid = _as_uuid(project_id)
        statuses = _as_tuple(expected_status)
        criteria = [
            Revision.project_id == pid,
            Revision.revision_number == revision_number,
            Revision.status.in_(statuses),
        ]
        if require_no_outstanding:
            other = aliased(Revision)
            criteria.append(
                ~exists().where(
                    other.project_id == pid,
                    other.status.in_(OUTSTANDING_REVISION_STATUSES),
                )
            )
        if require_lowest_pending:
            lower = aliased(Revision)
            criteria.append(
                ~exists().where(
                    lower.project_id == pid,
                    lower.status == "pending",
                    lower.revision_number < revision_number,
                )
            )
        criteria.extend(conditions)

        values = dict(changes)
        values.setdefault("updated_at", _utcnow())

        session = self.session()
        try:
            # serialize revision writes per project where the backend supports row locks
            project_stmt = select(Project.status).where(Project.id == pid).with_for_update()
            project_status = session.execute(project_stmt).scalar_one_or_none()
            if project_status is None:
                raise ProjectNotFound("project does not exist", project_id=pid)
            if project_statuses is not None and project_status not in project_statuses:
                session.rollback()
                raise StateConflict(
                    f"{action}: project status {project_status} does not allow revision changes",
                    project_id=pid,
                )
            result = session.execute(
                update(Revision)
                .where(and_(*criteria))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                current = session.execute(
                    select(Revision).where(
                        Revision.project_id == pid,
                        Revision.revision_number == revision_number,
                    )
                ).scalar_one_or_none()
                session.add(
                    AuditEvent(
                        event_type="state_conflict",
                        source=source,
                        actor_id=actor_id,
                        project_id=pid,
                        payload={
                            "action": action,
                            "revision_number": revision_number,
                            "expected_status": list(statuses),
                            "found_status": current.status if current is not None else None,
                        },
                    )
                )
                session.commit()
                raise StateConflict(
                    f"{action}: revision {revision_number} is "
                    + (current.status if current is not None else "missing"),
                    project_id=pid,
                )
            for event in events:
                if event.project_id is None:
                    event.project_id = pid
                session.add(event)
            session.commit()
            return session.execute(
                select(Revision)
                .where(Revision.project_id == pid, Revision.revision_number == revision_number)
                .execution_options(populate_existing=True)
            ).scalar_one()
        finally:
            session.close()

    def delivered_count(self, project_id: UUID | str) -> int:
        session = self.session()
        try:
            stmt = select(func.count()).select_from(Revision).where(
                Revision.project_id == _as_uuid(project_id),
                Revision.status == "delivered",
            )
            return int(session.execute(stmt).scalar_one())
        finally:
            session.close()

    # producers, payouts, audit

    def get_producer(self, producer_id: str) -> ProducerAccount | None:
        session = self.session()
        try:
            return session.get(ProducerAccount, producer_id)
        finally:
            session.close()

    def upsert_producer(self, producer_id: str, **fields: Any) -> ProducerAccount:
        session = self.session()
        try:
            account = session.get(ProducerAccount, producer_id)
            if account is None:
                account = ProducerAccount(id=producer_id)
                session.add(account)
            for key, value in fields.items():
                setattr(account, key, value)
            session.commit()
            return account
        finally:
            session.close()

    def list_payouts(self, project_id: UUID | str) -> list[Payout]:
        session = self.session()
        try:
            stmt = select(Payout).where(Payout.project_id == _as_uuid(project_id)).order_by(Payout.created_at)
            return list(session.execute(stmt).scalars().all())
        finally:
            session.close()

    def sum_payouts(self, project_id: UUID | str) -> int:
        session = self.session()
        try:
            stmt = select(func.coalesce(func.sum(Payout.amount), 0)).where(
                Payout.project_id == _as_uuid(project_id)
            )
            return int(session.execute(stmt).scalar_one())
        finally:
            session.close()

    def record_event(
        self,
        event_type: str,
        *,
        source: str,
        project_id: UUID | str | None = None,
        actor_id: str | None = None,
        payload: dict | None = None,
    ) -> None:
        session = self.session()
        try:
            session.add(
                AuditEvent(
                    event_type=event_type,
                    source=source,
                    actor_id=actor_id,
                    project_id=_as_uuid(project_id) if project_id is not None else None,
                    payload=payload,
                )
            )
            session.commit()
        finally:
            session.close()

    def list_events(self, project_id: UUID | str, event_type: str | None = None) -> list[AuditEvent]:
        session = self.session()
        try:
            stmt = select(AuditEvent).where(AuditEvent.project_id == _as_uuid(project_id))
            if event_type is not None:
                stmt = stmt.where(AuditEvent.event_type == event_type)
            return list(session.execute(stmt.order_by(AuditEvent.occurred_at)).scalars().all())
        finally:
            session.close()
