from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from os import getenv
import threading
from typing import List, Literal, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import desc, func, select

from db.models import AuditEvent, Payout, Project, Revision
from engine.controller import PaymentCapturedEvent, ProjectLifecycleController
from engine.errors import (
    AcceptanceWindowExpired,
    AmountMismatch,
    EngineError,
    FeedbackAlreadySubmitted,
    InvalidTransition,
    PaymentGatewayUnavailable,
    PaymentRejected,
    ProducerBlocked,
    ProjectNotFound,
    RevisionNotAllowed,
    StateConflict,
    Unauthorized,
)
from engine.settlement import SettlementResult
from engine.wiring import build_controller
from scheduler.deadline import DeadlineScheduler

app = FastAPI(title="Songforge Settlement API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_STATUS_BY_ERROR: dict[type[EngineError], int] = {
    StateConflict: 409,
    InvalidTransition: 409,
    RevisionNotAllowed: 409,
    FeedbackAlreadySubmitted: 409,
    AcceptanceWindowExpired: 410,
    ProducerBlocked: 403,
    Unauthorized: 403,
    ProjectNotFound: 404,
    PaymentRejected: 402,
    PaymentGatewayUnavailable: 503,
    AmountMismatch: 400,
}

_inline_sweep_lock = threading.Lock()


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@lru_cache(maxsize=1)
def get_controller() -> ProjectLifecycleController:
    return build_controller()


def _identity(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Identity:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="user_id_required")
    role = (x_user_role or "customer").strip().lower()
    if role not in {"customer", "producer", "admin"}:
        raise HTTPException(status_code=403, detail="unknown_role")
    return Identity(user_id=x_user_id.strip(), role=role)


def _require_operator(x_operator_token: str | None = Header(default=None)) -> None:
    expected = getenv("OPERATOR_TOKEN", "")
    if not expected:
        if getenv("ALLOW_OPS_WITHOUT_TOKEN", "0") == "1":
            return
        raise HTTPException(status_code=503, detail="operator_token_missing")
    if x_operator_token != expected:
        raise HTTPException(status_code=401, detail="operator_token_required")


def _http_error(exc: EngineError) -> HTTPException:
    for error_type in type(exc).__mro__:
        status = _STATUS_BY_ERROR.get(error_type)  # type: ignore[arg-type]
        if status is not None:
            return HTTPException(status_code=status, detail=exc.code)
    return HTTPException(status_code=500, detail=exc.code)


@app.exception_handler(RequestValidationError)
async def _validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"detail": "validation_error", "errors": jsonable_encoder(exc.errors())},
    )


def _worker_state() -> dict:
    try:
        from rq import Worker
        from pipeline.queue import get_queue, get_redis

        redis = get_redis()
        redis.ping()
        queue = get_queue()
        workers = Worker.all(connection=redis)
        return {
            "redis_ok": True,
            "online": len(workers) > 0,
            "worker_count": len(workers),
            "queue_depth": queue.count,
        }
    except Exception:
        return {
            "redis_ok": False,
            "online": False,
            "worker_count": 0,
            "queue_depth": None,
        }


def _project_row(project: Project) -> dict:
    return {
        "id": project.id,
        "status": project.status,
        "owner_id": project.owner_id,
        "assigned_producer_id": project.assigned_producer_id,
        "tier": project.tier,
        "price": project.price,
        "currency": project.currency,
        "payment_reference": project.payment_reference,
        "acceptance_deadline": project.acceptance_deadline,
        "platform_fee_amount": project.platform_fee_amount,
        "producer_payout_amount": project.producer_payout_amount,
        "payout_status": project.payout_status,
        "refund_amount": project.refund_amount,
        "refund_reference": project.refund_reference,
        "refund_reason": project.refund_reason,
        "refunded_at": project.refunded_at,
        "producer_paid_at": project.producer_paid_at,
        "blocked_producer_ids": list(project.blocked_producer_ids or []),
        "cancellation_reason": project.cancellation_reason,
        "recommended_refund_percent": project.recommended_refund_percent,
        "number_of_revisions": project.number_of_revisions,
        "wants_mixing": project.wants_mixing,
        "wants_mastering": project.wants_mastering,
        "wants_analog": project.wants_analog,
        "wants_recorded_stems": project.wants_recorded_stems,
        "genre_category": project.genre_category,
        "delivered_file_refs": project.delivered_file_refs or [],
        "pending_operation": project.pending_operation,
        "created_at": project.created_at,
        "updated_at": project.updated_at,
    }


def _revision_row(revision: Revision) -> dict:
    return {
        "revision_number": revision.revision_number,
        "status": revision.status,
        "client_notes": revision.client_notes,
        "client_feedback": revision.client_feedback,
        "wants_meeting": revision.wants_meeting,
        "meeting_link": revision.meeting_link,
        "drive_link": revision.drive_link,
        "requested_at": revision.requested_at,
        "started_at": revision.started_at,
        "delivered_at": revision.delivered_at,
    }


def _payout_row(payout: Payout) -> dict:
    return {
        "producer_id": payout.producer_id,
        "kind": payout.kind,
        "amount": payout.amount,
        "status": payout.status,
        "transfer_reference": payout.transfer_reference,
        "created_at": payout.created_at,
    }


def _project_view(controller: ProjectLifecycleController, project: Project) -> dict:
    ledger = controller.ledger
    payload = _project_row(project)
    payload["revisions"] = [_revision_row(r) for r in ledger.list_revisions(project.id)]
    payload["payouts"] = [_payout_row(p) for p in ledger.list_payouts(project.id)]
    payload["delivered_revisions"] = ledger.delivered_count(project.id)
    payload["recommended_refund"] = controller.recommend_refund_percent(project)
    return jsonable_encoder(payload)


def _result_view(result: SettlementResult) -> dict:
    return jsonable_encoder(result.as_dict())


class PaymentCapturedRequest(BaseModel):
    project_id: UUID
    payment_reference: str = Field(min_length=1)
    amount_minor_units: int = Field(ge=0)
    owner_id: str = Field(min_length=1)
    owner_email: str | None = None
    tier: str = Field(default="standard")
    currency: str | None = None
    number_of_revisions: int = Field(default=0, ge=0)
    wants_mixing: bool = False
    wants_mastering: bool = False
    wants_analog: bool = False
    wants_recorded_stems: bool = False
    genre_category: str | None = None
    song_idea: str | None = None


class ProducerActionRequest(BaseModel):
    action: Literal["accept", "start_work", "advance", "start_revision", "deliver_revision"]
    new_status: Literal["in_progress", "review", "completed"] | None = None
    revision_number: int | None = Field(default=None, ge=1)
    meeting_link: str | None = None
    drive_link: str | None = None
    delivered_file_refs: List[str] | None = None


class AdminActionRequest(BaseModel):
    action: Literal["approve_cancellation", "deny_cancellation", "reassign_producer", "payout_producer"]
    refund_percent: int | None = Field(default=None, ge=0, le=100)
    reason: str | None = None


class CustomerActionRequest(BaseModel):
    action: Literal["request_cancellation", "request_revision", "submit_feedback"]
    reason: str | None = None
    revision_number: int | None = Field(default=None, ge=1)
    client_notes: str | None = None
    wants_meeting: bool = False
    feedback: str | None = None


class SweepRequest(BaseModel):
    inline: bool = Field(default=False)


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/system/status")
def system_status(
    _guard: None = Depends(_require_operator),
    controller: ProjectLifecycleController = Depends(get_controller),
) -> dict:
    session = controller.ledger.session()
    try:
        rows = session.execute(select(Project.status, func.count()).group_by(Project.status)).all()
        in_flight = session.execute(
            select(func.count()).select_from(Project).where(Project.pending_operation.is_not(None))
        ).scalar_one()
    finally:
        session.close()
    return {
        "updated_at": datetime.now(timezone.utc).isoformat(),
        "worker": _worker_state(),
        "projects_by_status": {str(status): int(count) for status, count in rows},
        "settlements_in_flight": int(in_flight),
    }


@app.post("/events/payment-captured")
def payment_captured(
    request: PaymentCapturedRequest,
    _guard: None = Depends(_require_operator),
    controller: ProjectLifecycleController = Depends(get_controller),
) -> dict:
    event = PaymentCapturedEvent(**request.model_dump())
    try:
        project = controller.create_from_payment_event(event)
    except EngineError as exc:
        raise _http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="invalid_payment_event") from exc
    return _project_view(controller, project)


@app.get("/projects/{project_id}")
def get_project(
    project_id: UUID,
    identity: Identity = Depends(_identity),
    controller: ProjectLifecycleController = Depends(get_controller),
) -> dict:
    try:
        project = controller.ledger.get_project(project_id)
    except EngineError as exc:
        raise _http_error(exc) from exc
    allowed = identity.is_admin or identity.user_id in {project.owner_id, project.assigned_producer_id}
    # producers may look at open requests before accepting them
    if not allowed and not (identity.role == "producer" and project.status == "paid"):
        raise HTTPException(status_code=403, detail="unauthorized")
    return _project_view(controller, project)


@app.get("/projects/{project_id}/audit-events")
def list_project_audit_events(
    project_id: UUID,
    event_type: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    identity: Identity = Depends(_identity),
    controller: ProjectLifecycleController = Depends(get_controller),
) -> List[dict]:
    if not identity.is_admin:
        raise HTTPException(status_code=403, detail="unauthorized")
    session = controller.ledger.session()
    try:
        stmt = select(AuditEvent).where(AuditEvent.project_id == project_id)
        if event_type:
            stmt = stmt.where(AuditEvent.event_type == event_type)
        stmt = stmt.order_by(desc(AuditEvent.occurred_at)).limit(limit)
        rows = session.execute(stmt).scalars().all()
        return jsonable_encoder(
            [
                {
                    "event_type": row.event_type,
                    "source": row.source,
                    "actor_id": row.actor_id,
                    "occurred_at": row.occurred_at,
                    "payload": row.payload,
                }
                for row in rows
            ]
        )
    finally:
        session.close()


@app.post("/projects/{project_id}/producer-actions")
def producer_action(
    project_id: UUID,
    request: ProducerActionRequest,
    identity: Identity = Depends(_identity),
    controller: ProjectLifecycleController = Depends(get_controller),
) -> dict:
    if identity.role not in {"producer", "admin"}:
        raise HTTPException(status_code=403, detail="unauthorized")
    try:
        if request.action == "accept":
            project = controller.producer_accept(project_id, identity.user_id)
        elif request.action == "start_work":
            project = controller.start_work(project_id, actor_id=identity.user_id, is_admin=identity.is_admin)
        elif request.action == "advance":
            if request.new_status is None:
                raise HTTPException(status_code=400, detail="new_status_required")
            project = controller.advance_status(
                project_id,
                request.new_status,
                actor_id=identity.user_id,
                is_admin=identity.is_admin,
                delivered_file_refs=request.delivered_file_refs,
            )
        else:
            if request.revision_number is None:
                raise HTTPException(status_code=400, detail="revision_number_required")
            if request.action == "start_revision":
                controller.revisions.start_revision(
                    project_id,
                    request.revision_number,
                    producer_id=identity.user_id,
                    meeting_link=request.meeting_link,
                )
            else:
                if not request.drive_link:
                    raise HTTPException(status_code=400, detail="drive_link_required")
                controller.revisions.deliver(
                    project_id,
                    request.revision_number,
                    producer_id=identity.user_id,
                    drive_link=request.drive_link,
                )
            project = controller.ledger.get_project(project_id)
    except EngineError as exc:
        raise _http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="invalid_request") from exc
    return _project_view(controller, project)


@app.post("/projects/{project_id}/admin-actions")
def admin_action(
    project_id: UUID,
    request: AdminActionRequest,
    identity: Identity = Depends(_identity),
    controller: ProjectLifecycleController = Depends(get_controller),
) -> dict:
    try:
        if request.action == "approve_cancellation":
            result = controller.resolve_cancellation(
                project_id,
                "approve",
                refund_percent=request.refund_percent,
                reviewer_id=identity.user_id,
                reviewer_is_admin=identity.is_admin,
            )
        elif request.action == "deny_cancellation":
            result = controller.resolve_cancellation(
                project_id,
                "deny",
                reviewer_id=identity.user_id,
                reviewer_is_admin=identity.is_admin,
            )
        elif request.action == "reassign_producer":
            result = controller.reassign_producer(
                project_id,
                reason=request.reason,
                reviewer_id=identity.user_id,
                reviewer_is_admin=identity.is_admin,
            )
        else:
            result = controller.payout_producer(
                project_id,
                reviewer_id=identity.user_id,
                reviewer_is_admin=identity.is_admin,
            )
    except EngineError as exc:
        raise _http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="invalid_request") from exc
    return _result_view(result)


@app.post("/projects/{project_id}/customer-actions")
def customer_action(
    project_id: UUID,
    request: CustomerActionRequest,
    identity: Identity = Depends(_identity),
    controller: ProjectLifecycleController = Depends(get_controller),
) -> dict:
    try:
        if request.action == "request_cancellation":
            project = controller.request_cancellation(project_id, identity.user_id, request.reason)
        else:
            if request.revision_number is None:
                raise HTTPException(status_code=400, detail="revision_number_required")
            if request.action == "request_revision":
                controller.revisions.request_revision(
                    project_id,
                    request.revision_number,
                    requester_id=identity.user_id,
                    client_notes=request.client_notes,
                    wants_meeting=request.wants_meeting,
                )
            else:
                if not request.feedback:
                    raise HTTPException(status_code=400, detail="feedback_required")
                controller.revisions.submit_feedback(
                    project_id,
                    request.revision_number,
                    requester_id=identity.user_id,
                    feedback=request.feedback,
                )
            project = controller.ledger.get_project(project_id)
    except EngineError as exc:
        raise _http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="invalid_request") from exc
    return _project_view(controller, project)


@app.post("/ops/deadline-sweep")
def ops_deadline_sweep(
    request: SweepRequest | None = None,
    _guard: None = Depends(_require_operator),
    controller: ProjectLifecycleController = Depends(get_controller),
) -> dict:
    if request is not None and request.inline:
        scheduler = DeadlineScheduler(
            controller,
            concurrency=controller.settings.sweep_concurrency,
            batch_size=controller.settings.sweep_batch_size,
            lock=_inline_sweep_lock,
        )
        return {"mode": "inline", **scheduler.sweep_once().as_dict()}

    from pipeline.queue import enqueue_deadline_sweep

    return {"mode": "queued", **enqueue_deadline_sweep()}


@app.post("/ops/reconcile")
def ops_reconcile(
    limit: int = Query(200, ge=1, le=1000),
    _guard: None = Depends(_require_operator),
) -> dict:
    from pipeline.queue import enqueue_reconcile

    return enqueue_reconcile(limit)
