from __future__ import annotations

import json
import logging
from typing import Any

from rq.job import Job as RQJob

from engine.errors import EngineError
from engine.settings import EngineSettings
from engine.wiring import build_controller
from ledger.store import LedgerStore
from notify import build_delivery_notifier
from scheduler.deadline import DeadlineScheduler

logger = logging.getLogger(__name__)


def rq_on_failure(job: RQJob, connection, exc_type, exc_value, traceback) -> None:  # type: ignore[no-untyped-def]
    args = job.args or ()
    payload = {
        "rq_id": job.id,
        "func": job.func_name,
        "error": str(exc_value),
        "args": json.loads(json.dumps(list(args), default=str)),
    }
    LedgerStore().record_event("job_failed", source="worker", payload=payload)


def deadline_sweep_job() -> dict:
    from pipeline.queue import get_sweep_lock

    settings = EngineSettings.from_env()
    controller = build_controller(settings)
    scheduler = DeadlineScheduler(
        controller,
        concurrency=settings.sweep_concurrency,
        batch_size=settings.sweep_batch_size,
        lock=get_sweep_lock(),
        source="worker",
    )
    return scheduler.sweep_once().as_dict()


def reconcile_pending_job(limit: int = 200) -> dict:
    controller = build_controller()
    resumed = 0
    failed: list[dict[str, Any]] = []
    for project_id in controller.ledger.find_pending_operations(limit=limit):
        try:
            controller.resume_pending(project_id)
            resumed += 1
        except EngineError as exc:
            logger.warning("resume of %s failed: %s", project_id, exc)
            failed.append({"project_id": str(project_id), "code": exc.code, "error": exc.message})
    return {"resumed": resumed, "failed": failed}


def deliver_notification_job(kind: str, recipient: str, payload: dict[str, Any]) -> None:
    notifier = build_delivery_notifier(EngineSettings.from_env())
    # NotifierFailure propagates so RQ retries delivery
    notifier.send(kind, recipient, payload)
