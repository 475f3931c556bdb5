import os
from typing import Any

from redis import Redis
from rq import Queue, Retry

from pipeline.jobs import (
    deadline_sweep_job,
    deliver_notification_job,
    reconcile_pending_job,
    rq_on_failure,
)

SWEEP_LOCK_NAME = "songforge:deadline-sweep"


def _redis_url() -> str:
    return os.getenv("REDIS_URL", "redis://localhost:6379/0")


def _timeout_seconds(kind: str) -> int:
    if kind == "sweep":
        return int(os.getenv("RQ_SWEEP_TIMEOUT", "600"))
    return int(os.getenv("RQ_JOB_TIMEOUT", "120"))


def get_redis() -> Redis:
    return Redis.from_url(_redis_url())


def get_queue(name: str = "default") -> Queue:
    return Queue(name, connection=get_redis())


def get_sweep_lock(timeout_s: int | None = None):  # type: ignore[no-untyped-def]
    """Cross-process single-flight lock for deadline sweeps."""
    return get_redis().lock(SWEEP_LOCK_NAME, timeout=timeout_s or _timeout_seconds("sweep"))


def enqueue_deadline_sweep() -> dict:
    queue = get_queue()
    job = queue.enqueue(
        deadline_sweep_job,
        job_timeout=_timeout_seconds("sweep"),
        on_failure=rq_on_failure,
    )
    return {"rq_id": job.id, "queue": queue.name}


def enqueue_reconcile(limit: int = 200) -> dict:
    queue = get_queue()
    job = queue.enqueue(
        reconcile_pending_job,
        limit,
        job_timeout=_timeout_seconds("sweep"),
        on_failure=rq_on_failure,
    )
    return {"rq_id": job.id, "queue": queue.name}


def enqueue_notification(kind: str, recipient: str, payload: dict[str, Any]) -> str:
    queue = get_queue(os.getenv("RQ_NOTIFY_QUEUE", "default"))
    job = queue.enqueue(
        deliver_notification_job,
        kind,
        recipient,
        payload,
        job_timeout=_timeout_seconds("notify"),
        retry=Retry(max=3, interval=[10, 30, 60]),
        on_failure=rq_on_failure,
    )
    return job.id
