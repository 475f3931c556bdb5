from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

from engine.controller import ProjectLifecycleController
from engine.errors import EngineError, StateConflict
from engine.settlement import SettlementResult

logger = logging.getLogger(__name__)


class SweepLock(Protocol):
    def acquire(self, blocking: bool = ...) -> bool: ...

    def release(self) -> None: ...


@dataclass
class SweepReport:
    processed: int = 0
    refunded: int = 0
    conflicts: int = 0
    errors: int = 0
    skipped: bool = False
    failures: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "refunded": self.refunded,
            "conflicts": self.conflicts,
            "errors": self.errors,
            "skipped": self.skipped,
            "failures": list(self.failures),
        }


class DeadlineScheduler:
    """Refunds paid projects whose acceptance window closed without a producer.

    One sweep runs at a time per lock. Projects are settled on a bounded
    thread pool and each failure is counted without stopping the rest; a
    failed project is picked up again by the next sweep.
    """

    def __init__(
        self,
        controller: ProjectLifecycleController,
        *,
        concurrency: int = 4,
        batch_size: int = 200,
        lock: SweepLock | None = None,
        clock: Callable[[], datetime] | None = None,
        source: str = "system",
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.controller = controller
        self.ledger = controller.ledger
        self.concurrency = concurrency
        self.batch_size = batch_size
        self.lock = lock or threading.Lock()
        self.clock = clock or controller.clock
        self.source = source

    def sweep_once(self) -> SweepReport:
        if not self.lock.acquire(blocking=False):
            logger.info("deadline sweep already running, skipping")
            return SweepReport(skipped=True)
        try:
            return self._sweep()
        finally:
            self.lock.release()

    def run_forever(self, interval_s: int, stop_event: threading.Event | None = None) -> None:
        stop_event = stop_event or threading.Event()
        while not stop_event.is_set():
            try:
                report = self.sweep_once()
            except Exception:
                # the store itself failed; try again next interval
                logger.exception("deadline sweep failed")
            else:
                if report.processed:
                    logger.info("deadline sweep: %s", report.as_dict())
            stop_event.wait(interval_s)

    def _sweep(self) -> SweepReport:
        now = self.clock()
        report = SweepReport()
        after: tuple[datetime, UUID] | None = None
        # keyset paging walks past projects that keep failing
        while True:
            page = self.ledger.find_expired_page(now, limit=self.batch_size, after=after)
            if not page:
                break
            self._settle_page([project_id for project_id, _ in page], report)
            if len(page) < self.batch_size:
                break
            last_id, last_deadline = page[-1]
            after = (last_deadline, last_id)

        if report.processed:
            logger.info(
                "deadline sweep processed=%s refunded=%s conflicts=%s errors=%s",
                report.processed,
                report.refunded,
                report.conflicts,
                report.errors,
            )
        return report

    def _settle_page(self, project_ids: list[UUID], report: SweepReport) -> None:
        workers = min(self.concurrency, len(project_ids))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="deadline-sweep") as pool:
            futures = {pool.submit(self._expire, project_id): project_id for project_id in project_ids}
            for future in as_completed(futures):
                project_id = futures[future]
                report.processed += 1
                try:
                    result = future.result()
                except StateConflict as exc:
                    report.conflicts += 1
                    logger.info("deadline sweep lost race on %s: %s", project_id, exc)
                except EngineError as exc:
                    report.errors += 1
                    report.failures.append({"project_id": str(project_id), "code": exc.code, "error": exc.message})
                    logger.warning("deadline refund failed for %s: %s", project_id, exc)
                except Exception as exc:
                    report.errors += 1
                    report.failures.append({"project_id": str(project_id), "code": "unexpected", "error": str(exc)})
                    logger.exception("deadline refund crashed for %s", project_id)
                else:
                    if not result.noop:
                        report.refunded += 1

    def _expire(self, project_id: UUID) -> SettlementResult:
        return self.controller.auto_refund_expired(project_id, source=self.source)
