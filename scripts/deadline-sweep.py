#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser
import logging
import os
import signal
import threading

from engine.settings import EngineSettings
from engine.wiring import build_controller
from pipeline.queue import enqueue_deadline_sweep, get_sweep_lock
from scheduler.deadline import DeadlineScheduler


def main() -> None:
    parser = ArgumentParser(description="Refund paid requests whose acceptance window closed")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    parser.add_argument("--enqueue", action="store_true", help="Enqueue a sweep on the RQ queue and exit")
    parser.add_argument("--interval", type=int, default=None, help="Seconds between sweeps (default SWEEP_INTERVAL_S)")
    parser.add_argument("--local-lock", action="store_true", help="Use an in-process lock instead of redis")
    args = parser.parse_args()

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.enqueue:
        result = enqueue_deadline_sweep()
        print(f"[sweep] enqueued rq_id={result['rq_id']}")
        return

    settings = EngineSettings.from_env()
    scheduler = DeadlineScheduler(
        build_controller(settings),
        concurrency=settings.sweep_concurrency,
        batch_size=settings.sweep_batch_size,
        lock=None if args.local_lock else get_sweep_lock(),
    )

    if args.once:
        report = scheduler.sweep_once()
        print(
            f"[sweep] processed={report.processed} refunded={report.refunded} "
            f"conflicts={report.conflicts} errors={report.errors} skipped={report.skipped}"
        )
        for failure in report.failures:
            print(f"[sweep] failed project={failure['project_id']} code={failure['code']} error={failure['error']}")
        return

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    interval = args.interval or settings.sweep_interval_s
    print(f"[sweep] running every {interval}s")
    scheduler.run_forever(interval, stop)
    print("[sweep] stopped")


if __name__ == "__main__":
    main()
