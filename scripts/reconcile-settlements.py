#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser
import logging
import os

from engine.errors import EngineError
from engine.wiring import build_controller


def main() -> None:
    parser = ArgumentParser(description="Finish settlements left in flight by a gateway or database outage")
    parser.add_argument("--limit", type=int, default=200)
    parser.add_argument("--dry-run", action="store_true", help="List in-flight settlements without resuming them")
    args = parser.parse_args()

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    controller = build_controller()
    project_ids = controller.ledger.find_pending_operations(limit=args.limit)
    resumed = 0
    failed = 0
    for project_id in project_ids:
        project = controller.ledger.get_project(project_id)
        if args.dry_run:
            print(f"[reconcile] project={project_id} pending={project.pending_operation} status={project.status}")
            continue
        try:
            result = controller.resume_pending(project_id)
        except EngineError as exc:
            failed += 1
            print(f"[reconcile] project={project_id} failed code={exc.code} error={exc.message}")
            continue
        resumed += 1
        print(f"[reconcile] project={project_id} action={result.action} status={result.project.status}")
    print(f"[reconcile] in_flight={len(project_ids)} resumed={resumed} failed={failed}")


if __name__ == "__main__":
    main()
