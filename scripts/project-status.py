#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser

from sqlalchemy import desc, func, select

from db.models import Project
from db.session import SessionLocal


def main() -> None:
    parser = ArgumentParser(description="Show recent song request statuses")
    parser.add_argument("--limit", type=int, default=10)
    parser.add_argument("--summary", action="store_true")
    parser.add_argument("--in-flight", action="store_true", help="Only show projects with a settlement in flight")
    args = parser.parse_args()

    session = SessionLocal()
    try:
        if args.summary:
            stmt = select(Project.status, func.count()).group_by(Project.status)
            rows = session.execute(stmt).all()
            for status, count in rows:
                print(f"[summary] {status}: {count}")
            return
        stmt = select(Project)
        if args.in_flight:
            stmt = stmt.where(Project.pending_operation.is_not(None))
        stmt = stmt.order_by(desc(Project.updated_at)).limit(args.limit)
        projects = session.execute(stmt).scalars().all()
        for project in projects:
            print(
                f"[project] id={project.id} status={project.status} price={project.price} "
                f"producer={project.assigned_producer_id} payout={project.payout_status}"
            )
            if project.pending_operation:
                print(f"[project] in_flight={project.pending_operation} payload={project.pending_operation_payload}")
    finally:
        session.close()


if __name__ == "__main__":
    main()
