#!/usr/bin/env python3
"""
Run the OpenMRS to passport sync outside the API process.

Used by operators to backfill, to test connectivity, or to run the loop as a
standalone worker. Configuration comes from the environment / .env, the same
as the API.

Usage:
    python scripts/run_sync.py once
    python scripts/run_sync.py loop
    python scripts/run_sync.py runs --limit 10
    python scripts/run_sync.py token ops-dashboard --permission sync.read
"""

import argparse
import asyncio
import json
import signal
import sys

from sqlalchemy.ext.asyncio import AsyncEngine

from passport_sync.core.auth import Permissions, create_service_token
from passport_sync.db.target import (
    create_schema,
    create_session_factory,
    create_target_engine,
)
from passport_sync.exceptions import FatalConfig
from passport_sync.logging_config import configure_logging
from passport_sync.settings import settings
from passport_sync.sync.orchestrator import SyncOrchestrator, create_orchestrator
from passport_sync.sync.state_store import CycleStatus


async def _prepare(create_tables: bool = True) -> tuple[SyncOrchestrator, AsyncEngine]:
    engine = create_target_engine(settings.target_database_url, settings.target_pool_size)
    if create_tables and settings.target_create_schema:
        await create_schema(engine)
    orchestrator = create_orchestrator(
        settings, session_factory=create_session_factory(engine)
    )
    return orchestrator, engine


async def run_once() -> int:
    """Run a single cycle and print its report."""
    orchestrator, engine = await _prepare()
    try:
        report = await orchestrator.run_cycle()
    finally:
        await orchestrator.close()
        await engine.dispose()
    print(json.dumps(report.to_dict(), indent=2, default=str))
    return 0 if report.status is CycleStatus.COMPLETED else 1


async def run_loop() -> int:
    """Run the polling loop until SIGINT/SIGTERM."""
    orchestrator, engine = await _prepare()
    loop = asyncio.get_running_loop()
    task = orchestrator.start()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, orchestrator.request_stop)
    try:
        await task
    finally:
        await orchestrator.close()
        await engine.dispose()
    print(json.dumps(orchestrator.counters.to_dict(), indent=2))
    return 0


async def list_runs(limit: int) -> int:
    """Print recent cycle reports from the passport database."""
    orchestrator, engine = await _prepare(create_tables=False)
    try:
        async with orchestrator.session_factory() as session:
            runs = await orchestrator.state_store.recent_runs(
                session, orchestrator.cursor_name, limit=limit
            )
    finally:
        await engine.dispose()
    print(json.dumps(runs, indent=2, default=str))
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Sync OpenMRS observations into patient passports",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help=f"Override LOG_LEVEL (default: {settings.log_level})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("once", help="Run one sync cycle and exit")
    subparsers.add_parser("loop", help="Run the polling loop until interrupted")

    runs_parser = subparsers.add_parser("runs", help="Show recent sync cycles")
    runs_parser.add_argument("--limit", type=int, default=20)

    token_parser = subparsers.add_parser(
        "token", help="Issue a service token for the operational API"
    )
    token_parser.add_argument("service_name", help="Name of the calling service")
    token_parser.add_argument(
        "--permission",
        action="append",
        choices=Permissions.ALL,
        help="Permission to grant (repeatable, default: all)",
    )
    token_parser.add_argument("--expires-hours", type=int, default=24)

    args = parser.parse_args()
    configure_logging(args.log_level)

    try:
        if args.command == "once":
            sys.exit(asyncio.run(run_once()))
        elif args.command == "loop":
            sys.exit(asyncio.run(run_loop()))
        elif args.command == "runs":
            sys.exit(asyncio.run(list_runs(args.limit)))
        else:
            print(
                create_service_token(
                    args.service_name,
                    permissions=args.permission or list(Permissions.ALL),
                    expires_hours=args.expires_hours,
                )
            )
    except FatalConfig as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
