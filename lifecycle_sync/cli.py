"""CLI entry point: sync, scheduler, status, conflicts, match, init-db."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from lifecycle_sync.config import AppConfig, load_config
from lifecycle_sync.db import Database
from lifecycle_sync.identity_resolver import IdentityResolver, MatchContext
from lifecycle_sync.logging_config import configure_logging
from lifecycle_sync.models import DataSourceType, MatchConfidence
from lifecycle_sync.orchestrator import SyncOrchestrator, create_orchestrator
from lifecycle_sync.pg_store import PostgresStore, open_directory
from lifecycle_sync.store import MemoryStore, SyncStore

logger = logging.getLogger("lifecycle_sync.cli")

SOURCE_CHOICES = ["all"] + [s.value for s in DataSourceType]


def _open_database(config: AppConfig) -> Optional[Database]:
    if config.database is None:
        logger.warning("No database configured, using in-memory store")
        return None
    return Database(config.database)


@asynccontextmanager
async def _orchestrator(config: AppConfig) -> AsyncIterator[SyncOrchestrator]:
    """Build an orchestrator over PostgreSQL when configured, else memory."""
    db = _open_database(config)
    store: SyncStore = PostgresStore(db) if db is not None else MemoryStore()
    try:
        directory = await asyncio.to_thread(open_directory, db)
        yield create_orchestrator(config, store, directory)
    finally:
        await store.close()


async def cmd_sync(args: argparse.Namespace) -> int:
    """Run a one-shot sync for one source or all of them."""
    config = load_config()
    async with _orchestrator(config) as orchestrator:
        if args.source == "all":
            result = await orchestrator.sync_all(triggered_by="CLI")
        else:
            result = await orchestrator.sync_data_source(DataSourceType(args.source), triggered_by="CLI")

    status = result.status.value if result.status else ("completed" if result.success else "failed")
    print(f"Status: {status}")
    print(f"Processed: {result.records_processed}  Created: {result.records_created}  "
          f"Updated: {result.records_updated}  Unchanged: {result.records_unchanged}")
    print(f"Errors: {len(result.errors)}  Conflicts detected: {len(result.conflicts_detected)}")
    if result.error_message:
        print(f"Error: {result.error_message}")
    for step in result.step_results:
        print(f"  {step.step_name:<28} ok={step.success_count:<5} failed={step.fail_count:<5} "
              f"skipped={step.skip_count}")
    return 0 if result.success else 1


async def cmd_scheduler(args: argparse.Namespace) -> int:
    """Start the APScheduler loop."""
    from lifecycle_sync.scheduler import run_scheduler

    config = load_config()
    async with _orchestrator(config) as orchestrator:
        await run_scheduler(orchestrator)
    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Show recent sync jobs and source connectivity."""
    config = load_config()
    async with _orchestrator(config) as orchestrator:
        jobs = await orchestrator.get_sync_job_history(limit=orchestrator.history.limit)
        statuses = await orchestrator.get_data_source_statuses()
        next_run = orchestrator.get_next_scheduled_sync()

    if args.source != "all":
        jobs = [j for j in jobs if j.source.value == args.source]
        statuses = [s for s in statuses if s.source.value == args.source]
    jobs = jobs[:args.limit]

    print("Sources:")
    for s in statuses:
        state = "connected" if s.is_connected else (s.error_message or "unreachable")
        print(f"  {s.name:<22} configured={str(s.is_configured):<5}  {state}")
    print(f"Next scheduled sync: {next_run.isoformat() if next_run else 'disabled'}")
    print()

    if not jobs:
        print("No sync jobs found.")
        return 0

    fmt = "{:<36}  {:<14}  {:<22}  {:<20}  {:<20}  {:>9}  {:>6}  {}"
    print(fmt.format(
        "JOB ID", "SOURCE", "STATUS", "STARTED", "FINISHED", "PROCESSED", "ERRORS", "ERROR",
    ))
    print("-" * 160)
    for j in jobs:
        started = j.start_time.isoformat()[:19]
        finished = j.end_time.isoformat()[:19] if j.end_time else ""
        print(fmt.format(
            j.id[:36],
            j.source.value,
            j.status.value,
            started,
            finished,
            j.records_processed,
            j.error_count,
            (j.error_message or "")[:40],
        ))
    return 0


async def cmd_conflicts(args: argparse.Namespace) -> int:
    """List unresolved conflicts, or resolve one."""
    config = load_config()
    async with _orchestrator(config) as orchestrator:
        if args.resolve:
            if not args.resolution or not args.by:
                print("--resolution and --by are required with --resolve")
                return 2
            resolved = await orchestrator.resolve_conflict(
                args.resolve, args.resolution, args.by, args.by_name,
            )
            if resolved is None:
                print(f"Conflict {args.resolve} not found or already resolved.")
                return 1
            print(f"Resolved conflict {resolved.id}.")
            return 0
        if args.detect:
            await orchestrator.detect_conflicts()
        conflicts = await orchestrator.get_unresolved_conflicts()

    if not conflicts:
        print("No unresolved conflicts.")
        return 0
    fmt = "{:<36}  {:<22}  {:<30}  {}"
    print(fmt.format("CONFLICT ID", "KIND", "APPLICATION", "DESCRIPTION"))
    print("-" * 140)
    for c in conflicts:
        print(fmt.format(c.id[:36], c.kind.value, c.application_name[:30], c.description[:60]))
    return 0


async def cmd_match(args: argparse.Namespace) -> int:
    """Resolve a name or email against the identity directory."""
    config = load_config()
    db = _open_database(config)
    try:
        directory = await asyncio.to_thread(open_directory, db)
        resolver = IdentityResolver(directory)
        context = MatchContext(
            data_source="cli",
            create_conflict_on_no_match=False,
            min_confidence=MatchConfidence[args.min_confidence.upper()],
        )
        result = await asyncio.to_thread(resolver.match, args.name, context)
    finally:
        if db is not None:
            db.close()

    if result.matched:
        print(f"Match: {result.matched.display_name} ({result.matched.key})")
    else:
        print("No match")
    print(f"Confidence: {result.confidence.name}  Similarity: {result.similarity:.2f}  "
          f"Method: {result.method.value}")
    if result.explanation:
        print(f"Explanation: {result.explanation}")
    for alt in result.alternatives:
        print(f"  alternative: {alt.identity.display_name} ({alt.confidence.name}, {alt.similarity:.2f})")
    return 0 if result.is_match else 1


async def cmd_init_db(args: argparse.Namespace) -> int:
    """Create the tables used by the PostgreSQL store."""
    config = load_config()
    db = _open_database(config)
    if db is None:
        print("DATABASE_URL (or PG_HOST) must be set.")
        return 2
    try:
        await asyncio.to_thread(db.apply_schema)
    finally:
        db.close()
    print("Schema applied.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lifecycle-sync",
        description="Application lifecycle data aggregation and sync",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # sync command
    sync_parser = subparsers.add_parser("sync", help="Run one-shot sync")
    sync_parser.add_argument(
        "--source", "-s",
        choices=SOURCE_CHOICES,
        default="all",
        help="Source to sync (default: all)",
    )
    sync_parser.set_defaults(func=cmd_sync)

    # scheduler command
    sched_parser = subparsers.add_parser("scheduler", help="Start scheduled sync loop")
    sched_parser.set_defaults(func=cmd_scheduler)

    # status command
    status_parser = subparsers.add_parser("status", help="Show recent sync jobs")
    status_parser.add_argument(
        "--source", "-s",
        choices=SOURCE_CHOICES,
        default="all",
        help="Filter by source",
    )
    status_parser.add_argument(
        "--limit", "-l",
        type=int,
        default=10,
        help="Number of jobs to show (default: 10)",
    )
    status_parser.set_defaults(func=cmd_status)

    # conflicts command
    conflicts_parser = subparsers.add_parser("conflicts", help="List or resolve data conflicts")
    conflicts_parser.add_argument("--detect", action="store_true", help="Run detection first")
    conflicts_parser.add_argument("--resolve", metavar="ID", help="Conflict to resolve")
    conflicts_parser.add_argument("--resolution", help="Resolution text")
    conflicts_parser.add_argument("--by", help="Id of the person resolving")
    conflicts_parser.add_argument("--by-name", dest="by_name", help="Name of the person resolving")
    conflicts_parser.set_defaults(func=cmd_conflicts)

    # match command
    match_parser = subparsers.add_parser("match", help="Resolve a name or email to an identity")
    match_parser.add_argument("name")
    match_parser.add_argument(
        "--min-confidence",
        choices=[c.name.lower() for c in MatchConfidence if c != MatchConfidence.NO_MATCH],
        default="medium",
    )
    match_parser.set_defaults(func=cmd_match)

    # init-db command
    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.set_defaults(func=cmd_init_db)

    return parser


def main() -> None:
    """Main CLI entry point."""
    configure_logging(os.environ.get("LOG_LEVEL", "INFO"))
    args = build_parser().parse_args()
    try:
        code = asyncio.run(args.func(args))
    except KeyboardInterrupt:
        code = 130
    raise SystemExit(code)
