"""APScheduler-based scheduling: weekly full sync plus optional per-source intervals."""

from __future__ import annotations

import asyncio
import logging

from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from lifecycle_sync.models import DataSourceType
from lifecycle_sync.orchestrator import SyncOrchestrator

logger = logging.getLogger("lifecycle_sync.scheduler")

# Index matches SyncConfig.sync_day_of_week (0 = Sunday).
CRON_DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


async def _sync_all(orchestrator: SyncOrchestrator) -> None:
    result = await orchestrator.sync_all(triggered_by="Scheduler")
    logger.info(
        "Scheduled sync finished: success=%s, %d records, %d errors",
        result.success, result.records_processed, len(result.errors),
        extra={"records": result.records_processed, "duration_s": result.duration.total_seconds()},
    )


async def _sync_source(orchestrator: SyncOrchestrator, source: DataSourceType) -> None:
    result = await orchestrator.sync_data_source(source, triggered_by="Scheduler")
    logger.info(
        "Scheduled %s sync finished with status %s", source.value,
        result.status.value if result.status else "unknown",
        extra={"source": source.value, "job_id": result.job_id},
    )


def _on_job_error(event) -> None:
    """Log job execution errors."""
    logger.error(
        "Job %s raised an exception: %s",
        event.job_id,
        event.exception,
    )


def build_scheduler(orchestrator: SyncOrchestrator) -> AsyncIOScheduler:
    """Create a scheduler with the weekly job and any per-source interval jobs."""
    sync = orchestrator.get_configuration()
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_listener(_on_job_error, EVENT_JOB_ERROR)

    if sync.auto_sync_enabled:
        scheduler.add_job(
            _sync_all,
            CronTrigger(
                day_of_week=CRON_DAY_NAMES[sync.sync_day_of_week],
                hour=sync.sync_hour,
                minute=sync.sync_minute,
                timezone="UTC",
            ),
            args=[orchestrator],
            id="sync_all",
            max_instances=1,
            misfire_grace_time=sync.misfire_grace_time,
        )

    for source, minutes in sync.source_intervals_min.items():
        if source not in sync.enabled_sources or minutes <= 0:
            continue
        scheduler.add_job(
            _sync_source,
            "interval",
            minutes=minutes,
            args=[orchestrator, source],
            id=source.value,
            max_instances=1,
            misfire_grace_time=sync.misfire_grace_time,
        )
    return scheduler


async def run_scheduler(orchestrator: SyncOrchestrator) -> None:
    """Start the scheduler and wait until cancelled."""
    scheduler = build_scheduler(orchestrator)
    scheduler.start()
    logger.info("Starting scheduler with jobs: %s", [j.id for j in scheduler.get_jobs()])
    next_run = orchestrator.get_next_scheduled_sync()
    if next_run is not None:
        logger.info("Next full sync at %s", next_run.isoformat())
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)
