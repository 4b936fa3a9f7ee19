"""Tests for scheduler job registration."""
from __future__ import annotations

from datetime import timedelta

from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from lifecycle_sync.config import AppConfig, SyncConfig
from lifecycle_sync.models import DataSourceType
from lifecycle_sync.orchestrator import SyncOrchestrator
from lifecycle_sync.scheduler import build_scheduler


def orchestrator_with(store, **sync):
    return SyncOrchestrator(AppConfig(sync=SyncConfig(**sync)), store, {})


def test_weekly_job_uses_configured_slot(store):
    scheduler = build_scheduler(orchestrator_with(store, sync_day_of_week=0, sync_hour=2, sync_minute=15))

    (job,) = scheduler.get_jobs()

    assert job.id == "sync_all"
    assert isinstance(job.trigger, CronTrigger)
    assert "day_of_week='sun'" in str(job.trigger)
    assert "hour='2'" in str(job.trigger)
    assert "minute='15'" in str(job.trigger)
    assert job.max_instances == 1
    assert job.misfire_grace_time == 300


def test_interval_jobs_for_enabled_sources_only(store):
    scheduler = build_scheduler(orchestrator_with(
        store,
        auto_sync_enabled=False,
        enabled_sources=(DataSourceType.SERVICENOW,),
        source_intervals_min={DataSourceType.SERVICENOW: 60, DataSourceType.SHAREPOINT: 30},
        misfire_grace_time=120,
    ))

    (job,) = scheduler.get_jobs()

    assert job.id == "servicenow"
    assert isinstance(job.trigger, IntervalTrigger)
    assert job.trigger.interval == timedelta(minutes=60)
    assert job.misfire_grace_time == 120


def test_nothing_scheduled_when_disabled(store):
    assert build_scheduler(orchestrator_with(store, auto_sync_enabled=False)).get_jobs() == []
