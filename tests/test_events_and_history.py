"""Tests for the event bus, job history and cancellation scope."""
from __future__ import annotations

from datetime import timedelta

import pytest

from lifecycle_sync.errors import JobCancelledError
from lifecycle_sync.events import EventBus, SyncProgressUpdated
from lifecycle_sync.job_history import JobHistory
from lifecycle_sync.models import DataSourceType, SyncJob, SyncJobStatus
from lifecycle_sync.sync_context import CancellationScope


def progress(processed, total):
    return SyncProgressUpdated(
        job_id="j", source=DataSourceType.SHAREPOINT, phase="p", processed=processed, total=total,
    )


class TestEventBus:
    def test_subscriber_errors_do_not_propagate(self):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("subscriber bug")

        bus.subscribe(SyncProgressUpdated, broken)
        bus.subscribe(SyncProgressUpdated, received.append)
        bus.emit(progress(1, 4))

        assert len(received) == 1
        assert received[0].percent == 25.0

    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe(SyncProgressUpdated, received.append)
        unsubscribe()
        bus.emit(progress(1, 1))
        assert received == []

    def test_percent_with_unknown_total(self):
        assert progress(3, 0).percent == 0.0


class TestJobHistory:
    def job(self, job_id, clock, status=SyncJobStatus.COMPLETED, source=DataSourceType.SHAREPOINT, **kw):
        return SyncJob(id=job_id, source=source, start_time=clock.now, status=status, **kw)

    def test_record_replaces_by_id_and_trims(self, clock):
        history = JobHistory(limit=2)
        history.record(self.job("a", clock, SyncJobStatus.RUNNING))
        history.record(self.job("a", clock))
        history.record(self.job("b", clock))
        history.record(self.job("c", clock))

        assert [j.id for j in history.all()] == ["c", "b"]
        assert history.get("a") is None

    def test_last_success_skips_failures(self, clock):
        history = JobHistory()
        history.record(self.job("ok", clock))
        history.record(self.job("bad", clock, SyncJobStatus.FAILED))

        assert history.last_for_source(DataSourceType.SHAREPOINT).id == "bad"
        assert history.last_success_for_source(DataSourceType.SHAREPOINT).id == "ok"
        assert history.last_success_for_source(DataSourceType.SERVICENOW) is None

    @pytest.mark.asyncio
    async def test_hydrate_merges_and_sorts(self, store, clock):
        store.jobs["old"] = self.job("old", clock)
        history = JobHistory()
        clock.advance(hours=1)
        history.record(self.job("new", clock))

        await history.hydrate(store)
        await history.hydrate(store)

        assert [j.id for j in history.all()] == ["new", "old"]
        assert store.job_loads == 1

    @pytest.mark.asyncio
    async def test_hydrate_survives_store_errors(self, store):
        async def broken(limit=100):
            raise ConnectionError("db down")

        store.load_recent_jobs = broken
        history = JobHistory()
        await history.hydrate(store)
        assert history.hydrated
        assert history.all() == []


class TestCancellationScope:
    def test_cancel_sets_reason_once(self):
        scope = CancellationScope("j")
        scope.cancel("first")
        scope.cancel("second")
        with pytest.raises(JobCancelledError, match="first"):
            scope.check()

    def test_deadline(self):
        scope = CancellationScope("j", timeout_seconds=0.000001)
        scope.deadline -= 1
        with pytest.raises(JobCancelledError, match="timed out"):
            scope.check()

    def test_no_deadline(self):
        scope = CancellationScope("j")
        scope.check()
        assert not scope.cancelled


def test_job_duration(clock):
    job = SyncJob(id="j", source=DataSourceType.SHAREPOINT, start_time=clock.now,
                  end_time=clock.now + timedelta(seconds=90))
    assert job.duration == timedelta(seconds=90)
    assert SyncJob.from_dict(job.to_dict()) == job
