"""Bounded in-memory job history, hydrated from the store once per process."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import TYPE_CHECKING, Optional

from lifecycle_sync.models import DataSourceType, SyncJob, SyncJobStatus

if TYPE_CHECKING:
    from lifecycle_sync.store import SyncStore

logger = logging.getLogger("lifecycle_sync.job_history")


class JobHistory:
    """Newest-first list of jobs, trimmed to ``limit`` entries."""

    def __init__(self, limit: int = 100) -> None:
        self.limit = limit
        self._jobs: list[SyncJob] = []
        self._lock = threading.Lock()
        self._hydrate_lock: Optional[asyncio.Lock] = None
        self._hydrated = False

    @property
    def hydrated(self) -> bool:
        return self._hydrated

    async def hydrate(self, store: Optional["SyncStore"]) -> None:
        """Load recent jobs from the store the first time this is awaited."""
        if self._hydrated:
            return
        if self._hydrate_lock is None:
            self._hydrate_lock = asyncio.Lock()
        async with self._hydrate_lock:
            if self._hydrated:
                return
            loaded: list[SyncJob] = []
            if store is not None:
                try:
                    loaded = await store.load_recent_jobs(self.limit)
                except Exception as exc:
                    logger.warning("Could not load job history: %s", exc)
            with self._lock:
                known = {j.id for j in self._jobs}
                self._jobs.extend(j for j in loaded if j.id not in known)
                self._jobs.sort(key=lambda j: j.start_time, reverse=True)
                del self._jobs[self.limit:]
            self._hydrated = True
            logger.info("Job history hydrated with %d jobs", len(loaded), extra={"records": len(loaded)})

    def record(self, job: SyncJob) -> None:
        """Insert or replace a job by id."""
        with self._lock:
            for i, existing in enumerate(self._jobs):
                if existing.id == job.id:
                    self._jobs[i] = job
                    return
            self._jobs.insert(0, job)
            del self._jobs[self.limit:]

    def get(self, job_id: str) -> Optional[SyncJob]:
        with self._lock:
            return next((j for j in self._jobs if j.id == job_id), None)

    def recent(self, limit: int = 50) -> list[SyncJob]:
        with self._lock:
            return list(self._jobs[:limit])

    def all(self) -> list[SyncJob]:
        with self._lock:
            return list(self._jobs)

    def last_for_source(self, source: DataSourceType) -> Optional[SyncJob]:
        with self._lock:
            return next((j for j in self._jobs if j.source == source), None)

    def last_success_for_source(self, source: DataSourceType) -> Optional[SyncJob]:
        with self._lock:
            return next(
                (
                    j for j in self._jobs
                    if j.source == source
                    and j.status in (SyncJobStatus.COMPLETED, SyncJobStatus.COMPLETED_WITH_ERRORS)
                ),
                None,
            )
