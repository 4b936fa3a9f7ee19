"""Persistence interface for jobs, conflicts, applications and synced repositories."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from lifecycle_sync.models import Application, DataConflict, SyncedRepository, SyncJob


class SyncStore(ABC):
    """Async persistence API. Implementations must not block the event loop."""

    @abstractmethod
    async def upsert_job(self, job: SyncJob) -> None:
        ...

    @abstractmethod
    async def load_recent_jobs(self, limit: int = 100) -> list[SyncJob]:
        """Newest first."""

    @abstractmethod
    async def upsert_conflict(self, conflict: DataConflict) -> None:
        ...

    @abstractmethod
    async def load_conflicts(self) -> list[DataConflict]:
        ...

    @abstractmethod
    async def load_applications(self) -> list[Application]:
        ...

    @abstractmethod
    async def upsert_applications(self, applications: Iterable[Application]) -> int:
        ...

    @abstractmethod
    async def load_synced_repositories(self) -> dict[str, SyncedRepository]:
        """Keyed by repository id."""

    @abstractmethod
    async def store_synced_repositories(self, repositories: Iterable[SyncedRepository]) -> int:
        ...

    async def close(self) -> None:
        return None


class MemoryStore(SyncStore):
    """Dict-backed store for tests and dry runs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.jobs: dict[str, SyncJob] = {}
        self.conflicts: dict[str, DataConflict] = {}
        self.applications: dict[str, Application] = {}
        self.repositories: dict[str, SyncedRepository] = {}
        self.job_loads = 0

    async def upsert_job(self, job: SyncJob) -> None:
        with self._lock:
            self.jobs[job.id] = job

    async def load_recent_jobs(self, limit: int = 100) -> list[SyncJob]:
        with self._lock:
            self.job_loads += 1
            jobs = sorted(self.jobs.values(), key=lambda j: j.start_time, reverse=True)
        return jobs[:limit]

    async def upsert_conflict(self, conflict: DataConflict) -> None:
        with self._lock:
            self.conflicts[conflict.id] = conflict

    async def load_conflicts(self) -> list[DataConflict]:
        with self._lock:
            return list(self.conflicts.values())

    async def load_applications(self) -> list[Application]:
        with self._lock:
            return list(self.applications.values())

    async def upsert_applications(self, applications: Iterable[Application]) -> int:
        count = 0
        with self._lock:
            for app in applications:
                self.applications[app.id] = app
                count += 1
        return count

    async def load_synced_repositories(self) -> dict[str, SyncedRepository]:
        with self._lock:
            return dict(self.repositories)

    async def store_synced_repositories(self, repositories: Iterable[SyncedRepository]) -> int:
        count = 0
        with self._lock:
            for repo in repositories:
                self.repositories[repo.id] = repo
                count += 1
        return count

    def get_job(self, job_id: str) -> Optional[SyncJob]:
        return self.jobs.get(job_id)
