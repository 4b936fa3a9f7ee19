"""Per-job execution context: cancellation scope, clock, store and progress reporting."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from lifecycle_sync.config import SyncConfig
from lifecycle_sync.errors import JobCancelledError
from lifecycle_sync.events import EventBus, SyncProgressUpdated
from lifecycle_sync.models import DataSourceType, utcnow
from lifecycle_sync.store import SyncStore

logger = logging.getLogger("lifecycle_sync.sync_context")


class CancellationScope:
    """Cancel flag plus deadline for one running job.

    Handlers call check() at phase boundaries; cancel() also cancels the
    attached asyncio task so a handler blocked in an await is interrupted.
    """

    def __init__(self, job_id: str, timeout_seconds: Optional[float] = None) -> None:
        self.job_id = job_id
        self.deadline = time.monotonic() + timeout_seconds if timeout_seconds else None
        self.reason: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self.reason is not None

    def attach(self, task: asyncio.Task) -> None:
        self._task = task

    def cancel(self, reason: str = "Cancelled by user") -> None:
        if self.reason is None:
            self.reason = reason
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def check(self) -> None:
        if self.deadline is not None and time.monotonic() >= self.deadline and self.reason is None:
            self.reason = "Sync timed out"
        if self.reason is not None:
            raise JobCancelledError(self.job_id, self.reason)


@dataclass
class SyncContext:
    job_id: str
    source: DataSourceType
    scope: CancellationScope
    config: SyncConfig
    store: SyncStore
    events: Optional[EventBus] = None
    clock: Callable[[], datetime] = utcnow
    triggered_by: str = "System"
    synced_by: str = field(default="SyncOrchestrator")

    def check(self) -> None:
        self.scope.check()

    def report_progress(
        self,
        phase: str,
        processed: int,
        total: int,
        current_item: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        if self.events is None:
            return
        self.events.emit(SyncProgressUpdated(
            job_id=self.job_id,
            source=self.source,
            phase=phase,
            processed=processed,
            total=total,
            current_item=current_item,
            message=message,
        ))
