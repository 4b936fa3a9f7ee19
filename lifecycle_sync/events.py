"""Observer-style notifications for sync progress and detected conflicts."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from lifecycle_sync.models import DataConflict, DataSourceType, DataSyncResult, SyncJob, utcnow

logger = logging.getLogger("lifecycle_sync.events")


@dataclass(frozen=True)
class SyncJobStarted:
    job: SyncJob
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class SyncJobCompleted:
    job: SyncJob
    result: DataSyncResult
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class SyncJobFailed:
    job: SyncJob
    error_message: str
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class SyncProgressUpdated:
    job_id: str
    source: DataSourceType
    phase: str
    processed: int
    total: int
    current_item: Optional[str] = None
    message: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def percent(self) -> float:
        return round(100.0 * self.processed / self.total, 1) if self.total else 0.0


@dataclass(frozen=True)
class ConflictDetected:
    conflict: DataConflict
    timestamp: datetime = field(default_factory=utcnow)


Callback = Callable[[object], None]


class EventBus:
    """Synchronous fan-out of events to subscribers, in emit order."""

    def __init__(self) -> None:
        self._subscribers: dict[type, list[Callback]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: type, callback: Callback) -> Callable[[], None]:
        """Register callback for event_type. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers[event_type].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers[event_type]:
                    self._subscribers[event_type].remove(callback)

        return unsubscribe

    def emit(self, event: object) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(type(event), ()))
        for callback in callbacks:
            try:
                callback(event)
            except Exception as exc:
                logger.warning(
                    "Event subscriber for %s raised: %s", type(event).__name__, exc,
                    exc_info=True,
                )
