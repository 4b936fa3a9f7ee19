"""Sync Orchestration Engine: runs per-source sync jobs and tracks them.

Each job runs its handler as an asyncio task inside a CancellationScope
with a hard timeout. Every call to sync_data_source() ends with exactly
one terminal job, persisted at RUNNING and again at the terminal state.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import threading
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from lifecycle_sync.adapters import (
    DocumentationSource,
    RepositorySource,
    RoleSource,
    SourceAdapter,
    UsageSource,
    build_adapters,
)
from lifecycle_sync.config import AppConfig, MatchingConfig, SyncConfig
from lifecycle_sync.conflicts import ConflictDetector, ConflictRegistry
from lifecycle_sync.errors import JobCancelledError
from lifecycle_sync.events import EventBus, SyncJobCompleted, SyncJobFailed, SyncJobStarted
from lifecycle_sync.identity_directory import IdentityDirectory
from lifecycle_sync.identity_resolver import IdentityResolver
from lifecycle_sync.job_history import JobHistory
from lifecycle_sync.models import (
    ConnectionResult,
    DataConflict,
    DataSourceStatus,
    DataSourceType,
    DataSyncResult,
    SyncError,
    SyncErrorType,
    SyncJob,
    SyncJobStatus,
    SyncStatistics,
    SyncStepResult,
    new_id,
    utcnow,
)
from lifecycle_sync.repository_sync import RepositorySync
from lifecycle_sync.source_sync import DocumentationSync, RoleSync, UsageSync
from lifecycle_sync.store import SyncStore
from lifecycle_sync.sync_context import CancellationScope, SyncContext

logger = logging.getLogger("lifecycle_sync.orchestrator")

SyncHandler = Callable[[SyncContext], Awaitable[DataSyncResult]]

_SUCCESS_STATUSES = (SyncJobStatus.COMPLETED, SyncJobStatus.COMPLETED_WITH_ERRORS)


def build_handlers(
    adapters: dict[DataSourceType, SourceAdapter],
    resolver: Optional[IdentityResolver] = None,
    matching: MatchingConfig = MatchingConfig(),
) -> dict[DataSourceType, SyncHandler]:
    """Wrap each adapter in the sync handler for its capability."""
    handlers: dict[DataSourceType, SyncHandler] = {}
    for source, adapter in adapters.items():
        if isinstance(adapter, RepositorySource):
            handlers[source] = RepositorySync(adapter)
        elif isinstance(adapter, RoleSource):
            handlers[source] = RoleSync(adapter, resolver, matching)
        elif isinstance(adapter, DocumentationSource):
            handlers[source] = DocumentationSync(adapter)
        elif isinstance(adapter, UsageSource):
            handlers[source] = UsageSync(adapter)
    return handlers


class SyncOrchestrator:
    def __init__(
        self,
        config: AppConfig,
        store: SyncStore,
        handlers: dict[DataSourceType, SyncHandler],
        adapters: Optional[dict[DataSourceType, SourceAdapter]] = None,
        registry: Optional[ConflictRegistry] = None,
        detector: Optional[ConflictDetector] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.store = store
        self.handlers = handlers
        self.adapters = adapters or {}
        self.registry = registry or ConflictRegistry(clock=clock)
        self.detector = detector or ConflictDetector(
            self.registry, mandatory_roles=config.sync.mandatory_roles, matching=config.matching,
        )
        self.events = events or EventBus()
        self.clock = clock
        self._sleep = sleep
        self.history = JobHistory(config.sync.job_history_limit)
        self._running: dict[str, CancellationScope] = {}
        self._running_lock = threading.Lock()
        self._conflicts_loaded = False

    # ------------------------------------------------------------------
    # Loading / persistence
    # ------------------------------------------------------------------

    async def _ensure_loaded(self) -> None:
        await self.history.hydrate(self.store)
        if not self._conflicts_loaded:
            self._conflicts_loaded = True
            try:
                self.registry.load(await self.store.load_conflicts())
            except Exception as exc:
                logger.warning("Could not load conflicts: %s", exc)

    async def _persist_job(self, job: SyncJob) -> None:
        try:
            await self.store.upsert_job(job)
        except Exception as exc:
            logger.warning("Failed to persist sync job %s: %s", job.id, exc, extra={"job_id": job.id})

    def _finish(self, job: SyncJob, **changes) -> SyncJob:
        job = dataclasses.replace(job, end_time=self.clock(), **changes)
        self.history.record(job)
        return job

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync_data_source(
        self, source: DataSourceType, triggered_by: Optional[str] = None
    ) -> DataSyncResult:
        """Run one job for one source. Never raises except on outer task cancellation."""
        await self._ensure_loaded()
        sync = self.config.sync
        start = self.clock()
        job = SyncJob(
            id=new_id(),
            source=source,
            start_time=start,
            status=SyncJobStatus.RUNNING,
            triggered_by=triggered_by or "System",
        )
        log_extra = {"source": source.value, "job_id": job.id}
        timeout = sync.sync_timeout_minutes * 60 if sync.sync_timeout_minutes > 0 else None
        scope = CancellationScope(job.id, timeout)
        with self._running_lock:
            self._running[job.id] = scope
        self.history.record(job)
        await self._persist_job(job)
        self.events.emit(SyncJobStarted(job=job))
        logger.info("Sync started for %s", source.display_name, extra=log_extra)

        try:
            result = await self._run_handler(source, job, scope, timeout)
        except JobCancelledError as exc:
            return await self._cancelled(job, start, scope.reason or exc.reason)
        except asyncio.CancelledError:
            if scope.cancelled:
                return await self._cancelled(job, start, scope.reason)
            # The caller itself is being cancelled: record it, then let it propagate.
            await self._cancelled(job, start, "Sync task cancelled")
            raise
        except Exception as exc:
            logger.exception("Error syncing %s", source.display_name, extra=log_extra)
            job = self._finish(job, status=SyncJobStatus.FAILED, error_message=str(exc)[:1000])
            await self._persist_job(job)
            self.events.emit(SyncJobFailed(job=job, error_message=str(exc)))
            return DataSyncResult(
                success=False, source=source, job_id=job.id, status=SyncJobStatus.FAILED,
                start_time=start, end_time=job.end_time, error_message=str(exc),
            )
        finally:
            with self._running_lock:
                self._running.pop(job.id, None)

        if result.success:
            status = SyncJobStatus.COMPLETED_WITH_ERRORS if result.errors else SyncJobStatus.COMPLETED
        else:
            status = SyncJobStatus.FAILED
        error_message = result.error_message or (result.errors[0].message if result.errors else None)
        job = self._finish(
            job,
            status=status,
            records_processed=result.records_processed,
            records_created=result.records_created,
            records_updated=result.records_updated,
            error_count=len(result.errors),
            error_message=error_message,
        )
        await self._persist_job(job)

        conflicts: list[DataConflict] = []
        if result.success and sync.run_conflict_detection:
            try:
                applications = await self.store.load_applications()
                await asyncio.to_thread(self.detector.after_source, source, applications)
            except Exception as exc:
                logger.warning("Conflict detection after %s failed: %s", source.value, exc, extra=log_extra)
        # Role sync registers unmatched-user conflicts as it resolves.
        conflicts = await self.registry.flush(self.store, self.events)

        result = dataclasses.replace(
            result,
            source=source,
            job_id=job.id,
            status=status,
            end_time=job.end_time,
            conflicts_detected=list(result.conflicts_detected) + conflicts,
        )
        if status in _SUCCESS_STATUSES:
            self.events.emit(SyncJobCompleted(job=job, result=result))
            logger.info(
                "Sync %s for %s", status.value, source.display_name,
                extra={**log_extra, "status": status.value, "records": result.records_processed,
                       "duration_s": result.duration.total_seconds()},
            )
        else:
            self.events.emit(SyncJobFailed(job=job, error_message=error_message or "Sync failed"))
            logger.error(
                "Sync failed for %s: %s", source.display_name, error_message,
                extra={**log_extra, "status": status.value},
            )
        return result

    async def _run_handler(
        self, source: DataSourceType, job: SyncJob, scope: CancellationScope, timeout: Optional[float]
    ) -> DataSyncResult:
        handler = self.handlers.get(source)
        if handler is None:
            return DataSyncResult.failed(source, job.start_time, f"{source.display_name} is not configured")
        ctx = SyncContext(
            job_id=job.id,
            source=source,
            scope=scope,
            config=self.config.sync,
            store=self.store,
            events=self.events,
            clock=self.clock,
            triggered_by=job.triggered_by,
        )
        scope.check()
        task = asyncio.ensure_future(handler(ctx))
        scope.attach(task)
        try:
            return await asyncio.wait_for(task, timeout)
        except asyncio.TimeoutError:
            # Only a task cancelled by wait_for means the deadline fired.
            if not task.cancelled():
                raise
            scope.cancel("Sync timed out")
            raise JobCancelledError(job.id, scope.reason) from None

    async def _cancelled(self, job: SyncJob, start: datetime, reason: Optional[str]) -> DataSyncResult:
        reason = reason or "Cancelled"
        job = self._finish(job, status=SyncJobStatus.CANCELLED, error_message=reason)
        await self._persist_job(job)
        logger.warning(
            "Sync cancelled for %s: %s", job.source.display_name, reason,
            extra={"source": job.source.value, "job_id": job.id, "status": SyncJobStatus.CANCELLED.value},
        )
        return DataSyncResult(
            success=False,
            source=job.source,
            job_id=job.id,
            status=SyncJobStatus.CANCELLED,
            start_time=start,
            end_time=job.end_time,
            error_message=f"Sync operation was cancelled: {reason}",
        )

    async def sync_all(self, triggered_by: Optional[str] = None) -> DataSyncResult:
        """Sync each enabled source in order, retrying failed ones."""
        sync = self.config.sync
        start = self.clock()
        sources = [s for s in sync.sync_order if s in sync.enabled_sources]
        errors: list[SyncError] = []
        steps: list[SyncStepResult] = []
        conflicts: list[DataConflict] = []
        processed = created = updated = unchanged = 0
        all_ok = True

        for source in sources:
            result = await self.sync_data_source(source, triggered_by)
            attempt = 0
            while (
                not result.success
                and result.status != SyncJobStatus.CANCELLED
                and attempt < sync.max_retries
            ):
                attempt += 1
                logger.warning(
                    "Retrying %s sync (attempt %d/%d)", source.value, attempt, sync.max_retries,
                    extra={"source": source.value},
                )
                await self._sleep(sync.retry_delay_seconds)
                result = await self.sync_data_source(source, triggered_by)

            processed += result.records_processed
            created += result.records_created
            updated += result.records_updated
            unchanged += result.records_unchanged
            errors.extend(result.errors)
            conflicts.extend(result.conflicts_detected)
            if not result.success:
                all_ok = False
                errors.append(SyncError(
                    message=f"{source.display_name} sync failed: {result.error_message}",
                    type=SyncErrorType.UNKNOWN,
                    entity_name=source.value,
                ))
            steps.append(SyncStepResult(
                step_name=source.display_name,
                success=result.success,
                success_count=result.records_processed,
                fail_count=0 if result.success else 1,
                error_message=result.error_message,
                duration=result.duration,
                details={"job_id": result.job_id, "status": result.status.value if result.status else None,
                         "retries": attempt},
            ))

        if sync.run_conflict_detection and sources:
            conflicts.extend(await self.detect_conflicts())

        return DataSyncResult(
            success=all_ok,
            start_time=start,
            end_time=self.clock(),
            records_processed=processed,
            records_created=created,
            records_updated=updated,
            records_unchanged=unchanged,
            errors=errors,
            conflicts_detected=conflicts,
            step_results=steps,
        )

    def cancel_sync_job(self, job_id: str) -> bool:
        """Request cancellation. True only if the job is currently running."""
        with self._running_lock:
            scope = self._running.get(job_id)
        if scope is None:
            return False
        scope.cancel("Cancelled by user")
        logger.info("Cancellation requested for job %s", job_id, extra={"job_id": job_id})
        return True

    async def record_manual_import(
        self,
        source: DataSourceType,
        processed: int,
        created: int,
        updated: int,
        success: bool,
        error_message: Optional[str] = None,
        triggered_by: Optional[str] = None,
        description: Optional[str] = None,
    ) -> SyncJob:
        """Record an out-of-band import as an instantaneous terminal job."""
        await self._ensure_loaded()
        now = self.clock()
        job = SyncJob(
            id=new_id(),
            source=source,
            start_time=now,
            end_time=now,
            status=SyncJobStatus.COMPLETED if success else SyncJobStatus.FAILED,
            records_processed=processed,
            records_created=created,
            records_updated=updated,
            error_count=0 if success else 1,
            error_message=error_message,
            triggered_by=triggered_by or "Manual Import",
        )
        self.history.record(job)
        await self._persist_job(job)
        if success:
            logger.info(
                "Manual import recorded for %s: %d processed, %d created, %d updated. %s",
                source.value, processed, created, updated, description or "",
                extra={"source": source.value, "job_id": job.id},
            )
        else:
            logger.warning(
                "Manual import failed for %s: %s. %s", source.value, error_message, description or "",
                extra={"source": source.value, "job_id": job.id},
            )
        return job

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_sync_job_history(self, limit: int = 50) -> list[SyncJob]:
        await self._ensure_loaded()
        return self.history.recent(limit)

    async def get_sync_job(self, job_id: str) -> Optional[SyncJob]:
        await self._ensure_loaded()
        return self.history.get(job_id)

    async def get_data_source_statuses(self) -> list[DataSourceStatus]:
        """Test every adapter concurrently and join with the last job per source."""
        await self._ensure_loaded()
        sources = list(DataSourceType)
        results = await asyncio.gather(*(self._test_source(s) for s in sources))
        statuses = []
        for source, result in zip(sources, results):
            last = self.history.last_for_source(source)
            statuses.append(DataSourceStatus(
                source=source,
                name=source.display_name,
                is_configured=source in self.adapters and source in self.config.sync.enabled_sources,
                is_connected=result.success,
                last_sync_time=(last.end_time or last.start_time) if last else None,
                last_sync_status=last.status if last else None,
                error_message=None if result.success else result.message,
            ))
        return statuses

    async def _test_source(self, source: DataSourceType) -> ConnectionResult:
        adapter = self.adapters.get(source)
        if adapter is None:
            return ConnectionResult(success=False, message="Not configured")
        try:
            return await adapter.test_connection()
        except Exception as exc:
            return ConnectionResult(success=False, message=str(exc))

    def get_next_scheduled_sync(self, now: Optional[datetime] = None) -> Optional[datetime]:
        """Next weekly slot, or None when automatic sync is off. Day 0 is Sunday."""
        sync = self.config.sync
        if not sync.auto_sync_enabled:
            return None
        now = now or self.clock()
        target_weekday = (sync.sync_day_of_week - 1) % 7  # datetime: Monday = 0
        candidate = now.replace(hour=sync.sync_hour, minute=sync.sync_minute, second=0, microsecond=0)
        candidate += timedelta(days=(target_weekday - now.weekday()) % 7)
        if candidate <= now:
            candidate += timedelta(days=7)
        return candidate

    async def get_statistics(self) -> SyncStatistics:
        await self._ensure_loaded()
        jobs = self.history.all()
        finished = [j for j in jobs if j.duration is not None]
        average = (
            sum((j.duration for j in finished), timedelta(0)) / len(finished)
            if finished else timedelta(0)
        )
        last_success: dict[DataSourceType, Optional[datetime]] = {}
        for source in DataSourceType:
            job = self.history.last_success_for_source(source)
            last_success[source] = (job.end_time or job.start_time) if job else None
        conflicts = self.registry.all()
        return SyncStatistics(
            total_jobs=len(jobs),
            successful_jobs=sum(1 for j in jobs if j.status in _SUCCESS_STATUSES),
            failed_jobs=sum(1 for j in jobs if j.status == SyncJobStatus.FAILED),
            average_duration=average,
            total_records_synced=sum(j.records_processed for j in jobs),
            total_conflicts=len(conflicts),
            unresolved_conflicts=sum(1 for c in conflicts if not c.is_resolved),
            last_successful_sync=last_success,
        )

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    async def detect_conflicts(self) -> list[DataConflict]:
        """Run every enabled source's rules plus the cross-source rules."""
        await self._ensure_loaded()
        try:
            applications = await self.store.load_applications()
            await asyncio.to_thread(
                self.detector.detect_all, applications, self.config.sync.enabled_sources,
            )
        except Exception as exc:
            logger.warning("Conflict detection failed: %s", exc)
        return await self.registry.flush(self.store, self.events)

    async def get_unresolved_conflicts(self) -> list[DataConflict]:
        await self._ensure_loaded()
        return self.registry.unresolved()

    async def resolve_conflict(
        self,
        conflict_id: str,
        resolution: str,
        resolved_by: str,
        resolved_by_name: Optional[str] = None,
    ) -> Optional[DataConflict]:
        await self._ensure_loaded()
        resolved = self.registry.resolve(conflict_id, resolution, resolved_by, resolved_by_name)
        if resolved is None:
            logger.warning("Conflict %s not found or already resolved", conflict_id)
            return None
        await self.registry.flush(self.store)
        logger.info(
            "Conflict %s resolved by %s", conflict_id, resolved.resolved_by_name,
            extra={"application": resolved.application_name},
        )
        return resolved

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_configuration(self) -> SyncConfig:
        return self.config.sync

    def set_configuration(self, sync: SyncConfig) -> None:
        self.config = dataclasses.replace(self.config, sync=sync)
        self.detector.mandatory_roles = tuple(sync.mandatory_roles)
        self.history.limit = sync.job_history_limit


def create_orchestrator(
    config: AppConfig,
    store: SyncStore,
    directory: Optional[IdentityDirectory] = None,
    adapters: Optional[dict[DataSourceType, SourceAdapter]] = None,
    events: Optional[EventBus] = None,
    clock: Callable[[], datetime] = utcnow,
) -> SyncOrchestrator:
    """Wire adapters, identity resolution and conflict detection into an orchestrator."""
    if adapters is None:
        adapters = build_adapters(config)
    registry = ConflictRegistry(clock=clock)
    resolver = IdentityResolver(directory, registry) if directory is not None else None
    detector = ConflictDetector(registry, resolver, config.sync.mandatory_roles, config.matching)
    return SyncOrchestrator(
        config=config,
        store=store,
        handlers=build_handlers(adapters, resolver, config.matching),
        adapters=adapters,
        registry=registry,
        detector=detector,
        events=events,
        clock=clock,
    )
