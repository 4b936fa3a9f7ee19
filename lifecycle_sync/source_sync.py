"""Sync handlers for the role, documentation and usage sources."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Optional

from lifecycle_sync.adapters.base import DocumentationSource, RoleSource, UsageSource, classify_error
from lifecycle_sync.config import MatchingConfig
from lifecycle_sync.identity_resolver import IdentityResolver, MatchContext
from lifecycle_sync.models import (
    Application,
    DataSourceType,
    DataSyncResult,
    DocumentationFolder,
    DocumentationStatus,
    RoleAssignment,
    SyncError,
    SyncStepResult,
)
from lifecycle_sync.name_matching import normalize
from lifecycle_sync.sync_context import SyncContext

logger = logging.getLogger("lifecycle_sync.source_sync")

EXPECTED_DOCUMENTS = ("architecture", "runbook", "disaster recovery", "support")


def documentation_status(folder: DocumentationFolder, checked_at) -> DocumentationStatus:
    """Which expected documents a folder holds, by case-insensitive name match."""
    names = [normalize(d) for d in folder.documents]
    missing = tuple(
        expected for expected in EXPECTED_DOCUMENTS
        if not any(expected in name for name in names)
    )
    found = len(EXPECTED_DOCUMENTS) - len(missing)
    return DocumentationStatus(
        folder_path=folder.folder_path,
        document_count=len(folder.documents),
        missing=missing,
        completeness=round(found / len(EXPECTED_DOCUMENTS), 2),
        checked_at=checked_at,
    )


async def _store_applications(
    ctx: SyncContext,
    applications: list[Application],
    steps: list[SyncStepResult],
    errors: list[SyncError],
) -> None:
    started = ctx.clock()
    try:
        stored = await ctx.store.upsert_applications(applications)
        steps.append(SyncStepResult(
            step_name="Store to Database", success_count=stored, duration=ctx.clock() - started,
        ))
    except Exception as exc:
        logger.warning("Failed to store applications: %s", exc, extra={"job_id": ctx.job_id})
        errors.append(SyncError(
            message=f"Failed to store applications: {exc}",
            type=classify_error(exc),
            technical_details=repr(exc),
        ))
        steps.append(SyncStepResult(
            step_name="Store to Database", success=False, fail_count=len(applications),
            error_message=str(exc), duration=ctx.clock() - started,
        ))


class RoleSync:
    """Pull applications and role occupants, resolving each occupant to an identity."""

    source = DataSourceType.SERVICENOW

    def __init__(
        self,
        adapter: RoleSource,
        resolver: Optional[IdentityResolver] = None,
        matching: MatchingConfig = MatchingConfig(),
    ) -> None:
        self.adapter = adapter
        self.resolver = resolver
        self.matching = matching

    async def __call__(self, ctx: SyncContext) -> DataSyncResult:
        start = ctx.clock()
        steps: list[SyncStepResult] = []
        errors: list[SyncError] = []

        ctx.check()
        ctx.report_progress("Fetching applications", 0, 0)
        fetched = await self.adapter.list_applications()
        steps.append(SyncStepResult(
            step_name="Fetch Applications",
            success=fetched.success,
            success_count=len(fetched.data or []) if fetched.success else 0,
            fail_count=0 if fetched.success else 1,
            error_message=fetched.error_message,
            duration=fetched.duration,
        ))
        if not fetched.success:
            return DataSyncResult.failed(
                self.source, start, fetched.error_message or "Failed to fetch applications", steps,
            )

        existing = {a.id: a for a in await ctx.store.load_applications()}
        incoming: list[Application] = list(fetched.data or [])
        matched = unmatched = 0
        resolve_start = ctx.clock()
        merged: list[Application] = []
        for index, app in enumerate(incoming, start=1):
            ctx.check()
            ctx.report_progress("Resolving role occupants", index, len(incoming), app.name)
            assignments = app.role_assignments
            if self.resolver is not None and assignments:
                assignments = await self._resolve(app)
                matched += sum(1 for a in assignments if a.identity_key)
                unmatched += sum(1 for a in assignments if not a.identity_key)
            previous = existing.get(app.id)
            merged.append(dataclasses.replace(
                app,
                role_assignments=assignments,
                documentation=previous.documentation if previous else app.documentation,
                usage=previous.usage if previous else app.usage,
                repository_id=previous.repository_id if previous else app.repository_id,
                updated_at=ctx.clock(),
            ))
        steps.append(SyncStepResult(
            step_name="Resolve Role Occupants",
            success_count=matched,
            skip_count=unmatched,
            duration=ctx.clock() - resolve_start,
        ))

        ctx.check()
        await _store_applications(ctx, merged, steps, errors)
        created = sum(1 for a in merged if a.id not in existing)
        return DataSyncResult(
            success=True,
            source=self.source,
            start_time=start,
            end_time=ctx.clock(),
            records_processed=len(merged),
            records_created=created,
            records_updated=len(merged) - created,
            errors=errors,
            step_results=steps,
        )

    async def _resolve(self, app: Application) -> tuple[RoleAssignment, ...]:
        resolved: list[RoleAssignment] = []
        for assignment in app.role_assignments:
            context = MatchContext(
                data_source=self.source.value,
                role=assignment.role,
                application_id=app.id,
                application_name=app.name,
                create_conflict_on_no_match=self.matching.create_conflicts,
                min_confidence=self.matching.min_confidence,
            )
            result = await asyncio.to_thread(self.resolver.match, assignment.person, context)
            resolved.append(dataclasses.replace(
                assignment,
                identity_key=result.matched.key if result.matched else None,
                match_confidence=result.confidence,
            ))
        return tuple(resolved)


class DocumentationSync:
    """Attach documentation folder status to applications by name."""

    source = DataSourceType.SHAREPOINT

    def __init__(self, adapter: DocumentationSource) -> None:
        self.adapter = adapter

    async def __call__(self, ctx: SyncContext) -> DataSyncResult:
        start = ctx.clock()
        steps: list[SyncStepResult] = []
        errors: list[SyncError] = []

        ctx.check()
        ctx.report_progress("Syncing documentation", 0, 0, message="Reading documentation folders")
        fetched = await self.adapter.list_documentation()
        steps.append(SyncStepResult(
            step_name="Fetch Documentation Folders",
            success=fetched.success,
            success_count=len(fetched.data or []) if fetched.success else 0,
            fail_count=0 if fetched.success else 1,
            error_message=fetched.error_message,
            duration=fetched.duration,
        ))
        if not fetched.success:
            return DataSyncResult.failed(
                self.source, start, fetched.error_message or "Failed to read documentation", steps,
            )

        applications = await ctx.store.load_applications()
        by_name = {normalize(a.name): a for a in applications}
        updated: list[Application] = []
        orphaned = 0
        for folder in fetched.data or []:
            app = by_name.get(normalize(folder.application_name))
            if app is None:
                orphaned += 1
                continue
            updated.append(dataclasses.replace(
                app,
                documentation=documentation_status(folder, ctx.clock()),
                updated_at=ctx.clock(),
            ))
        steps.append(SyncStepResult(
            step_name="Match Folders to Applications",
            success_count=len(updated),
            skip_count=orphaned,
        ))

        ctx.check()
        await _store_applications(ctx, updated, steps, errors)
        return DataSyncResult(
            success=True,
            source=self.source,
            start_time=start,
            end_time=ctx.clock(),
            records_processed=len(fetched.data or []),
            records_updated=len(updated),
            records_unchanged=orphaned,
            errors=errors,
            step_results=steps,
        )


class UsageSync:
    """Attach request-log usage metrics to applications by id."""

    source = DataSourceType.IIS_DATABASE

    def __init__(self, adapter: UsageSource) -> None:
        self.adapter = adapter

    async def __call__(self, ctx: SyncContext) -> DataSyncResult:
        start = ctx.clock()
        steps: list[SyncStepResult] = []
        errors: list[SyncError] = []

        ctx.check()
        ctx.report_progress("Syncing usage", 0, 0, message="Querying request logs")
        fetched = await self.adapter.get_usage_metrics()
        steps.append(SyncStepResult(
            step_name="Fetch Usage Metrics",
            success=fetched.success,
            success_count=len(fetched.data or {}) if fetched.success else 0,
            fail_count=0 if fetched.success else 1,
            error_message=fetched.error_message,
            duration=fetched.duration,
        ))
        if not fetched.success:
            return DataSyncResult.failed(
                self.source, start, fetched.error_message or "Failed to query usage", steps,
            )

        metrics = fetched.data or {}
        applications = await ctx.store.load_applications()
        updated = [
            dataclasses.replace(app, usage=metrics[app.id], updated_at=ctx.clock())
            for app in applications if app.id in metrics
        ]
        unknown = len(set(metrics) - {a.id for a in applications})
        steps.append(SyncStepResult(
            step_name="Match Usage to Applications",
            success_count=len(updated),
            skip_count=unknown,
        ))

        ctx.check()
        await _store_applications(ctx, updated, steps, errors)
        return DataSyncResult(
            success=True,
            source=self.source,
            start_time=start,
            end_time=ctx.clock(),
            records_processed=len(metrics),
            records_updated=len(updated),
            records_unchanged=unknown,
            errors=errors,
            step_results=steps,
        )
