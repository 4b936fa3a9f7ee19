"""Incremental repository sync with per-step outcome counts.

For each repository:

* disabled            -> every step skipped, fresh record stored
* synced today + security data present -> carried forward untouched
* synced today, no security data       -> only security fetched
* otherwise           -> tech stack, commits, packages, README, pipeline, security
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional

from lifecycle_sync.adapters.base import RepositorySource, classify_error
from lifecycle_sync.conflicts import normalize_repository_url
from lifecycle_sync.errors import JobCancelledError
from lifecycle_sync.models import (
    Application,
    DataSourceType,
    DataSyncResult,
    Repository,
    SourceResult,
    SyncedRepository,
    SyncError,
    SyncErrorType,
    SyncStepResult,
)
from lifecycle_sync.store import SyncStore
from lifecycle_sync.sync_context import SyncContext

logger = logging.getLogger("lifecycle_sync.repository_sync")

STEP_FETCH = "Fetch Repository List"
STEP_TECH_STACK = "Tech Stack Detection"
STEP_COMMITS = "Commit History"
STEP_PACKAGES = "Package Detection"
STEP_README = "README Check"
STEP_PIPELINE = "Pipeline Status"
STEP_SECURITY = "Security Alerts"
STEP_STORE = "Store to Database"
STEP_REFRESH = "Refresh Application Data"

PER_REPOSITORY_STEPS = (
    STEP_TECH_STACK, STEP_COMMITS, STEP_PACKAGES, STEP_README, STEP_PIPELINE, STEP_SECURITY,
)

# Outcomes that mean "nothing there" rather than "broken".
_NO_DATA = (None, SyncErrorType.NOT_FOUND)


@dataclass
class StepTally:
    name: str
    success: int = 0
    fail: int = 0
    skip: int = 0

    def to_result(self, duration, details: Optional[dict[str, Any]] = None) -> SyncStepResult:
        return SyncStepResult(
            step_name=self.name,
            success=self.fail == 0,
            success_count=self.success,
            fail_count=self.fail,
            skip_count=self.skip,
            duration=duration,
            details=details or {},
        )


def _utc_date(value: datetime):
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).date()


async def refresh_application_links(
    store: SyncStore, repositories: Iterable[SyncedRepository]
) -> tuple[int, int]:
    """Link applications to synced repositories by normalized URL. Returns (linked, updated)."""
    by_url: dict[str, SyncedRepository] = {}
    for repo in repositories:
        for url in (repo.url, repo.clone_url):
            key = normalize_repository_url(url)
            if key:
                by_url.setdefault(key, repo)

    applications = await store.load_applications()
    changed: list[Application] = []
    linked_repos: set[str] = set()
    for app in applications:
        repo = by_url.get(normalize_repository_url(app.repository_url))
        if repo is None:
            continue
        linked_repos.add(repo.id)
        if app.repository_id != repo.id:
            changed.append(dataclasses.replace(app, repository_id=repo.id))
    if changed:
        await store.upsert_applications(changed)
    return len(linked_repos), len(changed)


class RepositorySync:
    """Sync handler for the repository source."""

    source = DataSourceType.AZURE_DEVOPS

    def __init__(self, adapter: RepositorySource) -> None:
        self.adapter = adapter

    async def __call__(self, ctx: SyncContext) -> DataSyncResult:
        start = ctx.clock()
        steps: list[SyncStepResult] = []
        errors: list[SyncError] = []

        ctx.check()
        ctx.report_progress("Fetching repositories", 0, 0, message="Retrieving repository list")
        listed = await self.adapter.list_repositories()
        steps.append(SyncStepResult(
            step_name=STEP_FETCH,
            success=listed.success,
            success_count=len(listed.data or []) if listed.success else 0,
            fail_count=0 if listed.success else 1,
            error_message=listed.error_message,
            duration=listed.duration,
        ))
        if not listed.success:
            logger.error(
                "Failed to list repositories: %s", listed.error_message,
                extra={"source": self.source.value, "job_id": ctx.job_id},
            )
            return DataSyncResult.failed(
                self.source, start, listed.error_message or "Failed to list repositories", steps,
            )

        repos: list[Repository] = list(listed.data or [])
        limit = ctx.config.dev_mode_repo_limit
        if limit > 0 and len(repos) > limit:
            logger.warning("Dev mode: limiting sync to %d of %d repositories", limit, len(repos))
            repos = repos[:limit]

        existing = await ctx.store.load_synced_repositories()
        today = _utc_date(ctx.clock())
        tallies = {name: StepTally(name) for name in PER_REPOSITORY_STEPS}
        synced: list[SyncedRepository] = []
        created = updated = incremental_skip = 0

        process_start = ctx.clock()
        for index, repo in enumerate(repos, start=1):
            ctx.check()
            ctx.report_progress("Processing repositories", index, len(repos), repo.name)
            previous = existing.get(repo.id)
            if previous is None:
                created += 1
            else:
                updated += 1

            if repo.is_disabled:
                for tally in tallies.values():
                    tally.skip += 1
                synced.append(SyncedRepository.from_repository(repo, ctx.clock(), ctx.synced_by))
                continue

            synced_today = previous is not None and _utc_date(previous.synced_at) == today
            if synced_today:
                incremental_skip += 1
                record = dataclasses.replace(previous, synced_at=ctx.clock(), synced_by=ctx.synced_by)
                for name in PER_REPOSITORY_STEPS[:-1]:
                    tallies[name].skip += 1
                if previous.has_security_data:
                    tallies[STEP_SECURITY].skip += 1
                    synced.append(record)
                    continue
                security = await self._fetch(tallies[STEP_SECURITY], self.adapter.get_security_alerts, repo, errors, strict=True)
                if security is not None:
                    record = dataclasses.replace(record, security=security)
                synced.append(record)
                continue

            record = SyncedRepository.from_repository(repo, ctx.clock(), ctx.synced_by)
            tech_stack = await self._fetch(tallies[STEP_TECH_STACK], self.adapter.detect_tech_stack, repo, errors)
            commits = await self._fetch(tallies[STEP_COMMITS], self.adapter.get_commit_history, repo, errors)
            packages = await self._fetch(tallies[STEP_PACKAGES], self.adapter.get_packages, repo, errors)
            readme = await self._fetch(tallies[STEP_README], self.adapter.get_readme_status, repo, errors)
            pipeline = await self._fetch(tallies[STEP_PIPELINE], self.adapter.get_pipeline_status, repo, errors)
            security = await self._fetch(tallies[STEP_SECURITY], self.adapter.get_security_alerts, repo, errors, strict=True)
            record = dataclasses.replace(
                record,
                tech_stack=tech_stack,
                commits=commits,
                packages=tuple(packages or ()),
                readme=readme,
                pipeline=pipeline,
                security=security,
            )
            synced.append(record)

        process_duration = ctx.clock() - process_start
        for name in PER_REPOSITORY_STEPS:
            details = {}
            if name == STEP_TECH_STACK:
                details = {"incremental_skip": incremental_skip, "repositories": len(repos)}
            steps.append(tallies[name].to_result(process_duration, details))

        ctx.check()
        ctx.report_progress("Storing repositories", len(synced), len(synced))
        store_start = ctx.clock()
        try:
            stored = await ctx.store.store_synced_repositories(synced)
            steps.append(SyncStepResult(
                step_name=STEP_STORE, success_count=stored, duration=ctx.clock() - store_start,
            ))
        except Exception as exc:
            logger.warning("Failed to store synced repositories: %s", exc, extra={"job_id": ctx.job_id})
            errors.append(SyncError(
                message=f"Failed to store synced repositories: {exc}",
                type=classify_error(exc),
                technical_details=repr(exc),
            ))
            steps.append(SyncStepResult(
                step_name=STEP_STORE, success=False, fail_count=len(synced),
                error_message=str(exc), duration=ctx.clock() - store_start,
            ))

        refresh_start = ctx.clock()
        try:
            linked, apps_updated = await refresh_application_links(ctx.store, synced)
            steps.append(SyncStepResult(
                step_name=STEP_REFRESH,
                success_count=apps_updated,
                duration=ctx.clock() - refresh_start,
                details={"repositories_linked": linked, "applications_updated": apps_updated},
            ))
        except Exception as exc:
            logger.warning("Failed to refresh application links: %s", exc, extra={"job_id": ctx.job_id})
            errors.append(SyncError(
                message=f"Failed to refresh application links: {exc}",
                type=classify_error(exc),
                technical_details=repr(exc),
            ))
            steps.append(SyncStepResult(
                step_name=STEP_REFRESH, success=False, error_message=str(exc),
                duration=ctx.clock() - refresh_start,
            ))

        logger.info(
            "Repository sync processed %d repositories (incremental skipped: %d)",
            len(synced), incremental_skip,
            extra={"source": self.source.value, "job_id": ctx.job_id, "records": len(synced)},
        )
        return DataSyncResult(
            success=True,
            source=self.source,
            start_time=start,
            end_time=ctx.clock(),
            records_processed=len(synced),
            records_created=created,
            records_updated=updated,
            records_unchanged=incremental_skip,
            errors=errors,
            step_results=steps,
        )

    async def _fetch(
        self,
        tally: StepTally,
        call: Callable[[Repository], Awaitable[SourceResult]],
        repo: Repository,
        errors: list[SyncError],
        strict: bool = False,
    ) -> Optional[Any]:
        """Run one sub-fetch and count it. Returns the payload or None."""
        try:
            result = await call(repo)
        except JobCancelledError:
            raise
        except Exception as exc:
            tally.fail += 1
            errors.append(SyncError(
                message=f"{tally.name} failed for {repo.name}: {exc}",
                type=classify_error(exc),
                entity_id=repo.id,
                entity_name=repo.name,
                technical_details=repr(exc),
            ))
            logger.warning("%s raised for %s: %s", tally.name, repo.name, exc, extra={"step": tally.name})
            return None

        if result.success and result.data is not None:
            tally.success += 1
            return result.data
        if result.success or (not strict and result.error_type in _NO_DATA):
            tally.skip += 1
            logger.debug("%s: no data for %s", tally.name, repo.name)
            return None

        tally.fail += 1
        errors.append(SyncError(
            message=f"{tally.name} failed for {repo.name}: {result.error_message or 'unknown error'}",
            type=result.error_type or SyncErrorType.UNKNOWN,
            entity_id=repo.id,
            entity_name=repo.name,
        ))
        return None
