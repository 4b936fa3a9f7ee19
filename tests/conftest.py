"""
Shared fixtures for lifecycle-sync tests.

Nothing here touches a network or a database: adapters are in-process
fakes built on the capability interfaces, the store is MemoryStore and
the identity directory is InMemoryIdentityDirectory.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from lifecycle_sync.adapters.base import DocumentationSource, RepositorySource, RoleSource, UsageSource
from lifecycle_sync.config import SyncConfig
from lifecycle_sync.identity_directory import Identity, InMemoryIdentityDirectory
from lifecycle_sync.models import (
    CommitHistory,
    ConnectionResult,
    PackageReference,
    PipelineStatus,
    ReadmeStatus,
    Repository,
    SecurityFindings,
    SourceResult,
    SyncErrorType,
    TechStack,
)
from lifecycle_sync.store import MemoryStore
from lifecycle_sync.sync_context import CancellationScope, SyncContext


class FakeClock:
    """Settable clock; call it to read the time."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeRepositorySource(RepositorySource):
    """Returns canned data; per-step failures keyed by (step, repo id)."""

    def __init__(self, repos=(), failures=None, security=None) -> None:
        self.repos = list(repos)
        self.failures = dict(failures or {})
        self.security = security or SecurityFindings(advanced_security_enabled=True, open_high=1)
        self.calls: list[tuple[str, str]] = []
        self.list_error = None

    async def test_connection(self) -> ConnectionResult:
        return ConnectionResult(success=True, message="Connected")

    async def list_repositories(self):
        if self.list_error:
            return SourceResult.fail(SyncErrorType.AUTHENTICATION_ERROR, self.list_error)
        return SourceResult.ok(list(self.repos))

    def _result(self, step, repo, data):
        self.calls.append((step, repo.id))
        failure = self.failures.get((step, repo.id))
        if failure is not None:
            return SourceResult.fail(failure, f"{step} unavailable")
        return SourceResult.ok(data)

    async def detect_tech_stack(self, repo):
        return self._result("tech_stack", repo, TechStack(primary_stack="python", languages=("python",)))

    async def get_commit_history(self, repo):
        return self._result("commits", repo, CommitHistory(total_commits=12, contributors=("a",)))

    async def get_packages(self, repo):
        return self._result("packages", repo, [PackageReference(name="requests", package_manager="pip")])

    async def get_readme_status(self, repo):
        return self._result("readme", repo, ReadmeStatus(exists=True, line_count=40, quality_score=70))

    async def get_pipeline_status(self, repo):
        return self._result("pipeline", repo, PipelineStatus(status="completed", result="succeeded"))

    async def get_security_alerts(self, repo):
        return self._result("security", repo, self.security)


class FakeRoleSource(RoleSource):
    def __init__(self, applications=()) -> None:
        self.applications = list(applications)

    async def test_connection(self) -> ConnectionResult:
        return ConnectionResult(success=True, message="Connected")

    async def list_applications(self):
        return SourceResult.ok(list(self.applications))


class FakeDocumentationSource(DocumentationSource):
    def __init__(self, folders=()) -> None:
        self.folders = list(folders)

    async def test_connection(self) -> ConnectionResult:
        return ConnectionResult(success=False, message="authentication_error: token expired")

    async def list_documentation(self):
        return SourceResult.ok(list(self.folders))


class FakeUsageSource(UsageSource):
    def __init__(self, metrics=None) -> None:
        self.metrics = dict(metrics or {})

    async def test_connection(self) -> ConnectionResult:
        return ConnectionResult(success=True, message="Connected")

    async def get_usage_metrics(self):
        return SourceResult.ok(dict(self.metrics))


def make_repo(index: int, disabled: bool = False) -> Repository:
    return Repository(
        id=f"repo-{index}",
        name=f"service-{index}",
        url=f"https://dev.azure.com/corp/apps/_git/service-{index}",
        clone_url=f"https://corp@dev.azure.com/corp/apps/_git/service-{index}",
        default_branch="refs/heads/main",
        project="apps",
        is_disabled=disabled,
    )


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 14, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def directory():
    return InMemoryIdentityDirectory([
        Identity(
            key="u-jeff",
            display_name="Jeff Jones",
            principal_name="jeff.jones@corp.example",
            given_name="Jeff",
            family_name="Jones",
            email="jjones@corp.example",
            employee_id="E1001",
        ),
        Identity(
            key="u-maria",
            display_name="Maria Garcia",
            principal_name="maria.garcia@corp.example",
            given_name="Maria",
            family_name="Garcia",
        ),
        Identity(
            key="u-robert",
            display_name="Robert Smith",
            principal_name="robert.smith@corp.example",
            given_name="Robert",
            family_name="Smith",
        ),
    ])


@pytest.fixture
def make_context(store, clock):
    """Build a SyncContext for calling a handler directly."""

    def _make(source, config=None, events=None):
        return SyncContext(
            job_id="job-1",
            source=source,
            scope=CancellationScope("job-1"),
            config=config or SyncConfig(),
            store=store,
            events=events,
            clock=clock,
        )

    return _make
