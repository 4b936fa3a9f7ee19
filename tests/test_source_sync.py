"""Tests for the role, documentation and usage sync handlers."""
from __future__ import annotations

import pytest

from conftest import FakeDocumentationSource, FakeRoleSource, FakeUsageSource
from lifecycle_sync.conflicts import ConflictRegistry
from lifecycle_sync.identity_resolver import IdentityResolver
from lifecycle_sync.models import (
    Application,
    ConflictType,
    DataSourceType,
    DocumentationFolder,
    MatchConfidence,
    RoleAssignment,
    SyncErrorType,
    UsageMetrics,
)
from lifecycle_sync.source_sync import DocumentationSync, RoleSync, UsageSync, documentation_status


def test_documentation_status_reports_missing_documents(clock):
    folder = DocumentationFolder(
        application_name="Payroll",
        folder_path="/Applications/Payroll",
        documents=("Architecture Overview.docx", "Payroll RUNBOOK.pdf"),
    )
    status = documentation_status(folder, clock.now)
    assert status.missing == ("disaster recovery", "support")
    assert status.completeness == 0.5
    assert status.document_count == 2


@pytest.mark.asyncio
async def test_role_sync_resolves_occupants_and_keeps_other_data(make_context, store, directory, clock):
    usage = UsageMetrics(requests=10, unique_users=3)
    store.applications["app-1"] = Application(id="app-1", name="Payroll", usage=usage, repository_id="repo-1")
    registry = ConflictRegistry(clock=clock)
    adapter = FakeRoleSource([
        Application(
            id="app-1",
            name="Payroll",
            role_assignments=(
                RoleAssignment(role="Owner", person="Jones, Jeffery (J)"),
                RoleAssignment(role="Support", person="Zelda Quinn"),
            ),
        ),
        Application(id="app-2", name="Billing"),
    ])

    result = await RoleSync(adapter, IdentityResolver(directory, registry))(make_context(DataSourceType.SERVICENOW))

    assert result.success
    assert result.records_processed == 2
    assert result.records_created == 1
    assert result.records_updated == 1
    payroll = store.applications["app-1"]
    owner, support = payroll.role_assignments
    assert owner.identity_key == "u-jeff"
    assert owner.match_confidence == MatchConfidence.HIGH
    assert support.identity_key is None
    assert payroll.usage == usage
    assert payroll.repository_id == "repo-1"
    assert [c.kind for c in registry.unresolved()] == [ConflictType.USER_NOT_FOUND]
    step = result.step("Resolve Role Occupants")
    assert (step.success_count, step.skip_count) == (1, 1)


@pytest.mark.asyncio
async def test_role_sync_without_resolver_stores_as_is(make_context, store):
    adapter = FakeRoleSource([
        Application(id="app-1", name="Payroll", role_assignments=(RoleAssignment("Owner", "Jeff Jones"),)),
    ])

    result = await RoleSync(adapter)(make_context(DataSourceType.SERVICENOW))

    assert result.success
    assert store.applications["app-1"].role_assignments[0].identity_key is None


@pytest.mark.asyncio
async def test_documentation_sync_matches_by_name(make_context, store):
    store.applications["app-1"] = Application(id="app-1", name="Payroll")
    adapter = FakeDocumentationSource([
        DocumentationFolder("  payroll ", "/Applications/Payroll", ("Runbook.docx",)),
        DocumentationFolder("Retired App", "/Applications/Retired App"),
    ])

    result = await DocumentationSync(adapter)(make_context(DataSourceType.SHAREPOINT))

    assert result.records_processed == 2
    assert result.records_updated == 1
    assert result.records_unchanged == 1
    assert store.applications["app-1"].documentation.folder_path == "/Applications/Payroll"


@pytest.mark.asyncio
async def test_usage_sync_matches_by_id(make_context, store):
    store.applications["app-1"] = Application(id="app-1", name="Payroll")
    adapter = FakeUsageSource({
        "app-1": UsageMetrics(requests=500, unique_users=40),
        "app-unknown": UsageMetrics(requests=1),
    })

    result = await UsageSync(adapter)(make_context(DataSourceType.IIS_DATABASE))

    assert result.records_updated == 1
    assert result.step("Match Usage to Applications").skip_count == 1
    assert store.applications["app-1"].usage.requests == 500


async def _db_down(applications):
    raise ConnectionError("db down")


@pytest.mark.asyncio
@pytest.mark.parametrize("source, make_handler", [
    (DataSourceType.SERVICENOW, lambda: RoleSync(FakeRoleSource([Application(id="app-1", name="Payroll")]))),
    (DataSourceType.SHAREPOINT, lambda: DocumentationSync(FakeDocumentationSource([
        DocumentationFolder("Payroll", "/Applications/Payroll", ("Runbook.docx",)),
    ]))),
    (DataSourceType.IIS_DATABASE, lambda: UsageSync(FakeUsageSource({"app-1": UsageMetrics(requests=5)}))),
])
async def test_store_failure_is_reported_as_an_error(make_context, store, source, make_handler):
    store.applications["app-1"] = Application(id="app-1", name="Payroll")
    store.upsert_applications = _db_down

    result = await make_handler()(make_context(source))

    assert result.success
    assert not result.step("Store to Database").success
    assert [e.type for e in result.errors] == [SyncErrorType.CONNECTION_ERROR]
    assert result.errors[0].message == "Failed to store applications: db down"
