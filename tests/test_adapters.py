"""Tests for error classification, HTTP paging and the HTTP-backed adapters."""
from __future__ import annotations

import psycopg2
import pytest
import requests

from conftest import make_repo
from lifecycle_sync.adapters import build_adapter, build_adapters, classify_error
from lifecycle_sync.adapters.azure_devops import AzureDevOpsAdapter
from lifecycle_sync.adapters.base import HttpAdapter
from lifecycle_sync.adapters.servicenow import ServiceNowAdapter, parse_application
from lifecycle_sync.config import AppConfig, AzureDevOpsConfig, ServiceNowConfig
from lifecycle_sync.models import DataSourceType, SyncErrorType


class FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.text = text

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)


class FakeSession:
    """Replays queued responses and records requested URLs."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []
        self.headers = {}
        self.auth = None

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, dict(kwargs.get("params") or {})))
        return self.responses.pop(0)


def http_error(status):
    return requests.HTTPError(response=FakeResponse(status))


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(HttpAdapter, "_rate_limit_sleep", staticmethod(lambda *a, **k: None))


class TestClassifyError:
    @pytest.mark.parametrize("exc, expected", [
        (http_error(401), SyncErrorType.AUTHENTICATION_ERROR),
        (http_error(403), SyncErrorType.AUTHORIZATION_ERROR),
        (http_error(404), SyncErrorType.NOT_FOUND),
        (http_error(422), SyncErrorType.VALIDATION_ERROR),
        (http_error(429), SyncErrorType.RATE_LIMITED),
        (http_error(500), SyncErrorType.UNKNOWN),
        (requests.ConnectionError("refused"), SyncErrorType.CONNECTION_ERROR),
        (ConnectionError("db down"), SyncErrorType.CONNECTION_ERROR),
        (requests.Timeout("slow"), SyncErrorType.TIMEOUT),
        (TimeoutError(), SyncErrorType.TIMEOUT),
        (psycopg2.OperationalError("no route"), SyncErrorType.CONNECTION_ERROR),
        (ValueError("bad json"), SyncErrorType.PARSE_ERROR),
        (KeyError("id"), SyncErrorType.PARSE_ERROR),
        (RuntimeError("?"), SyncErrorType.UNKNOWN),
    ])
    def test_mapping(self, exc, expected):
        assert classify_error(exc) == expected


class TestPagination:
    def test_follows_link_header_then_continuation_token(self):
        session = FakeSession([
            FakeResponse(payload={"value": [{"n": 1}]},
                         headers={"Link": '<https://api.example/items?page=2>; rel="next"'}),
            FakeResponse(payload={"value": [{"n": 2}]}, headers={"x-ms-continuationtoken": "abc"}),
            FakeResponse(payload={"value": [{"n": 3}]}),
        ])
        adapter = HttpAdapter(session)

        rows = adapter._get_paginated("https://api.example/items", {"top": "1"})

        assert [r["n"] for r in rows] == [1, 2, 3]
        assert session.requests[1][1] == "https://api.example/items?page=2"
        assert session.requests[2][2] == {"continuationToken": "abc"}

    def test_follows_odata_next_link(self):
        session = FakeSession([
            FakeResponse(payload={"value": [1], "@odata.nextLink": "https://graph.example/next"}),
            FakeResponse(payload={"value": [2]}),
        ])
        assert HttpAdapter(session)._get_paginated("https://graph.example/first") == [1, 2]

    def test_retries_rate_limited_requests(self):
        session = FakeSession([
            FakeResponse(429, headers={"Retry-After": "1"}),
            FakeResponse(payload={"ok": True}),
        ])
        assert HttpAdapter(session)._get_json("https://api.example") == {"ok": True}
        assert len(session.requests) == 2


class TestServiceNow:
    def test_parse_application(self):
        app = parse_application({
            "sys_id": "abc123",
            "name": " Payroll ",
            "owned_by": {"display_value": "Jones, Jeffery (J)"},
            "supported_by": "Maria Garcia; Robert Smith",
            "u_repository_url": "",
            "u_source_repository": "https://dev.azure.com/corp/apps/_git/payroll",
        })
        assert app.id == "abc123"
        assert app.name == "Payroll"
        assert app.repository_url == "https://dev.azure.com/corp/apps/_git/payroll"
        assert [(a.role, a.person) for a in app.role_assignments] == [
            ("Owner", "Jones, Jeffery (J)"),
            ("Support", "Maria Garcia"),
            ("Support", "Robert Smith"),
        ]

    @pytest.mark.asyncio
    async def test_list_applications_drops_rows_without_identity(self):
        session = FakeSession([FakeResponse(payload={"result": [
            {"sys_id": "a1", "name": "Payroll"},
            {"sys_id": "", "name": "Ghost"},
        ]})])
        adapter = ServiceNowAdapter(
            ServiceNowConfig("https://corp.service-now.example", "svc", "pw"), session=session,
        )

        result = await adapter.list_applications()

        assert result.success
        assert [a.id for a in result.data] == ["a1"]
        assert session.auth == ("svc", "pw")

    @pytest.mark.asyncio
    async def test_auth_failure_is_classified(self):
        adapter = ServiceNowAdapter(
            ServiceNowConfig("https://corp.service-now.example", "svc", "pw"),
            session=FakeSession([FakeResponse(401)]),
        )

        result = await adapter.list_applications()

        assert not result.success
        assert result.error_type == SyncErrorType.AUTHENTICATION_ERROR


class TestAzureDevOps:
    def adapter(self, responses):
        config = AzureDevOpsConfig("https://dev.azure.com/corp", "apps", "pat")
        return AzureDevOpsAdapter(config, session=FakeSession(responses))

    @pytest.mark.asyncio
    async def test_list_repositories(self):
        adapter = self.adapter([FakeResponse(payload={"value": [
            {"id": "r1", "name": "payroll", "webUrl": "https://dev.azure.com/corp/apps/_git/payroll",
             "remoteUrl": "https://corp@dev.azure.com/corp/apps/_git/payroll",
             "defaultBranch": "refs/heads/main", "project": {"name": "apps"}, "isDisabled": True},
        ]})])

        result = await adapter.list_repositories()

        (repo,) = result.data
        assert repo.default_branch == "main"
        assert repo.is_disabled
        assert repo.project == "apps"

    @pytest.mark.asyncio
    async def test_detect_mixed_stack(self):
        adapter = self.adapter([FakeResponse(payload={"value": [
            {"path": "/src", "isFolder": True},
            {"path": "/src/Api/Api.csproj"},
            {"path": "/web/package.json"},
            {"path": "/web/tsconfig.json"},
        ]})])
        repo = make_repo(1)

        result = await adapter.detect_tech_stack(repo)

        assert result.data.primary_stack == "mixed"
        assert result.data.languages == ("C#", "JavaScript", "TypeScript")
        assert result.data.detected_pattern == ".csproj"

    @pytest.mark.asyncio
    async def test_missing_resource_is_not_found(self):
        adapter = self.adapter([FakeResponse(404)])
        result = await adapter.detect_tech_stack(make_repo(1))
        assert result.error_type == SyncErrorType.NOT_FOUND


class TestRegistry:
    def test_unconfigured_source_is_skipped(self):
        assert build_adapter(DataSourceType.SHAREPOINT, AppConfig()) is None
        assert build_adapters(AppConfig()) == {}

    def test_configured_source_is_built(self):
        config = AppConfig(servicenow=ServiceNowConfig("https://corp.service-now.example", "svc", "pw"))
        adapters = build_adapters(config)
        assert list(adapters) == [DataSourceType.SERVICENOW]
        assert adapters[DataSourceType.SERVICENOW].source == DataSourceType.SERVICENOW
