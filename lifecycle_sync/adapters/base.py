"""Source adapter interfaces and shared HTTP plumbing."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Callable, Optional, TypeVar

import psycopg2
import requests

from lifecycle_sync.models import (
    Application,
    CommitHistory,
    ConnectionResult,
    DataSourceType,
    DocumentationFolder,
    PackageReference,
    PipelineStatus,
    ReadmeStatus,
    Repository,
    SecurityFindings,
    SourceResult,
    SyncErrorType,
    TechStack,
    UsageMetrics,
    utcnow,
)

logger = logging.getLogger("lifecycle_sync.adapters")

T = TypeVar("T")

HTTP_STATUS_ERRORS = {
    400: SyncErrorType.VALIDATION_ERROR,
    401: SyncErrorType.AUTHENTICATION_ERROR,
    403: SyncErrorType.AUTHORIZATION_ERROR,
    404: SyncErrorType.NOT_FOUND,
    422: SyncErrorType.VALIDATION_ERROR,
    429: SyncErrorType.RATE_LIMITED,
}


def classify_error(exc: BaseException) -> SyncErrorType:
    """Map an exception raised by an adapter onto the sync error taxonomy."""
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        return HTTP_STATUS_ERRORS.get(exc.response.status_code, SyncErrorType.UNKNOWN)
    if isinstance(exc, (requests.Timeout, TimeoutError, asyncio.TimeoutError)):
        return SyncErrorType.TIMEOUT
    if isinstance(exc, (requests.ConnectionError, ConnectionError)):
        return SyncErrorType.CONNECTION_ERROR
    if isinstance(exc, psycopg2.OperationalError):
        return SyncErrorType.CONNECTION_ERROR
    if isinstance(exc, (ValueError, KeyError, json.JSONDecodeError)):
        return SyncErrorType.PARSE_ERROR
    return SyncErrorType.UNKNOWN


class SourceAdapter(ABC):
    """Each adapter declares SOURCE and can test its own connection."""

    SOURCE: DataSourceType

    @property
    def source(self) -> DataSourceType:
        return self.SOURCE

    @abstractmethod
    async def test_connection(self) -> ConnectionResult:
        ...

    async def _call(self, fn: Callable[..., T], *args: Any) -> SourceResult[T]:
        """Run a blocking fetch in a worker thread and wrap the outcome."""
        started = utcnow()
        try:
            data = await asyncio.to_thread(fn, *args)
        except Exception as exc:
            error_type = classify_error(exc)
            logger.warning(
                "%s call %s failed (%s): %s",
                self.SOURCE.value, getattr(fn, "__name__", fn), error_type.value, exc,
                extra={"source": self.SOURCE.value},
            )
            return SourceResult.fail(error_type, str(exc), started_at=started)
        return SourceResult.ok(data, started_at=started)

    async def _timed_probe(self, fn: Callable[[], Optional[str]]) -> ConnectionResult:
        """Run a cheap request and report latency; fn returns a version string or None."""
        started = time.monotonic()
        try:
            version = await asyncio.to_thread(fn)
        except Exception as exc:
            return ConnectionResult(
                success=False,
                message=f"{classify_error(exc).value}: {exc}",
            )
        elapsed = time.monotonic() - started
        return ConnectionResult(
            success=True,
            message="Connected",
            response_time=timedelta(seconds=elapsed),
            version=version,
        )


# ------------------------------------------------------------------
# Capability interfaces
# ------------------------------------------------------------------

class RepositorySource(SourceAdapter):
    SOURCE = DataSourceType.AZURE_DEVOPS

    @abstractmethod
    async def list_repositories(self) -> SourceResult[list[Repository]]:
        ...

    @abstractmethod
    async def detect_tech_stack(self, repo: Repository) -> SourceResult[TechStack]:
        ...

    @abstractmethod
    async def get_commit_history(self, repo: Repository) -> SourceResult[CommitHistory]:
        ...

    @abstractmethod
    async def get_packages(self, repo: Repository) -> SourceResult[list[PackageReference]]:
        ...

    @abstractmethod
    async def get_readme_status(self, repo: Repository) -> SourceResult[ReadmeStatus]:
        ...

    @abstractmethod
    async def get_pipeline_status(self, repo: Repository) -> SourceResult[PipelineStatus]:
        ...

    @abstractmethod
    async def get_security_alerts(self, repo: Repository) -> SourceResult[SecurityFindings]:
        ...


class RoleSource(SourceAdapter):
    SOURCE = DataSourceType.SERVICENOW

    @abstractmethod
    async def list_applications(self) -> SourceResult[list[Application]]:
        """Applications with repository URL and free-text role occupants."""


class DocumentationSource(SourceAdapter):
    SOURCE = DataSourceType.SHAREPOINT

    @abstractmethod
    async def list_documentation(self) -> SourceResult[list[DocumentationFolder]]:
        """Documentation folders keyed by application name."""


class UsageSource(SourceAdapter):
    SOURCE = DataSourceType.IIS_DATABASE

    @abstractmethod
    async def get_usage_metrics(self) -> SourceResult[dict[str, UsageMetrics]]:
        """Application id -> usage over the lookback window."""


# ------------------------------------------------------------------
# HTTP helpers
# ------------------------------------------------------------------

class HttpAdapter:
    """requests.Session wrapper with pagination and rate-limit backoff."""

    MAX_RATE_LIMIT_RETRIES = 5
    TIMEOUT_SECONDS = 30

    def __init__(self, session: Optional[requests.Session] = None) -> None:
        self._session = session or requests.Session()

    @staticmethod
    def _rate_limit_sleep(attempt: int, base_seconds: float = 1.0, retry_after: Optional[str] = None) -> None:
        """Exponential backoff sleep for rate limiting."""
        delay = base_seconds * (2 ** attempt)
        if retry_after and retry_after.isdigit():
            delay = max(delay, float(retry_after))
        delay = min(delay, 60.0)  # cap at 60s
        logger.warning("Rate limited, sleeping %.1fs (attempt %d)", delay, attempt)
        time.sleep(delay)

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """Send a request, backing off on 429 and raising for other error statuses."""
        kwargs.setdefault("timeout", self.TIMEOUT_SECONDS)
        attempt = 0
        while True:
            resp = self._session.request(method, url, **kwargs)
            if resp.status_code == 429 and attempt < self.MAX_RATE_LIMIT_RETRIES:
                self._rate_limit_sleep(attempt, retry_after=resp.headers.get("Retry-After"))
                attempt += 1
                continue
            resp.raise_for_status()
            return resp

    def _get_json(self, url: str, params: Optional[dict] = None) -> Any:
        return self._request("GET", url, params=params).json()

    def _get_paginated(
        self,
        url: str,
        params: Optional[dict] = None,
        items_key: str = "value",
    ) -> list[dict]:
        """Fetch every page, following Link headers, @odata.nextLink or continuation tokens."""
        results: list[dict] = []
        params = dict(params or {})

        while url:
            resp = self._request("GET", url, params=params)
            data = resp.json()
            if isinstance(data, list):
                results.extend(data)
            else:
                results.extend(data.get(items_key) or [])

            next_url = ""
            link = resp.headers.get("Link", "")
            for part in link.split(","):
                if 'rel="next"' in part:
                    next_url = part.split(";")[0].strip().strip("<>")
                    break
            if next_url:
                url, params = next_url, {}
                continue
            if isinstance(data, dict) and data.get("@odata.nextLink"):
                url, params = data["@odata.nextLink"], {}
                continue
            token = resp.headers.get("x-ms-continuationtoken")
            if token:
                params["continuationToken"] = token
                continue
            url = ""
        return results
