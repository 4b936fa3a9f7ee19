"""Azure DevOps repository source: repositories, stack, commits, packages, builds, alerts."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import requests

from lifecycle_sync.adapters.base import HttpAdapter, RepositorySource
from lifecycle_sync.config import AzureDevOpsConfig
from lifecycle_sync.models import (
    CommitHistory,
    ConnectionResult,
    PackageReference,
    PipelineStatus,
    ReadmeStatus,
    Repository,
    SecurityFindings,
    SourceResult,
    TechStack,
)

logger = logging.getLogger("lifecycle_sync.adapters.azure_devops")

API_VERSION = "7.1"

# marker file -> (stack, language)
STACK_MARKERS = {
    ".csproj": ("dotnet", "C#"),
    ".sln": ("dotnet", "C#"),
    ".vbproj": ("dotnet", "VB.NET"),
    "package.json": ("node", "JavaScript"),
    "tsconfig.json": ("node", "TypeScript"),
    "requirements.txt": ("python", "Python"),
    "pyproject.toml": ("python", "Python"),
    "pom.xml": ("java", "Java"),
    "build.gradle": ("java", "Java"),
    "go.mod": ("go", "Go"),
}


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class AzureDevOpsAdapter(RepositorySource, HttpAdapter):
    def __init__(self, config: AzureDevOpsConfig, session: Optional[requests.Session] = None) -> None:
        HttpAdapter.__init__(self, session)
        self.config = config
        self._base = f"{config.org_url}/{config.project}/_apis"
        self._org = config.org_url.rstrip("/").rsplit("/", 1)[-1]
        self._session.auth = ("", config.pat)
        self._session.headers.update({"Accept": "application/json"})

    async def test_connection(self) -> ConnectionResult:
        def probe() -> Optional[str]:
            resp = self._request("GET", f"{self.config.org_url}/_apis/projects/{self.config.project}",
                                 params={"api-version": API_VERSION})
            return resp.headers.get("X-VSS-ServiceVersion") or API_VERSION
        return await self._timed_probe(probe)

    # ------------------------------------------------------------------
    # Repositories
    # ------------------------------------------------------------------

    async def list_repositories(self) -> SourceResult[list[Repository]]:
        return await self._call(self._list_repositories)

    def _list_repositories(self) -> list[Repository]:
        rows = self._get_paginated(f"{self._base}/git/repositories", {"api-version": API_VERSION})
        repos = [
            Repository(
                id=r["id"],
                name=r["name"],
                url=r.get("webUrl") or r.get("remoteUrl") or "",
                clone_url=r.get("remoteUrl"),
                default_branch=(r.get("defaultBranch") or "").replace("refs/heads/", "") or None,
                project=(r.get("project") or {}).get("name"),
                size_bytes=r.get("size"),
                is_disabled=bool(r.get("isDisabled")),
            )
            for r in rows
        ]
        logger.info("Listed %d repositories", len(repos), extra={"records": len(repos)})
        return repos

    def _items(self, repo: Repository) -> list[dict]:
        return self._get_paginated(
            f"{self._base}/git/repositories/{repo.id}/items",
            {"api-version": API_VERSION, "scopePath": "/", "recursionLevel": "Full"},
        )

    def _file_text(self, repo: Repository, path: str) -> str:
        resp = self._request(
            "GET",
            f"{self._base}/git/repositories/{repo.id}/items",
            params={"api-version": API_VERSION, "path": path, "includeContent": "true", "$format": "text"},
        )
        return resp.text

    # ------------------------------------------------------------------
    # Tech stack
    # ------------------------------------------------------------------

    async def detect_tech_stack(self, repo: Repository) -> SourceResult[TechStack]:
        return await self._call(self._detect_tech_stack, repo)

    def _detect_tech_stack(self, repo: Repository) -> TechStack:
        paths = [i["path"] for i in self._items(repo) if not i.get("isFolder")]
        stacks: list[str] = []
        languages: list[str] = []
        pattern = None
        for path in paths:
            name = path.rsplit("/", 1)[-1].lower()
            for marker, (stack, language) in STACK_MARKERS.items():
                if name == marker or (marker.startswith(".") and name.endswith(marker)):
                    if stack not in stacks:
                        stacks.append(stack)
                        pattern = pattern or marker
                    if language not in languages:
                        languages.append(language)
        primary = stacks[0] if len(stacks) == 1 else ("mixed" if stacks else "unknown")
        return TechStack(
            primary_stack=primary,
            languages=tuple(languages),
            detected_pattern=pattern,
        )

    # ------------------------------------------------------------------
    # Commits
    # ------------------------------------------------------------------

    async def get_commit_history(self, repo: Repository) -> SourceResult[CommitHistory]:
        return await self._call(self._get_commit_history, repo)

    def _get_commit_history(self, repo: Repository) -> CommitHistory:
        since = datetime.now(timezone.utc) - timedelta(days=self.config.commit_history_days)
        commits = self._get_paginated(
            f"{self._base}/git/repositories/{repo.id}/commits",
            {
                "api-version": API_VERSION,
                "searchCriteria.fromDate": since.isoformat(),
                "$top": "1000",
            },
        )
        dates = [_parse_dt((c.get("committer") or {}).get("date")) for c in commits]
        dates = [d for d in dates if d]
        authors = sorted({(c.get("author") or {}).get("email", "") for c in commits} - {""})
        return CommitHistory(
            total_commits=len(commits),
            last_commit_date=max(dates) if dates else None,
            contributors=tuple(authors),
        )

    # ------------------------------------------------------------------
    # Packages
    # ------------------------------------------------------------------

    async def get_packages(self, repo: Repository) -> SourceResult[list[PackageReference]]:
        return await self._call(self._get_packages, repo)

    def _get_packages(self, repo: Repository) -> list[PackageReference]:
        packages: list[PackageReference] = []
        for item in self._items(repo):
            path = item["path"]
            name = path.rsplit("/", 1)[-1].lower()
            if name == "package.json":
                manifest = json.loads(self._file_text(repo, path))
                for section, dev in (("dependencies", False), ("devDependencies", True)):
                    for pkg, version in (manifest.get(section) or {}).items():
                        packages.append(PackageReference(
                            name=pkg, package_manager="npm", version=version,
                            source_file=path, is_development_dependency=dev,
                        ))
            elif name == "requirements.txt":
                for line in self._file_text(repo, path).splitlines():
                    line = line.split("#", 1)[0].strip()
                    if not line or line.startswith("-"):
                        continue
                    pkg, _, version = line.partition("==")
                    packages.append(PackageReference(
                        name=pkg.strip(), package_manager="pip",
                        version=version.strip() or None, source_file=path,
                    ))
        return packages

    # ------------------------------------------------------------------
    # README / pipeline / security
    # ------------------------------------------------------------------

    async def get_readme_status(self, repo: Repository) -> SourceResult[ReadmeStatus]:
        return await self._call(self._get_readme_status, repo)

    def _get_readme_status(self, repo: Repository) -> ReadmeStatus:
        text = self._file_text(repo, "/README.md")
        lines = [line for line in text.splitlines() if line.strip()]
        headings = sum(1 for line in lines if line.lstrip().startswith("#"))
        score = min(100, len(lines) * 2 + headings * 10)
        return ReadmeStatus(exists=True, line_count=len(lines), quality_score=score)

    async def get_pipeline_status(self, repo: Repository) -> SourceResult[PipelineStatus]:
        return await self._call(self._get_pipeline_status, repo)

    def _get_pipeline_status(self, repo: Repository) -> PipelineStatus:
        data = self._get_json(
            f"{self._base}/build/builds",
            {
                "api-version": API_VERSION,
                "repositoryId": repo.id,
                "repositoryType": "TfsGit",
                "$top": "1",
                "queryOrder": "finishTimeDescending",
            },
        )
        builds = data.get("value") or []
        if not builds:
            return PipelineStatus()
        build = builds[0]
        return PipelineStatus(
            status=build.get("status", "none"),
            result=build.get("result", "none"),
            pipeline_name=(build.get("definition") or {}).get("name"),
            start_time=_parse_dt(build.get("startTime")),
            finish_time=_parse_dt(build.get("finishTime")),
        )

    async def get_security_alerts(self, repo: Repository) -> SourceResult[SecurityFindings]:
        return await self._call(self._get_security_alerts, repo)

    def _get_security_alerts(self, repo: Repository) -> SecurityFindings:
        alerts = self._get_paginated(
            f"https://advsec.dev.azure.com/{self._org}/{self.config.project}"
            f"/_apis/alert/repositories/{repo.name}/alerts",
            {"api-version": "7.2-preview.1", "criteria.states": "active"},
        )
        severities = {"critical": 0, "high": 0, "medium": 0, "low": 0}
        secrets = dependencies = 0
        for alert in alerts:
            severity = (alert.get("severity") or "").lower()
            if severity in severities:
                severities[severity] += 1
            kind = (alert.get("alertType") or "").lower()
            if kind == "secret":
                secrets += 1
            elif kind == "dependency":
                dependencies += 1
        return SecurityFindings(
            advanced_security_enabled=True,
            last_scan_date=datetime.now(timezone.utc),
            open_critical=severities["critical"],
            open_high=severities["high"],
            open_medium=severities["medium"],
            open_low=severities["low"],
            exposed_secrets=secrets,
            dependency_alerts=dependencies,
        )
