"""Conflict registry and the cross-source Conflict Detector rules."""

from __future__ import annotations

import dataclasses
import logging
import re
import threading
from collections import OrderedDict
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Iterable, Optional
from urllib.parse import urlparse

from lifecycle_sync.config import MatchingConfig
from lifecycle_sync.events import ConflictDetected, EventBus
from lifecycle_sync.models import (
    Application,
    ConflictType,
    DataConflict,
    DataSourceType,
    new_id,
    utcnow,
)

if TYPE_CHECKING:
    from lifecycle_sync.identity_resolver import IdentityResolver
    from lifecycle_sync.store import SyncStore

logger = logging.getLogger("lifecycle_sync.conflicts")

VALID_URL_SCHEMES = ("http", "https", "ssh", "git")
_SCP_STYLE = re.compile(r"^[\w.+-]+@[\w.-]+:[^\s:][^\s]*$")


def is_valid_repository_url(url: str) -> bool:
    """Absolute http(s)/ssh/git locator with a host, or scp-style user@host:path."""
    url = url.strip()
    if not url or any(c.isspace() for c in url):
        return False
    if _SCP_STYLE.match(url) and "://" not in url:
        return True
    parsed = urlparse(url)
    return parsed.scheme.lower() in VALID_URL_SCHEMES and bool(parsed.hostname)


def normalize_repository_url(url: Optional[str]) -> str:
    """Lowercase and drop a trailing "/" and ".git" so clones of one repo compare equal."""
    if not url:
        return ""
    url = url.strip().lower().rstrip("/")
    if url.endswith(".git"):
        url = url[: -len(".git")].rstrip("/")
    return url


class ConflictRegistry:
    """In-memory set of conflicts keyed by natural key.

    Mutations happen under one lock with no awaits inside. New and resolved
    conflicts are queued and written out by flush().
    """

    def __init__(
        self,
        conflicts: Iterable[DataConflict] = (),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self._by_id: "OrderedDict[str, DataConflict]" = OrderedDict()
        self._by_key: dict[tuple, str] = {}
        self._dirty: list[DataConflict] = []
        self._new: list[DataConflict] = []
        self.load(conflicts)

    def load(self, conflicts: Iterable[DataConflict]) -> None:
        """Seed from storage without queueing anything for persistence."""
        with self._lock:
            for conflict in conflicts:
                self._by_id[conflict.id] = conflict
                self._by_key.setdefault(conflict.natural_key, conflict.id)

    def create(
        self,
        application: Application,
        kind: ConflictType,
        description: str,
        **fields,
    ) -> Optional[DataConflict]:
        conflict = DataConflict(
            id=new_id(),
            application_id=application.id,
            application_name=application.name,
            kind=kind,
            description=description,
            detected_at=self._clock(),
            **fields,
        )
        return self.add(conflict)

    def add(self, conflict: DataConflict) -> Optional[DataConflict]:
        """Insert unless a conflict with the same natural key exists (open or resolved)."""
        key = conflict.natural_key
        with self._lock:
            if key in self._by_key:
                return None
            self._by_key[key] = conflict.id
            self._by_id[conflict.id] = conflict
            self._dirty.append(conflict)
            self._new.append(conflict)
        logger.info(
            "Conflict detected: %s", conflict.description,
            extra={"application": conflict.application_name, "status": conflict.kind.value},
        )
        return conflict

    def resolve(
        self,
        conflict_id: str,
        resolution: str,
        resolved_by: str,
        resolved_by_name: Optional[str] = None,
    ) -> Optional[DataConflict]:
        """Mark an open conflict resolved. Returns None for unknown or already-resolved ids."""
        with self._lock:
            current = self._by_id.get(conflict_id)
            if current is None or current.is_resolved:
                return None
            resolved = dataclasses.replace(
                current,
                is_resolved=True,
                resolution=resolution,
                resolved_by=resolved_by,
                resolved_by_name=resolved_by_name or resolved_by,
                resolved_at=self._clock(),
            )
            self._by_id[conflict_id] = resolved
            self._dirty.append(resolved)
        return resolved

    def get(self, conflict_id: str) -> Optional[DataConflict]:
        return self._by_id.get(conflict_id)

    def all(self) -> list[DataConflict]:
        with self._lock:
            return list(self._by_id.values())

    def unresolved(self) -> list[DataConflict]:
        return [c for c in self.all() if not c.is_resolved]

    async def flush(self, store: Optional["SyncStore"], events: Optional["EventBus"] = None) -> list[DataConflict]:
        """Persist queued changes and emit ConflictDetected for new conflicts."""
        with self._lock:
            dirty, self._dirty = self._dirty, []
            new, self._new = self._new, []
        if store is not None:
            for conflict in dirty:
                try:
                    await store.upsert_conflict(conflict)
                except Exception as exc:
                    logger.warning("Failed to persist conflict %s: %s", conflict.id, exc)
        if events is not None:
            for conflict in new:
                events.emit(ConflictDetected(conflict=conflict))
        return new


class ConflictDetector:
    """Rules that flag disagreements between sources."""

    def __init__(
        self,
        registry: ConflictRegistry,
        resolver: Optional["IdentityResolver"] = None,
        mandatory_roles: Iterable[str] = ("Owner",),
        matching: MatchingConfig = MatchingConfig(),
    ) -> None:
        self.registry = registry
        self.resolver = resolver
        self.mandatory_roles = tuple(mandatory_roles)
        self.matching = matching

    # ------------------------------------------------------------------
    # Role source rules
    # ------------------------------------------------------------------

    def check_roles(self, applications: Iterable[Application]) -> list[DataConflict]:
        """ROLE_CONFLICT for every mandatory role with no occupant."""
        found: list[DataConflict] = []
        for app in applications:
            for role in self.mandatory_roles:
                if app.occupants(role):
                    continue
                conflict = self.registry.create(
                    app,
                    ConflictType.ROLE_CONFLICT,
                    f"Application '{app.name}' has no {role} assigned",
                    source_a=DataSourceType.SERVICENOW.value,
                    value_a=role,
                )
                if conflict:
                    found.append(conflict)
        return found

    def check_unmatched_users(self, applications: Iterable[Application]) -> list[DataConflict]:
        """USER_NOT_FOUND for role occupants the resolver cannot place."""
        if self.resolver is None or not self.matching.create_conflicts:
            return []
        from lifecycle_sync.identity_resolver import MatchContext

        found: list[DataConflict] = []
        for app in applications:
            for assignment in app.role_assignments:
                if assignment.identity_key or not assignment.person.strip():
                    continue
                context = MatchContext(
                    data_source=DataSourceType.SERVICENOW.value,
                    role=assignment.role,
                    application_id=app.id,
                    application_name=app.name,
                    min_confidence=self.matching.min_confidence,
                )
                result = self.resolver.match(assignment.person, context)
                if result.conflict is not None:
                    found.append(result.conflict)
        return found

    # ------------------------------------------------------------------
    # Repository rules
    # ------------------------------------------------------------------

    def check_repository_urls(self, applications: Iterable[Application]) -> list[DataConflict]:
        """INVALID_REPOSITORY for non-empty URLs that are not absolute locators."""
        found: list[DataConflict] = []
        for app in applications:
            url = (app.repository_url or "").strip()
            if not url or is_valid_repository_url(url):
                continue
            conflict = self.registry.create(
                app,
                ConflictType.INVALID_REPOSITORY,
                f"Application '{app.name}' has an invalid repository URL: {url}",
                source_a=DataSourceType.SERVICENOW.value,
                value_a=url,
                source_b=DataSourceType.AZURE_DEVOPS.value,
            )
            if conflict:
                found.append(conflict)
        return found

    def check_duplicate_repositories(self, applications: Iterable[Application]) -> list[DataConflict]:
        """DUPLICATE_REPOSITORY for every claimant of a shared URL except the first."""
        groups: "OrderedDict[str, list[Application]]" = OrderedDict()
        for app in applications:
            key = normalize_repository_url(app.repository_url)
            if key:
                groups.setdefault(key, []).append(app)

        found: list[DataConflict] = []
        for url, claimants in groups.items():
            if len(claimants) < 2:
                continue
            names = ", ".join(a.name for a in claimants)
            first = claimants[0]
            for app in claimants[1:]:
                conflict = self.registry.create(
                    app,
                    ConflictType.DUPLICATE_REPOSITORY,
                    f"Repository {url} is claimed by multiple applications: {names}",
                    source_a=DataSourceType.SERVICENOW.value,
                    value_a=url,
                    value_b=first.name,
                )
                if conflict:
                    found.append(conflict)
        return found

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def after_source(self, source: DataSourceType, applications: list[Application]) -> list[DataConflict]:
        """Rules that only need data from the source that just synced."""
        if source == DataSourceType.SERVICENOW:
            return self.check_roles(applications)
        if source == DataSourceType.AZURE_DEVOPS:
            return self.check_repository_urls(applications)
        return []

    def detect_all(
        self,
        applications: list[Application],
        sources: Iterable[DataSourceType] = tuple(DataSourceType),
    ) -> list[DataConflict]:
        """Per-source rules for each enabled source, then the cross-source rules."""
        found: list[DataConflict] = []
        for source in sources:
            found.extend(self.after_source(source, applications))
        found.extend(self.check_duplicate_repositories(applications))
        found.extend(self.check_unmatched_users(applications))
        logger.info("Conflict detection found %d new conflicts", len(found), extra={"records": len(found)})
        return found
