"""PostgreSQL-backed store and identity directory.

psycopg2 is blocking, so every store call runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

import psycopg2.extras

from lifecycle_sync.db import Database
from lifecycle_sync.identity_directory import Alias, Identity, InMemoryIdentityDirectory
from lifecycle_sync.models import (
    AliasKind,
    Application,
    DataConflict,
    SyncedRepository,
    SyncJob,
)
from lifecycle_sync.store import SyncStore

logger = logging.getLogger("lifecycle_sync.pg_store")

_JOB_COLUMNS = [
    "id", "source", "status", "start_time", "end_time",
    "records_processed", "records_created", "records_updated",
    "error_count", "error_message", "triggered_by",
]

_CONFLICT_COLUMNS = [
    "id", "application_id", "application_name", "kind", "description",
    "source_a", "value_a", "source_b", "value_b", "role", "value_kind",
    "detected_at", "is_resolved", "resolution", "resolved_by",
    "resolved_by_name", "resolved_at",
]


class PostgresStore(SyncStore):
    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def upsert_job(self, job: SyncJob) -> None:
        await asyncio.to_thread(self._upsert_job, job)

    def _upsert_job(self, job: SyncJob) -> None:
        row = (
            job.id, job.source.value, job.status.value, job.start_time, job.end_time,
            job.records_processed, job.records_created, job.records_updated,
            job.error_count, job.error_message, job.triggered_by,
        )
        with self.db.transaction() as cur:
            self.db.upsert_batch(
                cur, "sync_jobs", _JOB_COLUMNS, [row],
                conflict_columns=["id"], update_columns=_JOB_COLUMNS[2:],
            )

    async def load_recent_jobs(self, limit: int = 100) -> list[SyncJob]:
        rows = await asyncio.to_thread(
            self.db.fetch_all,
            f"SELECT {', '.join(_JOB_COLUMNS)} FROM sync_jobs ORDER BY start_time DESC LIMIT %s",
            (limit,),
        )
        return [SyncJob.from_dict({**r, "id": str(r["id"])}) for r in rows]

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    async def upsert_conflict(self, conflict: DataConflict) -> None:
        await asyncio.to_thread(self._upsert_conflict, conflict)

    def _upsert_conflict(self, c: DataConflict) -> None:
        row = (
            c.id, c.application_id, c.application_name, c.kind.value, c.description,
            c.source_a, c.value_a, c.source_b, c.value_b, c.role,
            c.value_kind.value if c.value_kind else None,
            c.detected_at, c.is_resolved, c.resolution, c.resolved_by,
            c.resolved_by_name, c.resolved_at,
        )
        with self.db.transaction() as cur:
            self.db.upsert_batch(
                cur, "data_conflicts", _CONFLICT_COLUMNS, [row],
                conflict_columns=["id"],
                update_columns=["is_resolved", "resolution", "resolved_by", "resolved_by_name", "resolved_at"],
            )

    async def load_conflicts(self) -> list[DataConflict]:
        rows = await asyncio.to_thread(
            self.db.fetch_all,
            f"SELECT {', '.join(_CONFLICT_COLUMNS)} FROM data_conflicts ORDER BY detected_at",
        )
        return [DataConflict.from_dict({**r, "id": str(r["id"])}) for r in rows]

    # ------------------------------------------------------------------
    # Applications and repositories (JSONB payloads)
    # ------------------------------------------------------------------

    async def load_applications(self) -> list[Application]:
        rows = await asyncio.to_thread(
            self.db.fetch_all, "SELECT payload FROM applications ORDER BY name",
        )
        return [Application.from_dict(r["payload"]) for r in rows]

    async def upsert_applications(self, applications: Iterable[Application]) -> int:
        rows = [
            (a.id, a.name, a.repository_url, psycopg2.extras.Json(a.to_dict()))
            for a in applications
        ]
        return await asyncio.to_thread(
            self._upsert_rows, "applications", ["id", "name", "repository_url", "payload"], rows,
        )

    async def load_synced_repositories(self) -> dict[str, SyncedRepository]:
        rows = await asyncio.to_thread(
            self.db.fetch_all, "SELECT payload FROM synced_repositories",
        )
        repos = [SyncedRepository.from_dict(r["payload"]) for r in rows]
        return {r.id: r for r in repos}

    async def store_synced_repositories(self, repositories: Iterable[SyncedRepository]) -> int:
        rows = [
            (r.id, r.name, r.url, r.synced_at, psycopg2.extras.Json(r.to_dict()))
            for r in repositories
        ]
        return await asyncio.to_thread(
            self._upsert_rows, "synced_repositories", ["id", "name", "url", "synced_at", "payload"], rows,
        )

    def _upsert_rows(self, table: str, columns: list[str], rows: list[tuple]) -> int:
        with self.db.transaction() as cur:
            return self.db.upsert_batch(
                cur, table, columns, rows,
                conflict_columns=["id"], update_columns=columns[1:],
            )

    async def close(self) -> None:
        await asyncio.to_thread(self.db.close)


class PostgresIdentityDirectory(InMemoryIdentityDirectory):
    """Directory loaded from the identities tables; learned aliases are written through."""

    def __init__(self, db: Database) -> None:
        super().__init__()
        self.db = db

    def load(self) -> int:
        """Read identities and aliases into memory. Returns the identity count."""
        identities = self.db.fetch_all(
            "SELECT key, display_name, principal_name, given_name, family_name, "
            "email, employee_id, enabled FROM identities",
        )
        for row in identities:
            self.add_identity(Identity(**row), with_default_aliases=False)
        aliases = self.db.fetch_all(
            "SELECT identity_key, kind, value, original_value, discovered_from, created_at "
            "FROM identity_aliases",
        )
        for row in aliases:
            super().add_alias(Alias(**{**row, "kind": AliasKind(row["kind"])}))
        logger.info(
            "Loaded %d identities and %d aliases", len(identities), len(aliases),
            extra={"records": len(identities)},
        )
        return len(identities)

    def upsert_identities(self, identities: Iterable[Identity]) -> int:
        """Store directory entries along with their default aliases."""
        identities = list(identities)
        rows = [
            (i.key, i.display_name, i.principal_name, i.given_name, i.family_name,
             i.email, i.employee_id, i.enabled)
            for i in identities
        ]
        with self.db.transaction() as cur:
            count = self.db.upsert_batch(
                cur, "identities",
                ["key", "display_name", "principal_name", "given_name", "family_name",
                 "email", "employee_id", "enabled"],
                rows,
                conflict_columns=["key"],
                update_columns=["display_name", "principal_name", "given_name",
                                "family_name", "email", "employee_id", "enabled"],
            )
        for identity in identities:
            self.add_identity(identity)
        return count

    def add_alias(self, alias: Alias) -> bool:
        if self.find_by_key(alias.identity_key) is None or self.find_by_alias(alias.value) is not None:
            return super().add_alias(alias)
        # Persist first so memory never holds an alias the table lacks.
        with self.db.transaction() as cur:
            cur.execute(
                """INSERT INTO identity_aliases
                   (value, identity_key, kind, original_value, discovered_from, created_at)
                   VALUES (%s, %s, %s, %s, %s, %s)
                   ON CONFLICT (value) DO NOTHING""",
                (
                    alias.value, alias.identity_key, alias.kind.value,
                    alias.original_value, alias.discovered_from, alias.created_at,
                ),
            )
        return super().add_alias(alias)


def open_directory(db: Optional[Database]) -> InMemoryIdentityDirectory:
    """Load the PostgreSQL directory, or an empty in-memory one without a database."""
    if db is None:
        return InMemoryIdentityDirectory()
    directory = PostgresIdentityDirectory(db)
    directory.load()
    return directory
