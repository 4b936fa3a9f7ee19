"""Tests for the PostgreSQL store against a recording database double."""
from __future__ import annotations

from contextlib import contextmanager

import psycopg2
import psycopg2.extras
import pytest

from lifecycle_sync.db import Database
from lifecycle_sync.identity_directory import Alias, Identity
from lifecycle_sync.models import (
    AliasKind,
    Application,
    DataSourceType,
    SyncJob,
    SyncJobStatus,
)
from lifecycle_sync.pg_store import PostgresIdentityDirectory, PostgresStore


class FakeCursor:
    def __init__(self, error=None):
        self.executed = []
        self.error = error

    def execute(self, sql, params=None):
        if self.error is not None:
            raise self.error
        self.executed.append((" ".join(sql.split()), params))


class FakeDatabase:
    """Records upserts and statements; answers queries from canned rows."""

    def __init__(self, rows=None):
        self.rows = rows or {}
        self.cursor = FakeCursor()
        self.upserts = []
        self.queries = []
        self.closed = False

    @contextmanager
    def transaction(self):
        yield self.cursor

    def upsert_batch(self, cur, table, columns, rows, conflict_columns, update_columns):
        self.upserts.append((table, list(columns), list(rows), conflict_columns, update_columns))
        return len(rows)

    def fetch_all(self, sql, params=None):
        self.queries.append((sql, params))
        for table, rows in self.rows.items():
            if f"FROM {table}" in sql:
                return rows
        return []

    def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_job_upsert_updates_everything_but_identity(clock):
    db = FakeDatabase()
    job = SyncJob(id="j1", source=DataSourceType.SERVICENOW, start_time=clock.now,
                  status=SyncJobStatus.COMPLETED, records_processed=4)

    await PostgresStore(db).upsert_job(job)

    ((table, columns, rows, conflict, update),) = db.upserts
    assert table == "sync_jobs"
    assert conflict == ["id"]
    assert "id" not in update and "source" not in update
    row = dict(zip(columns, rows[0]))
    assert row["status"] == "completed"
    assert row["records_processed"] == 4


@pytest.mark.asyncio
async def test_load_recent_jobs_passes_limit(clock):
    db = FakeDatabase({"sync_jobs": [{
        "id": "j1", "source": "azure_devops", "status": "failed", "start_time": clock.now,
        "end_time": None, "records_processed": None, "records_created": 0,
        "records_updated": 0, "error_count": 1, "error_message": "boom", "triggered_by": None,
    }]})

    (job,) = await PostgresStore(db).load_recent_jobs(limit=10)

    assert db.queries[0][1] == (10,)
    assert job.source == DataSourceType.AZURE_DEVOPS
    assert job.status == SyncJobStatus.FAILED
    assert job.records_processed == 0
    assert job.triggered_by == "System"


@pytest.mark.asyncio
async def test_applications_are_stored_as_json_payloads():
    db = FakeDatabase()
    app = Application(id="a1", name="Payroll", repository_url="https://git.example/payroll")

    count = await PostgresStore(db).upsert_applications([app])

    assert count == 1
    ((table, columns, rows, _, update),) = db.upserts
    assert table == "applications"
    assert update == ["name", "repository_url", "payload"]
    assert rows[0][3].adapted == app.to_dict()

    db.rows["applications"] = [{"payload": app.to_dict()}]
    assert await PostgresStore(db).load_applications() == [app]


@pytest.mark.asyncio
async def test_close_releases_pool():
    db = FakeDatabase()
    await PostgresStore(db).close()
    assert db.closed


class TestPostgresIdentityDirectory:
    def test_load_does_not_write_back(self, clock):
        db = FakeDatabase({
            "identities": [{
                "key": "u-jeff", "display_name": "Jeff Jones", "principal_name": "jeff.jones@corp.example",
                "given_name": "Jeff", "family_name": "Jones", "email": None,
                "employee_id": None, "enabled": True,
            }],
            "identity_aliases": [{
                "identity_key": "u-jeff", "kind": "name", "value": "jones, jeffery (j)",
                "original_value": "Jones, Jeffery (J)", "discovered_from": "servicenow",
                "created_at": clock.now,
            }],
        })
        directory = PostgresIdentityDirectory(db)

        assert directory.load() == 1
        assert directory.find_by_alias("jones, jeffery (j)").key == "u-jeff"
        assert db.cursor.executed == []

    def test_new_alias_is_written_through_once(self):
        db = FakeDatabase()
        directory = PostgresIdentityDirectory(db)
        directory.add_identity(
            Identity(key="u-maria", display_name="Maria Garcia", principal_name="maria@corp.example"),
            with_default_aliases=False,
        )
        alias = Alias(identity_key="u-maria", kind=AliasKind.NAME,
                      value="garcia, maria", original_value="Garcia, Maria")

        assert directory.add_alias(alias) is True
        assert directory.add_alias(alias) is False

        ((sql, params),) = db.cursor.executed
        assert sql.startswith("INSERT INTO identity_aliases")
        assert params[:3] == ("garcia, maria", "u-maria", "name")

    def test_failed_alias_write_leaves_memory_untouched(self):
        db = FakeDatabase()
        db.cursor = FakeCursor(error=psycopg2.OperationalError("connection lost"))
        directory = PostgresIdentityDirectory(db)
        directory.add_identity(
            Identity(key="u-maria", display_name="Maria Garcia", principal_name="maria@corp.example"),
            with_default_aliases=False,
        )
        alias = Alias(identity_key="u-maria", kind=AliasKind.NAME,
                      value="garcia, maria", original_value="Garcia, Maria")

        with pytest.raises(psycopg2.OperationalError):
            directory.add_alias(alias)

        assert directory.find_by_alias("garcia, maria") is None
        assert directory.aliases_for("u-maria") == []


class FakeConnection:
    def __init__(self, rows):
        self.rows = rows
        self.cursor_factories = []
        self.committed = False

    @contextmanager
    def cursor(self, cursor_factory=None):
        self.cursor_factories.append(cursor_factory)
        yield SelectCursor(self.rows)

    def commit(self):
        self.committed = True

    def rollback(self):
        pass


class SelectCursor:
    def __init__(self, rows):
        self.rows = rows
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def fetchall(self):
        return self.rows


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.returned = 0

    def getconn(self):
        return self.conn

    def putconn(self, conn):
        self.returned += 1


def test_fetch_all_reads_rows_as_dicts():
    conn = FakeConnection([{"key": "u-jeff", "enabled": True}])
    db = Database.__new__(Database)
    db._pool = FakePool(conn)

    rows = db.fetch_all("SELECT key, enabled FROM identities")

    assert rows == [{"key": "u-jeff", "enabled": True}]
    assert conn.cursor_factories == [psycopg2.extras.RealDictCursor]
    assert conn.committed
    assert db._pool.returned == 1
