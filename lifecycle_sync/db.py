"""Database helpers: connection pool, transactions, batch upserts, schema setup."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from importlib import resources
from typing import Any, Generator, Optional, Sequence

import psycopg2
import psycopg2.extras
import psycopg2.pool

from lifecycle_sync.config import DatabaseConfig

logger = logging.getLogger("lifecycle_sync.db")


class Database:
    """Thin wrapper around a ThreadedConnectionPool with upsert helpers."""

    def __init__(self, config: DatabaseConfig) -> None:
        self._pool = psycopg2.pool.ThreadedConnectionPool(
            minconn=config.min_connections,
            maxconn=config.max_connections,
            dsn=config.url,
        )

    def close(self) -> None:
        self._pool.closeall()

    @contextmanager
    def connection(self) -> Generator:
        conn = self._pool.getconn()
        try:
            yield conn
        finally:
            self._pool.putconn(conn)

    @contextmanager
    def transaction(self, cursor_factory=None) -> Generator:
        """Yield a cursor inside an auto-commit/rollback transaction."""
        with self.connection() as conn:
            try:
                with conn.cursor(cursor_factory=cursor_factory) as cur:
                    yield cur
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def upsert_batch(
        self,
        cur,
        table: str,
        columns: list[str],
        rows: Sequence[tuple],
        conflict_columns: list[str],
        update_columns: list[str],
    ) -> int:
        """Bulk upsert using execute_values with ON CONFLICT DO UPDATE.

        Returns the number of rows affected.
        """
        if not rows:
            return 0

        col_list = ", ".join(columns)
        conflict_list = ", ".join(conflict_columns)
        set_clauses = ", ".join(
            f"{c} = EXCLUDED.{c}" for c in update_columns
        )
        set_clauses += ", updated_at = NOW()"

        sql = (
            f"INSERT INTO {table} ({col_list}) VALUES %s "
            f"ON CONFLICT ({conflict_list}) DO UPDATE SET {set_clauses}"
        )

        psycopg2.extras.execute_values(cur, sql, rows, page_size=500)
        return cur.rowcount

    def fetch_all(self, sql: str, params: Optional[Sequence[Any]] = None) -> list[dict[str, Any]]:
        """Run a SELECT and return rows as dicts."""
        with self.transaction(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            cur.execute(sql, params)
            return [dict(row) for row in cur.fetchall()]

    def apply_schema(self, sql: Optional[str] = None) -> None:
        """Create tables from the bundled schema.sql (idempotent)."""
        if sql is None:
            sql = resources.files("lifecycle_sync").joinpath("schema.sql").read_text(encoding="utf-8")
        with self.transaction() as cur:
            cur.execute(sql)
        logger.info("Schema applied")
