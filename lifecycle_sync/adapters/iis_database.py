"""IIS request-log warehouse usage source (PostgreSQL)."""

from __future__ import annotations

import logging
from contextlib import closing
from typing import Optional

import psycopg2

from lifecycle_sync.adapters.base import UsageSource
from lifecycle_sync.config import IisDatabaseConfig
from lifecycle_sync.models import ConnectionResult, SourceResult, UsageMetrics

logger = logging.getLogger("lifecycle_sync.adapters.iis_database")

USAGE_SQL = """
    SELECT application_id,
           COUNT(*)                 AS requests,
           COUNT(DISTINCT username) AS unique_users,
           MAX(logged_at)           AS last_activity
    FROM iis_requests
    WHERE logged_at >= NOW() - make_interval(days => %s)
    GROUP BY application_id
"""


class IisUsageAdapter(UsageSource):
    def __init__(self, config: IisDatabaseConfig) -> None:
        self.config = config

    def _connect(self):
        return closing(psycopg2.connect(self.config.url, connect_timeout=10))

    async def test_connection(self) -> ConnectionResult:
        def probe() -> Optional[str]:
            with self._connect() as conn, conn.cursor() as cur:
                cur.execute("SELECT version()")
                return cur.fetchone()[0]
        return await self._timed_probe(probe)

    async def get_usage_metrics(self) -> SourceResult[dict[str, UsageMetrics]]:
        return await self._call(self._get_usage_metrics)

    def _get_usage_metrics(self) -> dict[str, UsageMetrics]:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(USAGE_SQL, (self.config.lookback_days,))
            rows = cur.fetchall()
        metrics = {
            str(app_id): UsageMetrics(
                requests=request_count,
                unique_users=unique_users,
                last_activity=last_activity,
                period_days=self.config.lookback_days,
            )
            for app_id, request_count, unique_users, last_activity in rows
        }
        logger.info("Fetched usage for %d applications", len(metrics), extra={"records": len(metrics)})
        return metrics
