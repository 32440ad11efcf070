"""
SafetyNet — Postgres Client

Async connection pooling for the governance store, membership tables,
and the audit log.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

import asyncpg
import structlog

if TYPE_CHECKING:
    from safetynet.config import PostgresConfig

logger = structlog.get_logger()


class PostgresClient:
    """
    Async Postgres client with connection pooling.
    Systems acquire connections from ``pool`` and own their own SQL.
    """

    def __init__(self, config: PostgresConfig) -> None:
        self._config = config
        self._pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        """Create the connection pool."""
        self._pool = await asyncpg.create_pool(
            dsn=self._config.dsn,
            min_size=2,
            max_size=self._config.pool_size,
            ssl="require" if self._config.ssl else None,
        )
        logger.info(
            "postgres_connected",
            host=self._config.host,
            database=self._config.database,
        )

    async def close(self) -> None:
        """Close the connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("postgres_disconnected")

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Postgres client not connected. Call connect() first.")
        return self._pool

    async def execute_script(self, sql: str) -> None:
        """Run a multi-statement DDL script, one statement at a time."""
        async with self.pool.acquire() as conn:
            for statement in sql.split(";"):
                stmt = statement.strip()
                if stmt:
                    await conn.execute(stmt)

    async def health_check(self) -> dict[str, Any]:
        """Check connectivity."""
        start = time.monotonic()
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return {
                "status": "connected",
                "latency_ms": int((time.monotonic() - start) * 1000),
            }
        except Exception as e:
            logger.error("postgres_health_check_failed", error=str(e))
            return {"status": "disconnected", "error": str(e)}
