"""
PostgreSQL Client

Thin asyncpg pool wrapper shared by the order and payment services.
Keeps the query/query_row/execute surface the repositories are written
against and retries the initial connect with tenacity.

Usage:
    db = AsyncPostgresClient("payment_service", config=settings.infrastructure)
    await db.connect()
    row = await db.query_row(f"SELECT document FROM {db.schema}.orders WHERE order_id = $1", [order_id])
"""

import logging
from typing import Any, Dict, List, Optional

import asyncpg
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import InfraConfig

logger = logging.getLogger(__name__)


class AsyncPostgresClient:
    """
    asyncpg connection pool with a dict-returning query API.

    Rows come back as plain dicts so repositories never depend on
    asyncpg.Record directly.
    """

    def __init__(self, service_name: str, config: Optional[InfraConfig] = None):
        self.service_name = service_name
        self.config = config or InfraConfig.from_env()
        self.schema = self.config.postgres_schema
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((OSError, asyncpg.PostgresError)),
        reraise=True,
    )
    async def connect(self) -> None:
        """Create the pool (idempotent)"""
        if self._pool is not None:
            return
        self._pool = await asyncpg.create_pool(
            dsn=self.config.postgres_dsn,
            min_size=self.config.postgres_min_pool,
            max_size=self.config.postgres_max_pool,
        )
        async with self._pool.acquire() as conn:
            await conn.execute(f"CREATE SCHEMA IF NOT EXISTS {self.schema}")
        logger.info(
            f"PostgreSQL pool ready for {self.service_name}: "
            f"{self.config.postgres_host}:{self.config.postgres_port}/{self.config.postgres_db}"
        )

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        # Pool is long-lived; close() releases it at shutdown
        return False

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError(f"PostgreSQL pool for {self.service_name} is not connected")
        return self._pool

    async def health_check(self) -> Dict[str, Any]:
        """Check database health"""
        try:
            async with self._require_pool().acquire() as conn:
                await conn.fetchval("SELECT 1")
            return {"healthy": True}
        except Exception as e:
            logger.warning(f"PostgreSQL health check failed: {e}")
            return {"healthy": False, "error": str(e)}

    async def query(self, sql: str, params: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        """Execute query and return results"""
        async with self._require_pool().acquire() as conn:
            rows = await conn.fetch(sql, *(params or []))
        return [dict(r) for r in rows]

    async def query_row(self, sql: str, params: Optional[List[Any]] = None) -> Optional[Dict[str, Any]]:
        """Execute query and return single row"""
        async with self._require_pool().acquire() as conn:
            row = await conn.fetchrow(sql, *(params or []))
        return dict(row) if row is not None else None

    async def execute(self, sql: str, params: Optional[List[Any]] = None) -> int:
        """Execute statement, return affected row count"""
        async with self._require_pool().acquire() as conn:
            status = await conn.execute(sql, *(params or []))
        # asyncpg status strings look like "UPDATE 1" / "DELETE 0"
        try:
            return int(status.split()[-1])
        except (ValueError, IndexError):
            return 0

    async def close(self):
        """Close the pool"""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info(f"PostgreSQL pool closed for {self.service_name}")

