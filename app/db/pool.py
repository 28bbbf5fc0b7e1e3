# app/db/pool.py
"""
PostgreSQL connection pool for the quote lifecycle engine.

One AsyncConnectionPool per process, opened by the FastAPI lifespan or by
the standalone worker. Connections run in autocommit so every conditional
UPDATE commits on its own; multi-statement work (revision application,
notification batches) goes through transaction().
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

CLOSE_TIMEOUT_SECONDS = 30.0


async def _probe(conn: psycopg.AsyncConnection) -> None:
    """Round-trip a trivial query; raises if the connection is unusable."""
    async with conn.cursor() as cur:
        await cur.execute("SELECT 1 AS ok")
        row = await cur.fetchone()
    if not row or row.get("ok") != 1:
        raise RuntimeError(f"Unexpected probe result: {row!r}")


class DatabasePoolManager:
    """
    Owns the process-wide pool: open, hand out connections, report health,
    close on shutdown.
    """

    def __init__(self):
        self.pool: AsyncConnectionPool | None = None
        self._initialized = False
        self._closed = False

    async def initialize(self) -> None:
        """Open the pool and verify one connection before serving traffic."""
        if self._initialized:
            logger.warning("Database pool already initialized")
            return

        if self._closed:
            raise RuntimeError("Cannot reinitialize closed pool")

        pool_config = settings.get_db_pool_config()
        logger.info("Opening database pool", **pool_config)

        self.pool = AsyncConnectionPool(
            conninfo=settings.DATABASE_URL,
            open=False,
            name="quote-engine",
            check=AsyncConnectionPool.check_connection,
            configure=self._configure_connection,
            **pool_config,
        )

        try:
            await self.pool.open(wait=True)
            self._initialized = True

            async with self.connection() as conn:
                await _probe(conn)

        except Exception as e:
            logger.error("Failed to initialize database pool", error=str(e), error_type=type(e).__name__)
            self._initialized = False
            await self.pool.close()
            self.pool = None
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

        logger.info("Database pool ready")

    @staticmethod
    async def _configure_connection(conn: psycopg.AsyncConnection) -> None:
        """Session settings applied once to every new pooled connection."""
        conn.row_factory = dict_row
        await conn.set_autocommit(True)

        app_name = f"quote-engine-{settings.environment}"
        await conn.execute(sql.SQL("SET application_name = {}").format(sql.Literal(app_name)))
        await conn.execute("SET timezone = 'UTC'")
        await conn.execute(
            sql.SQL("SET statement_timeout = {}").format(
                sql.Literal(f"{int(settings.DB_STATEMENT_TIMEOUT_SECONDS)}s")
            )
        )

    async def close(self) -> None:
        """Close the pool, waiting up to CLOSE_TIMEOUT_SECONDS for checked-out connections."""
        if not self._initialized or self._closed:
            return

        self._initialized = False
        self._closed = True

        if self.pool is None:
            return

        try:
            await asyncio.wait_for(self.pool.close(), timeout=CLOSE_TIMEOUT_SECONDS)
            logger.info("Database pool closed")
        except TimeoutError:
            logger.warning("Database pool close timed out", timeout_seconds=CLOSE_TIMEOUT_SECONDS)

    def _ensure_open(self) -> AsyncConnectionPool:
        if self._closed:
            raise RuntimeError("Database pool is closed")
        if not self._initialized or self.pool is None:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")
        return self.pool

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """
        Borrow an autocommit connection.

        Usage:
            async with db_pool.connection() as conn:
                await conn.execute("UPDATE ...")
        """
        pool = self._ensure_open()
        async with pool.connection() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """
        Borrow a connection inside a transaction block.

        Commits on normal exit and rolls back on any exception. Raising
        psycopg.Rollback inside the block rolls back without propagating.
        """
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    async def health_check(self) -> dict[str, Any]:
        """Probe a pooled connection and report pool occupancy."""
        if self._closed:
            return {"healthy": False, "error": "Pool is closed", "service": "database_pool"}
        if not self._initialized or self.pool is None:
            return {"healthy": False, "error": "Pool not initialized", "service": "database_pool"}

        started = time.perf_counter()
        try:
            async with self.connection() as conn:
                await _probe(conn)
        except Exception as e:
            logger.error("Database pool health check failed", error=str(e))
            return {
                "healthy": False,
                "service": "database_pool",
                "error": str(e),
                "error_type": type(e).__name__,
            }

        stats = self.pool.get_stats()
        return {
            "healthy": True,
            "service": "database_pool",
            "connection_time_ms": round((time.perf_counter() - started) * 1000, 2),
            "pool_stats": {
                "pool_size": stats.get("pool_size", 0),
                "pool_available": stats.get("pool_available", 0),
                "requests_waiting": stats.get("requests_waiting", 0),
            },
        }


# Global pool instance
db_pool = DatabasePoolManager()


async def get_db_connection():
    """Get database connection from pool."""
    return db_pool.connection()


async def get_db_transaction():
    """Get database connection with transaction."""
    return db_pool.transaction()


async def db_health_check() -> dict[str, Any]:
    """Get database pool health status."""
    return await db_pool.health_check()
