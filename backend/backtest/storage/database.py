"""PostgreSQL connection pool for backtests.

A single asyncpg pool used to read recorded price events. Backtests never
write to the database.
"""

from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger(__name__)


class BacktestDatabase:
    """Asyncpg connection pool for backtest operations."""

    def __init__(self, database_url: str, min_size: int = 1, max_size: int = 3):
        self._database_url = database_url
        self._min_size = min_size
        self._max_size = max_size
        self._pool: asyncpg.Pool | None = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._pool

    async def init(self) -> None:
        """Create the connection pool and verify connectivity."""
        self._pool = await asyncpg.create_pool(
            self._database_url,
            min_size=self._min_size,
            max_size=self._max_size,
            command_timeout=120,
        )
        async with self._pool.acquire() as conn:
            await conn.execute("SELECT 1")
        logger.info("Backtest database connected")

    async def close(self) -> None:
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
