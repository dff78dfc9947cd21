"""Tick data source for backtesting.

Reads recorded quote ticks from the ``price_events`` table via the shared
asyncpg pool. No app/ dependency.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol

import asyncpg
import orjson

from core.models.candle import Tick

logger = logging.getLogger(__name__)


class TickSource(Protocol):
    """Protocol for tick data access."""

    async def get_range(self, market_id: str, start: datetime, end: datetime) -> list[Tick]: ...


class PostgresTickSource:
    """Read ticks from PostgreSQL via a shared asyncpg pool.

    Each ``price_events`` row holds one market window with its quotes in a
    JSONB array of ``{t, yb, ya, nb, na}`` points.
    """

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def get_range(self, market_id: str, start: datetime, end: datetime) -> list[Tick]:
        """Fetch ticks inside ``[start, end]`` in ascending time order."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """SELECT prices
                   FROM price_events
                   WHERE market_id = $1
                     AND event_start >= $2
                     AND event_end <= $3
                   ORDER BY event_start ASC""",
                market_id,
                start,
                end,
            )

        start_ms = int(start.timestamp() * 1000)
        end_ms = int(end.timestamp() * 1000)

        ticks: list[Tick] = []
        for row in rows:
            prices = row["prices"]
            # asyncpg hands JSONB back as text without a registered codec
            if isinstance(prices, (str, bytes)):
                prices = orjson.loads(prices)
            for point in prices or []:
                if start_ms <= int(point["t"]) <= end_ms:
                    ticks.append(Tick.from_row(point))

        ticks.sort(key=lambda tick: tick.t)
        logger.info(f"Loaded {len(ticks):,} price points for {market_id}")
        return ticks
