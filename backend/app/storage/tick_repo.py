"""Tick repository over the recorded price_events table."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select

from app.storage.database import PriceEventTable, get_database
from core.models.candle import Tick

logger = logging.getLogger(__name__)


class TickRepository:
    """Read-only access to recorded quote ticks."""

    async def get_range(self, market_id: str, start: datetime, end: datetime) -> list[Tick]:
        """
        Load ticks for a market within ``[start, end]``.

        Event windows fully inside the range are fetched, their points are
        flattened, clipped to the range and sorted by time.

        Args:
            market_id: Market identifier
            start: Window start (timezone-aware)
            end: Window end (timezone-aware)

        Returns:
            Ticks in ascending time order
        """
        start_ms = int(start.timestamp() * 1000)
        end_ms = int(end.timestamp() * 1000)

        async with get_database().session() as session:
            stmt = (
                select(PriceEventTable.prices)
                .where(
                    PriceEventTable.market_id == market_id,
                    PriceEventTable.event_start >= start,
                    PriceEventTable.event_end <= end,
                )
                .order_by(PriceEventTable.event_start.asc())
            )
            result = await session.execute(stmt)
            rows = result.scalars().all()

        ticks = [
            Tick.from_row(point)
            for prices in rows
            for point in (prices or [])
            if start_ms <= int(point["t"]) <= end_ms
        ]
        ticks.sort(key=lambda tick: tick.t)

        logger.info(f"Loaded {len(ticks)} ticks for {market_id}")
        return ticks
