"""Precomputed indicator cache.

Computes a standard catalogue of indicator configurations for an
(asset, timeframe) pair and upserts every point into ``indicator_cache``.
The newest point of each series is mirrored into Redis for latest-value
lookups.

Rows are keyed by (asset, timeframe, indicator_type, indicator_params,
timestamp). Parameters are serialized with sorted keys and integral floats
written as integers, so ``{"length": 14}`` and ``{"length": 14.0}`` map to
the same row. Assets are stored upper-cased.

Cache writes never fail the caller: compute or write errors are logged and
the remaining configurations still run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Sequence

import orjson
from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError

from app.storage import cache
from app.storage.database import IndicatorCacheTable, get_database
from core.indicators import calculate_indicator
from core.models.candle import Candle
from core.models.indicator import IndicatorResult

logger = logging.getLogger(__name__)

# Minimum candles before a precompute run is worthwhile
MIN_PRECOMPUTE_CANDLES = 50

# Upper bound on rows returned by one range query
MAX_RANGE_ROWS = 10_000

# Rows per INSERT statement (7 columns, well under the 32767 parameter cap)
UPSERT_CHUNK_SIZE = 1000

STANDARD_INDICATORS: list[dict[str, Any]] = [
    {"type": "RSI", "parameters": {"length": 14}},
    {"type": "RSI", "parameters": {"length": 9}},
    {"type": "RSI", "parameters": {"length": 21}},
    {"type": "MACD", "parameters": {"fast": 12, "slow": 26, "signal": 9}},
    {"type": "MACD", "parameters": {"fast": 8, "slow": 21, "signal": 5}},
    {"type": "SMA", "parameters": {"length": 20}},
    {"type": "SMA", "parameters": {"length": 50}},
    {"type": "EMA", "parameters": {"length": 9}},
    {"type": "EMA", "parameters": {"length": 20}},
    {"type": "EMA", "parameters": {"length": 21}},
    {"type": "EMA", "parameters": {"length": 50}},
    {"type": "Bollinger Bands", "parameters": {"length": 20, "stdDev": 2}},
    {"type": "Stochastic", "parameters": {"k": 14, "smoothK": 1, "d": 3}},
    {"type": "ATR", "parameters": {"length": 14}},
    {"type": "VWAP", "parameters": {"resetDaily": 1}},
    {"type": "Rolling Up %", "parameters": {"length": 50}},
]

_STORE_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)


def canonical_params(parameters: Mapping[str, Any] | None) -> str:
    """Serialize parameters to their canonical cache-key form."""
    normalized = {}
    for key, value in (parameters or {}).items():
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        normalized[key] = value
    return orjson.dumps(normalized, option=orjson.OPT_SORT_KEYS).decode()


def _to_datetime(timestamp_ms: int) -> datetime:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)


def _to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _row_to_result(timestamp: datetime, value: Any, values: Any) -> IndicatorResult:
    return IndicatorResult(timestamp=_to_ms(timestamp), value=value, values=values)


class IndicatorCacheRepository:
    """Precompute, query and expire cached indicator series."""

    def __init__(self, catalogue: Sequence[Mapping[str, Any]] | None = None):
        self.catalogue = list(catalogue or STANDARD_INDICATORS)

    async def precompute(self, asset: str, timeframe: str, candles: Sequence[Candle]) -> int:
        """
        Compute the catalogue over ``candles`` and upsert every point.

        Args:
            asset: Asset name (stored upper-cased)
            timeframe: Candle timeframe
            candles: Closed candles in ascending order

        Returns:
            Number of points written
        """
        asset = asset.upper()
        if len(candles) < MIN_PRECOMPUTE_CANDLES:
            logger.warning(
                f"Not enough candles to precompute {asset} {timeframe}: "
                f"{len(candles)} < {MIN_PRECOMPUTE_CANDLES}"
            )
            return 0

        start = time.perf_counter()
        saved = 0

        for config in self.catalogue:
            indicator_type = config["type"]
            params_key = canonical_params(config.get("parameters"))

            try:
                results = calculate_indicator(candles, config)
            except Exception:
                logger.error(f"Failed to compute {indicator_type} {params_key}", exc_info=True)
                continue

            if not results:
                continue

            try:
                saved += await self._upsert(asset, timeframe, indicator_type, params_key, results)
            except _STORE_ERRORS as e:
                logger.warning(f"Failed to store {indicator_type} {params_key} for {asset} {timeframe}: {e}")
                continue

            await cache.set_json(
                cache.indicator_latest_key(asset, timeframe, indicator_type, params_key),
                results[-1].to_dict(),
                ttl=cache.INDICATOR_LATEST_TTL,
            )

        elapsed = (time.perf_counter() - start) * 1000
        logger.info(f"Precomputed {saved} indicator points for {asset} {timeframe} in {elapsed:.0f}ms")
        return saved

    async def _upsert(
        self,
        asset: str,
        timeframe: str,
        indicator_type: str,
        params_key: str,
        results: Sequence[IndicatorResult],
    ) -> int:
        async with get_database().session() as session:
            for i in range(0, len(results), UPSERT_CHUNK_SIZE):
                chunk = results[i:i + UPSERT_CHUNK_SIZE]
                rows = [
                    {
                        "asset": asset,
                        "timeframe": timeframe,
                        "indicator_type": indicator_type,
                        "indicator_params": params_key,
                        "timestamp": _to_datetime(r.timestamp),
                        "value": r.value,
                        "values": r.values,
                    }
                    for r in chunk
                ]
                stmt = insert(IndicatorCacheTable).values(rows)
                stmt = stmt.on_conflict_do_update(
                    constraint="uq_indicator_cache_key",
                    set_={
                        "value": stmt.excluded["value"],
                        "values": stmt.excluded["values"],
                        "created_at": datetime.now(timezone.utc),
                    },
                )
                await session.execute(stmt)
        return len(results)

    async def get_range(
        self,
        asset: str,
        timeframe: str,
        indicator_type: str,
        parameters: Mapping[str, Any] | None = None,
        start_ms: int | None = None,
        end_ms: int | None = None,
    ) -> list[IndicatorResult]:
        """
        Cached points in ascending time order, at most 10 000 rows.

        Read failures are logged and return an empty list.
        """
        table = IndicatorCacheTable
        stmt = select(table.timestamp, table.value, table.values).where(
            table.asset == asset.upper(),
            table.timeframe == timeframe,
            table.indicator_type == indicator_type,
            table.indicator_params == canonical_params(parameters),
        )
        if start_ms is not None:
            stmt = stmt.where(table.timestamp >= _to_datetime(start_ms))
        if end_ms is not None:
            stmt = stmt.where(table.timestamp <= _to_datetime(end_ms))
        stmt = stmt.order_by(table.timestamp.asc()).limit(MAX_RANGE_ROWS)

        try:
            async with get_database().session() as session:
                result = await session.execute(stmt)
                rows = result.all()
        except _STORE_ERRORS as e:
            logger.error(f"Failed to read cached {indicator_type} for {asset} {timeframe}: {e}")
            return []

        return [_row_to_result(ts, value, values) for ts, value, values in rows]

    async def get_latest(
        self,
        asset: str,
        timeframe: str,
        indicator_type: str,
        parameters: Mapping[str, Any] | None = None,
    ) -> IndicatorResult | None:
        """Newest cached point: Redis when warm, otherwise Postgres."""
        asset = asset.upper()
        params_key = canonical_params(parameters)
        key = cache.indicator_latest_key(asset, timeframe, indicator_type, params_key)

        hit = await cache.get_json(key)
        if hit is not None:
            return IndicatorResult(
                timestamp=hit["timestamp"],
                value=hit.get("value"),
                values=hit.get("values"),
            )

        table = IndicatorCacheTable
        stmt = (
            select(table.timestamp, table.value, table.values)
            .where(
                table.asset == asset,
                table.timeframe == timeframe,
                table.indicator_type == indicator_type,
                table.indicator_params == params_key,
            )
            .order_by(table.timestamp.desc())
            .limit(1)
        )

        try:
            async with get_database().session() as session:
                result = await session.execute(stmt)
                row = result.first()
        except _STORE_ERRORS as e:
            logger.error(f"Failed to read latest {indicator_type} for {asset} {timeframe}: {e}")
            return None

        if row is None:
            return None

        latest = _row_to_result(*row)
        await cache.set_json(key, latest.to_dict(), ttl=cache.INDICATOR_LATEST_TTL)
        return latest

    async def cleanup(self, retention_days: int = 30) -> int:
        """
        Delete cached points older than the retention window.

        Returns:
            Number of rows deleted (0 on failure)
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        try:
            async with get_database().session() as session:
                result = await session.execute(
                    delete(IndicatorCacheTable).where(IndicatorCacheTable.timestamp < cutoff)
                )
                deleted = result.rowcount or 0
        except _STORE_ERRORS as e:
            logger.error(f"Indicator cache cleanup failed: {e}")
            return 0

        if deleted:
            logger.info(f"Cleaned up {deleted} indicator cache rows older than {retention_days} days")
        return deleted
