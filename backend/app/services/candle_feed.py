"""Live candle feed.

Turns incoming quote ticks into closed candles for every configured
timeframe and both price sides, keeping a bounded history per
(symbol, timeframe, side) stream. This is the strategy monitor's candle
source.

Only closed candles are stored or handed to callbacks; the forming candle
of each stream stays inside its CandleBuilder.

Usage:
    feed = CandleFeed(["1m", "15m"], max_candles=500)
    feed.on_closed_candle(my_callback)

    await feed.ingest("btcusdt", tick)
    candles = feed.get_candles("btcusdt", "15m", "UP")
"""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Iterable

from core.candle_builder import CandleBuilder, is_long_direction, timeframe_to_ms
from core.models.candle import Candle, CandleBuffer, Tick

logger = logging.getLogger(__name__)

LONG_SIDE = "long"
SHORT_SIDE = "short"

ClosedCandleCallback = Callable[[str, str, str, Candle], Awaitable[None]]

StreamKey = tuple[str, str, str]  # (symbol, timeframe, side)


def side_for(direction: str) -> str:
    return LONG_SIDE if is_long_direction(direction) else SHORT_SIDE


class CandleFeed:
    """Bounded candle history per (symbol, timeframe, side), fed by ticks."""

    def __init__(self, timeframes: Iterable[str], max_candles: int = 500):
        self.timeframes = list(timeframes)
        for timeframe in self.timeframes:
            timeframe_to_ms(timeframe)  # Validate early
        self.max_candles = max_candles

        self._builders: dict[StreamKey, CandleBuilder] = {}
        self._buffers: dict[StreamKey, CandleBuffer] = {}
        self._callbacks: list[ClosedCandleCallback] = []
        self._last_tick: dict[str, int] = {}

        logger.info(f"CandleFeed initialized for timeframes: {self.timeframes}")

    def on_closed_candle(self, callback: ClosedCandleCallback) -> None:
        """Register an async callback ``(symbol, timeframe, side, candle)``."""
        self._callbacks.append(callback)

    def _ensure_streams(self, symbol: str) -> None:
        for timeframe in self.timeframes:
            for side, direction in ((LONG_SIDE, "UP"), (SHORT_SIDE, "DOWN")):
                key = (symbol, timeframe, side)
                if key not in self._builders:
                    self._builders[key] = CandleBuilder(timeframe, direction)
                    self._buffers[key] = CandleBuffer(
                        symbol=symbol, timeframe=timeframe, max_size=self.max_candles
                    )

    def _store(self, key: StreamKey, candle: Candle) -> None:
        self._buffers[key].add(candle)

    async def _notify(self, closed: list[tuple[StreamKey, Candle]]) -> None:
        for (symbol, timeframe, side), candle in closed:
            for callback in self._callbacks:
                try:
                    await callback(symbol, timeframe, side, candle)
                except Exception as e:
                    logger.error(f"Closed candle callback error: {e}")

    async def ingest(self, symbol: str, tick: Tick) -> list[tuple[StreamKey, Candle]]:
        """
        Feed one tick for a symbol.

        Ticks older than the last accepted tick for the symbol are dropped.

        Returns:
            The (stream, candle) pairs closed by this tick
        """
        last = self._last_tick.get(symbol)
        if last is not None and tick.t < last:
            logger.debug(f"Dropping out-of-order tick for {symbol}: {tick.t} < {last}")
            return []
        self._last_tick[symbol] = tick.t

        self._ensure_streams(symbol)
        closed: list[tuple[StreamKey, Candle]] = []
        for timeframe in self.timeframes:
            for side in (LONG_SIDE, SHORT_SIDE):
                key = (symbol, timeframe, side)
                for candle in self._builders[key].add_tick(tick):
                    self._store(key, candle)
                    closed.append((key, candle))

        if closed:
            await self._notify(closed)
        return closed

    async def close_due(self, now_ms: int | None = None) -> int:
        """
        Close every forming candle whose bucket has ended.

        Called at the start of each monitor cycle so the candle ending at
        the minute boundary is visible without waiting for the next tick.

        Returns:
            Number of candles closed
        """
        if now_ms is None:
            now_ms = int(time.time() * 1000)

        closed: list[tuple[StreamKey, Candle]] = []
        for key, builder in self._builders.items():
            candle = builder.close_due(now_ms)
            if candle is not None:
                self._store(key, candle)
                closed.append((key, candle))

        if closed:
            await self._notify(closed)
        return len(closed)

    def get_candles(
        self,
        symbol: str,
        timeframe: str,
        direction: str = "UP",
        limit: int | None = None,
    ) -> list[Candle]:
        """Closed candles for a stream, oldest first (empty if unknown)."""
        buffer = self._buffers.get((symbol, timeframe, side_for(direction)))
        if buffer is None:
            return []
        return buffer.latest(limit)

    def add_candle(self, symbol: str, timeframe: str, direction: str, candle: Candle) -> None:
        """Insert a closed candle directly (history loaded from elsewhere)."""
        self._ensure_streams(symbol)
        key = (symbol, timeframe, side_for(direction))
        if key not in self._buffers:
            self._buffers[key] = CandleBuffer(symbol=symbol, timeframe=timeframe, max_size=self.max_candles)
        self._store(key, candle)

    @property
    def symbols(self) -> list[str]:
        return sorted({key[0] for key in self._buffers})

    def stats(self) -> dict[str, int]:
        return {
            "symbols": len(self.symbols),
            "streams": len(self._buffers),
            "candles": sum(len(b) for b in self._buffers.values()),
        }
