"""Candle builder: aggregates raw quote ticks into fixed-interval candles.

Bucketing rules:
- Bucket start = floor(t / interval) * interval, anchored on the first tick
- A tick at or past bucket_start + interval closes the open candle and
  advances the boundary one interval at a time; empty buckets are skipped,
  never synthesized
- Ticks whose derived price is exactly 0 are treated as missing quotes

The long side prices off the yes-bid, the short side off the no-bid, both
converted from cents to a 0-1 price.
"""

from __future__ import annotations

import logging
from typing import Iterable

from core.models.candle import Candle, Tick

logger = logging.getLogger(__name__)

# Timeframe to milliseconds mapping
TIMEFRAME_MS = {
    "1m": 60_000,
    "3m": 180_000,
    "5m": 300_000,
    "15m": 900_000,
    "30m": 1_800_000,
    "1h": 3_600_000,
    "4h": 14_400_000,
    "1d": 86_400_000,
}

LONG_DIRECTIONS = frozenset({"up", "long", "yes"})


def timeframe_to_ms(timeframe: str) -> int:
    """Convert a timeframe label (e.g. ``15m``) to milliseconds.

    Raises:
        ValueError: If the timeframe is not supported.
    """
    try:
        return TIMEFRAME_MS[timeframe]
    except KeyError:
        raise ValueError(
            f"Unsupported timeframe '{timeframe}'. "
            f"Available: {', '.join(TIMEFRAME_MS)}"
        ) from None


def is_long_direction(direction: str) -> bool:
    return direction.lower() in LONG_DIRECTIONS


def tick_price(tick: Tick, long_side: bool) -> float:
    """Price of a tick for one side, as a 0-1 value."""
    cents = tick.yes_bid if long_side else tick.no_bid
    return cents / 100


class CandleBuilder:
    """Incremental candle builder for one symbol, timeframe, and side.

    Usage:
        builder = CandleBuilder("15m", "UP")
        for tick in ticks:
            for candle in builder.add_tick(tick):
                handle_closed(candle)

    Only closed candles are returned. The forming candle is available
    through ``current`` for inspection but is never handed downstream.
    """

    def __init__(self, timeframe: str, direction: str = "UP"):
        self.timeframe = timeframe
        self.interval_ms = timeframe_to_ms(timeframe)
        self.long_side = is_long_direction(direction)

        self._current: Candle | None = None
        self._bucket_start: int | None = None

    @property
    def current(self) -> Candle | None:
        """The open (still forming) candle, if any."""
        return self._current

    def add_tick(self, tick: Tick) -> list[Candle]:
        """Add a tick and return any candles it closed.

        Args:
            tick: Next tick in chronological order

        Returns:
            Closed candles, oldest first (empty if none closed)
        """
        if self._bucket_start is None:
            self._bucket_start = (tick.t // self.interval_ms) * self.interval_ms

        price = tick_price(tick, self.long_side)
        if price == 0:
            return []

        closed: list[Candle] = []
        while tick.t >= self._bucket_start + self.interval_ms:
            if self._current is not None:
                closed.append(self._current)
                self._current = None
            self._bucket_start += self.interval_ms

        candle = self._current
        if candle is None:
            self._current = Candle(
                timestamp=self._bucket_start,
                open=price,
                high=price,
                low=price,
                close=price,
                volume=1,
            )
        else:
            candle.high = max(candle.high, price)
            candle.low = min(candle.low, price)
            candle.close = price
            candle.volume += 1

        return closed

    def close_due(self, now_ms: int) -> Candle | None:
        """Close the open candle if its bucket has ended by ``now_ms``.

        Called on a timer so the candle ending at a boundary becomes visible
        even when no later tick has arrived yet.
        """
        candle = self._current
        if candle is None or now_ms < candle.timestamp + self.interval_ms:
            return None
        self._current = None
        return candle

    def flush(self) -> Candle | None:
        """Close and return the open candle regardless of time."""
        candle = self._current
        self._current = None
        return candle

    def reset(self) -> None:
        self._current = None
        self._bucket_start = None


def build_candles(
    ticks: Iterable[Tick],
    timeframe: str,
    direction: str = "UP",
) -> list[Candle]:
    """Build candles from a historical batch of ticks.

    The trailing bucket is included: a historical batch has no later tick
    to close it.

    Args:
        ticks: Ticks in chronological order
        timeframe: Candle interval (e.g. ``15m``)
        direction: Strategy direction selecting the price side

    Returns:
        Candles in ascending timestamp order
    """
    builder = CandleBuilder(timeframe, direction)
    candles: list[Candle] = []
    count = 0

    for tick in ticks:
        count += 1
        candles.extend(builder.add_tick(tick))

    last = builder.flush()
    if last is not None:
        candles.append(last)

    logger.debug(f"Built {len(candles)} {timeframe} candles from {count} ticks")
    return candles
