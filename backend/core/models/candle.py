"""Tick and candle data models.

These models use:
- @dataclass(slots=True) for minimal memory footprint
- float for prices (cents / 100) and int epoch milliseconds for time

Ticks arrive from the quote feed in chronological order per market.
Candles are built from them by core.candle_builder.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True, frozen=True)
class Tick:
    """A single timestamped quote for a binary-outcome market.

    All quotes are in cents on a 0-100 scale.
    """

    t: int  # epoch ms
    yes_bid: float
    yes_ask: float
    no_bid: float
    no_ask: float

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Tick:
        """Build a tick from the stored short-key form ``{t, yb, ya, nb, na}``."""
        return cls(
            t=int(row["t"]),
            yes_bid=float(row.get("yb") or 0),
            yes_ask=float(row.get("ya") or 0),
            no_bid=float(row.get("nb") or 0),
            no_ask=float(row.get("na") or 0),
        )

    def to_row(self) -> dict[str, float | int]:
        return {
            "t": self.t,
            "yb": self.yes_bid,
            "ya": self.yes_ask,
            "nb": self.no_bid,
            "na": self.no_ask,
        }


@dataclass(slots=True)
class Candle:
    """OHLCV candle.

    ``timestamp`` is the bucket start in epoch ms; ``volume`` is the
    number of ticks that fell in the bucket, not currency volume.
    """

    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @property
    def is_bullish(self) -> bool:
        """Close at or above open (counted as an up candle)."""
        return self.close >= self.open

    def to_dict(self) -> dict[str, float | int]:
        return {
            "timestamp": self.timestamp,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


@dataclass(slots=True)
class CandleBuffer:
    """Bounded history of closed candles for one (symbol, timeframe) stream.

    Timestamps are strictly increasing. A candle with the same timestamp as
    the last one replaces it; older timestamps are ignored.
    """

    symbol: str
    timeframe: str
    max_size: int = 500
    _candles: list[Candle] = field(default_factory=list)

    def add(self, candle: Candle) -> None:
        """Add a candle to the buffer, maintaining max size."""
        if self._candles and candle.timestamp <= self._candles[-1].timestamp:
            if candle.timestamp == self._candles[-1].timestamp:
                self._candles[-1] = candle
            return

        self._candles.append(candle)
        if len(self._candles) > self.max_size:
            self._candles = self._candles[-self.max_size:]

    def latest(self, limit: int | None = None) -> list[Candle]:
        """Get a copy of the most recent candles, oldest first."""
        if limit is not None and limit <= 0:
            return []
        if limit is None or limit >= len(self._candles):
            return list(self._candles)
        return self._candles[-limit:]

    @property
    def candles(self) -> list[Candle]:
        return self._candles

    def __len__(self) -> int:
        return len(self._candles)

    def __getitem__(self, index: int) -> Candle:
        return self._candles[index]
