"""Engine exceptions.

Callers branch on these explicitly: an insufficient-data backtest is a
distinct outcome, not a degenerate result.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for market-signal engine errors."""


class InsufficientDataError(EngineError):
    """Not enough candles to run the requested computation."""

    def __init__(self, candles: int, required: int):
        self.candles = candles
        self.required = required
        super().__init__(
            f"Insufficient candle data ({candles} candles, need at least {required})"
        )


class NoPriceDataError(EngineError):
    """No ticks were found for the requested market and window."""


class StrategyConfigError(EngineError):
    """A strategy references sources or settings that cannot be resolved."""

    def __init__(self, strategy_id: str | None, message: str):
        self.strategy_id = strategy_id
        self.message = message
        if strategy_id:
            super().__init__(f"Strategy {strategy_id}: {message}")
        else:
            super().__init__(message)
