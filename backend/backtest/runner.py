"""BacktestRunner: loads ticks, builds candles and runs the engine.

Completely independent of app/. Any object with an async
``get_range(market_id, start, end)`` returning ticks can serve as the tick
source (backtest.storage.PostgresTickSource, or the live service's
TickRepository).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from core.candle_builder import build_candles
from core.errors import NoPriceDataError
from core.models.strategy import Strategy

from backtest.config import BacktestSettings, get_backtest_settings
from backtest.engine import BacktestEngine, backtest_timeframe
from backtest.stats import BacktestResult
from backtest.storage.tick_source import TickSource

logger = logging.getLogger(__name__)

QUICK_CHECK_BALANCE = Decimal(1000)


@dataclass
class BacktestConfig:
    """Configuration for a backtest run."""

    strategy: Strategy
    start_time: datetime
    end_time: datetime
    initial_balance: Decimal | float = 1000
    market_id: str | None = None  # Overrides strategy.market


class BacktestRunner:
    """Run backtests against a tick source."""

    def __init__(self, tick_source: TickSource, settings: BacktestSettings | None = None):
        self._tick_source = tick_source
        self._settings = settings or get_backtest_settings()

    async def run(self, config: BacktestConfig) -> BacktestResult:
        """
        Execute one backtest.

        Raises:
            ValueError: If neither the config nor the strategy names a market
            NoPriceDataError: If no ticks exist in the window
            InsufficientDataError: If too few candles could be built
            StrategyConfigError: If the strategy references unknown sources
        """
        strategy = config.strategy
        market_id = config.market_id or strategy.market
        if not market_id:
            raise ValueError("No market specified for backtest")

        started = time.perf_counter()
        logger.info(
            f"Starting backtest for \"{strategy.name}\" on {market_id}: "
            f"{config.start_time.isoformat()} → {config.end_time.isoformat()}"
        )

        ticks = await self._tick_source.get_range(market_id, config.start_time, config.end_time)
        if not ticks:
            raise NoPriceDataError(f"No price data found for {market_id} in the specified period")

        timeframe = backtest_timeframe(strategy.timeframe)
        candles = build_candles(ticks, timeframe, strategy.direction)
        logger.info(f"Created {len(candles)} {timeframe} candles from {len(ticks)} prices")

        engine = BacktestEngine(
            strategy,
            initial_balance=config.initial_balance,
            warmup_candles=self._settings.warmup_candles,
            position_fraction=self._settings.position_fraction,
            annualization_factor=self._settings.annualization_factor,
        )
        result = engine.run(candles, market_id, config.start_time, config.end_time)

        elapsed = time.perf_counter() - started
        logger.info(f"Backtest for \"{strategy.name}\" finished in {elapsed:.2f}s")
        return result

    async def is_strategy_profitable(
        self,
        strategy: Strategy,
        market_id: str | None = None,
        lookback_days: int = 7,
    ) -> dict[str, Any]:
        """
        Quick profitability check over the recent past.

        Never raises: any failure is logged and reported as not profitable.

        Returns:
            ``{"profitable", "pnl_percent", "win_rate"}``
        """
        end = datetime.now(timezone.utc)
        config = BacktestConfig(
            strategy=strategy,
            start_time=end - timedelta(days=lookback_days),
            end_time=end,
            initial_balance=QUICK_CHECK_BALANCE,
            market_id=market_id,
        )
        try:
            result = await self.run(config)
        except Exception as e:
            logger.warning(f"Profitability check failed for \"{strategy.name}\": {e}")
            return {"profitable": False, "pnl_percent": 0.0, "win_rate": 0.0}

        return {
            "profitable": result.total_pnl > 0,
            "pnl_percent": result.total_pnl_percent,
            "win_rate": result.win_rate,
        }


async def run_backtest(config: BacktestConfig, tick_source: TickSource) -> BacktestResult:
    """Run a single backtest with default settings."""
    return await BacktestRunner(tick_source).run(config)
