"""Strategy monitor.

Re-evaluates every active strategy once a minute and publishes a
StrategyTrigger to the trigger channel when a strategy's condition set is
satisfied.

Cycle timing:
- The loop fires ``offset_seconds`` after each minute boundary so the candle
  closing at the boundary has settled; the feed's due candles are closed
  first.
- Cycles are serialized: a cycle requested while another is running is
  skipped and logged.
- Each cycle runs under a deadline (``cycle_timeout``); an expired cycle is
  cancelled and reported.

Per-strategy work is isolated: any error while checking one strategy is
logged and counted, and the cycle moves on to the next one.

Trigger policy:
- ``every_cycle``: publish on every cycle the condition set holds
- ``edge``: publish only when a strategy goes from not-triggered to triggered
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, Mapping, Protocol, Sequence

from app.services.candle_feed import side_for
from app.services.trigger_channel import TriggerChannel
from app.storage.strategy_repo import StrategySource
from core.candle_builder import timeframe_to_ms
from core.conditions import (
    EvaluationContext,
    compile_strategy,
    describe_condition,
    evaluate_conditions,
)
from core.errors import StrategyConfigError
from core.indicators import calculate_indicator
from core.models.candle import Candle
from core.models.indicator import IndicatorResult
from core.models.strategy import Strategy, StrategyTrigger
from core.ttl_cache import TTLCache

logger = logging.getLogger(__name__)


class TriggerPolicy(str, Enum):
    EVERY_CYCLE = "every_cycle"
    EDGE = "edge"


class CandleSource(Protocol):
    """Candle history provider (CandleFeed in production)."""

    def get_candles(
        self, symbol: str, timeframe: str, direction: str = "UP", limit: int | None = None
    ) -> list[Candle]: ...

    async def close_due(self, now_ms: int | None = None) -> int: ...


@dataclass(slots=True)
class CycleStats:
    """Outcome of one monitor cycle."""

    started_at: int
    strategies_checked: int = 0
    triggered: int = 0
    failed: int = 0
    skipped: int = 0
    duration_ms: float = 0.0
    timed_out: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


# (symbol, timeframe, side, type, parameters, last candle timestamp, candle count)
IndicatorCacheKey = tuple[str, str, str, str, tuple, int, int]


class StrategyMonitor:
    """Minute-aligned strategy evaluation service.

    Construct one per process and pass it to whoever needs it; call
    ``start()`` and ``stop()`` from the application lifespan.

    Args:
        strategy_source: Provides the active strategies each cycle
        candle_feed: Candle history per (symbol, timeframe, side)
        channel: Destination for triggers
        asset_symbols: Strategy asset -> feed symbol
        indicator_cache: Short-lived cache for computed series
        trigger_policy: ``every_cycle`` or ``edge``
        offset_seconds: Delay after each minute boundary
        cycle_timeout: Deadline for one cycle, in seconds
        max_lookback_candles: Most candles read per stream
        clock: Wall clock in seconds (injectable for tests)
    """

    def __init__(
        self,
        strategy_source: StrategySource,
        candle_feed: CandleSource,
        channel: TriggerChannel,
        asset_symbols: Mapping[str, str],
        indicator_cache: TTLCache[IndicatorCacheKey, list[IndicatorResult]] | None = None,
        trigger_policy: TriggerPolicy | str = TriggerPolicy.EVERY_CYCLE,
        offset_seconds: float = 1.0,
        cycle_timeout: float = 50.0,
        max_lookback_candles: int = 500,
        clock: Callable[[], float] = time.time,
    ):
        self.strategy_source = strategy_source
        self.candle_feed = candle_feed
        self.channel = channel
        self.asset_symbols = {k.upper(): v for k, v in asset_symbols.items()}
        if indicator_cache is None:
            indicator_cache = TTLCache(capacity=1024, ttl=55.0)
        self.indicator_cache = indicator_cache
        self.trigger_policy = TriggerPolicy(trigger_policy)
        self.offset_seconds = offset_seconds
        self.cycle_timeout = cycle_timeout
        self.max_lookback_candles = max_lookback_candles
        self._clock = clock

        self._cycle_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._running = False
        # strategy id -> triggered on its last evaluation (edge policy)
        self._last_state: dict[str, bool] = {}

        self.last_check_time = 0
        self.last_cycle: CycleStats | None = None
        self.cycles_run = 0
        self.cycles_skipped = 0

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background loop (runs one cycle immediately)."""
        if self._running:
            logger.info("Strategy monitor already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name="strategy-monitor")
        logger.info(
            f"Strategy monitor started (policy={self.trigger_policy.value}, "
            f"offset={self.offset_seconds}s, timeout={self.cycle_timeout}s)"
        )

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        self.indicator_cache.clear()
        logger.info("Strategy monitor stopped")

    def seconds_until_next_cycle(self) -> float:
        """Delay until ``offset_seconds`` past the next minute boundary."""
        now = self._clock()
        next_minute = math.ceil(now / 60) * 60
        return next_minute - now + self.offset_seconds

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("Strategy monitor cycle error", exc_info=True)
            await asyncio.sleep(self.seconds_until_next_cycle())

    # =========================================================================
    # Cycle
    # =========================================================================

    async def run_cycle(self) -> CycleStats | None:
        """
        Run one evaluation cycle over all active strategies.

        Returns:
            Cycle stats, or None if another cycle was already running
        """
        if self._cycle_lock.locked():
            self.cycles_skipped += 1
            logger.warning("Previous strategy check still running, skipping this cycle")
            return None

        async with self._cycle_lock:
            started = self._clock()
            stats = CycleStats(started_at=int(started * 1000))
            try:
                await asyncio.wait_for(self._cycle(stats), timeout=self.cycle_timeout)
            except asyncio.TimeoutError:
                stats.timed_out = True
                logger.error(
                    f"Strategy check cycle exceeded {self.cycle_timeout}s deadline; "
                    f"{stats.strategies_checked} strategies checked before cancellation"
                )

            stats.duration_ms = (self._clock() - started) * 1000
            self.last_cycle = stats
            self.last_check_time = stats.started_at
            self.cycles_run += 1

        if stats.strategies_checked:
            logger.info(
                f"Check complete: {stats.triggered}/{stats.strategies_checked} triggered, "
                f"{stats.failed} failed in {stats.duration_ms:.0f}ms"
            )
        return stats

    async def _cycle(self, stats: CycleStats) -> None:
        await self.candle_feed.close_due(stats.started_at)

        try:
            strategies = await self.strategy_source.get_active_strategies()
        except Exception as e:
            logger.error(f"Failed to load active strategies: {e}")
            return

        active_ids = {s.id for s in strategies}
        for strategy_id in list(self._last_state):
            if strategy_id not in active_ids:
                del self._last_state[strategy_id]

        if not strategies:
            return

        logger.debug(f"Checking {len(strategies)} active strategies")
        for strategy in strategies:
            stats.strategies_checked += 1
            try:
                trigger = await self.check_strategy(strategy)
            except StrategyConfigError as e:
                stats.failed += 1
                logger.warning(f"Invalid strategy \"{strategy.name}\": {e}")
                continue
            except Exception:
                stats.failed += 1
                logger.error(f"Error checking strategy \"{strategy.name}\"", exc_info=True)
                continue

            if trigger is not None:
                stats.triggered += 1

    # =========================================================================
    # Strategy evaluation
    # =========================================================================

    def _compute(
        self,
        symbol: str,
        timeframe: str,
        direction: str,
        indicator,
        candles: Sequence[Candle],
    ) -> list[IndicatorResult]:
        key = (
            symbol,
            timeframe,
            side_for(direction),
            indicator.type,
            tuple(sorted(indicator.parameters.items())),
            # A newly closed candle changes the series
            candles[-1].timestamp,
            len(candles),
        )
        return self.indicator_cache.get_or_compute(
            key, lambda: calculate_indicator(candles, indicator)
        )

    async def check_strategy(self, strategy: Strategy) -> StrategyTrigger | None:
        """
        Evaluate one strategy at its most recent closed candle.

        Returns:
            The published trigger, or None if nothing was published

        Raises:
            StrategyConfigError: If the strategy references unknown sources
        """
        compiled = compile_strategy(strategy)

        symbol = self.asset_symbols.get(strategy.asset.upper())
        if symbol is None:
            logger.warning(f"Unknown asset: {strategy.asset}")
            return None

        price_candles = self.candle_feed.get_candles(
            symbol, strategy.timeframe, strategy.direction, self.max_lookback_candles
        )
        if len(price_candles) < 2:
            logger.debug(
                f"Not enough {strategy.timeframe} candles for \"{strategy.name}\" "
                f"({len(price_candles)})"
            )
            return None

        context = EvaluationContext(price_candles, timeframe_to_ms(strategy.timeframe))
        used = strategy.condition_indicators

        for indicator in used:
            timeframe = indicator.resolve_timeframe(strategy.timeframe)
            candles = self.candle_feed.get_candles(
                symbol, timeframe, strategy.direction, self.max_lookback_candles
            )
            if not candles:
                continue
            results = self._compute(symbol, timeframe, strategy.direction, indicator, candles)
            context.add_series(indicator.id, results, timeframe_to_ms(timeframe))

        result = evaluate_conditions(compiled, context)

        was_triggered = self._last_state.get(strategy.id, False)
        self._last_state[strategy.id] = result.triggered
        if not result.triggered:
            return None
        if self.trigger_policy is TriggerPolicy.EDGE and was_triggered:
            logger.debug(f"Strategy \"{strategy.name}\" still triggered, not re-emitting")
            return None

        trigger = StrategyTrigger(
            strategy_id=strategy.id,
            strategy_name=strategy.name,
            asset=strategy.asset,
            direction=strategy.direction,
            triggered_conditions=[
                {"condition_id": c.id, "description": describe_condition(c, compiled.indicators)}
                for c in result.met
            ],
            indicator_values=context.latest_values([i.id for i in used]),
            timestamp=int(self._clock() * 1000),
            candle_timestamp=price_candles[-1].timestamp,
        )

        logger.info(f"Strategy triggered: \"{strategy.name}\" for {strategy.asset}")
        await self.channel.publish(trigger)
        return trigger

    # =========================================================================
    # Introspection
    # =========================================================================

    async def trigger_check(self) -> CycleStats | None:
        """Run a cycle now (manual check)."""
        return await self.run_cycle()

    def clear_cache(self) -> None:
        self.indicator_cache.clear()

    def status(self) -> dict:
        return {
            "is_running": self._running,
            "last_check_time": self.last_check_time,
            "cache_size": len(self.indicator_cache),
            "trigger_policy": self.trigger_policy.value,
            "cycles_run": self.cycles_run,
            "cycles_skipped": self.cycles_skipped,
            "last_cycle": self.last_cycle.to_dict() if self.last_cycle else None,
            "channel": self.channel.stats(),
        }
