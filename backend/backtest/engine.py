"""Backtest simulation engine.

Replays a strategy over a complete candle history for one market:

1. Compute every condition indicator over the full candle range
2. From the warm-up index on, evaluate the condition set at each bar
3. Open a long position on a BUY signal while flat, close it on a SELL
   signal while holding
4. Track peak equity and maximum drawdown after every bar
5. Force-close an open position at the final close

The engine is pure: it never touches storage and shares no state between
runs, so concurrent backtests are independent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal

from core.candle_builder import TIMEFRAME_MS, timeframe_to_ms
from core.conditions import (
    ConditionSetResult,
    EvaluationContext,
    compile_strategy,
    describe_condition,
    evaluate_conditions,
)
from core.errors import InsufficientDataError
from core.indicators import calculate_indicator
from core.models.candle import Candle
from core.models.strategy import Strategy

from backtest.stats import BacktestResult, BacktestTrade, StatisticsCalculator, TradeSide

logger = logging.getLogger(__name__)

DEFAULT_TIMEFRAME = "15m"
END_OF_BACKTEST = "End of backtest"

# Stored action labels that name a trade side; anything else is ignored
ACTION_SIDES: dict[str, TradeSide] = {
    "buy": "BUY",
    "open position": "BUY",
    "sell": "SELL",
    "close position": "SELL",
}


def backtest_timeframe(timeframe: str) -> str:
    """Strategy timeframe used for a backtest; unknown values fall back to 15m."""
    return timeframe if timeframe in TIMEFRAME_MS else DEFAULT_TIMEFRAME


def _decimal(value: float) -> Decimal:
    return Decimal(str(value))


@dataclass(slots=True)
class _Position:
    shares: Decimal
    entry_price: Decimal

    @property
    def cost(self) -> Decimal:
        return self.shares * self.entry_price


class BacktestEngine:
    """Simulate one strategy over a candle history.

    Args:
        strategy: Strategy to replay (validated on construction)
        initial_balance: Starting cash
        warmup_candles: Bars skipped before the first evaluation; also the
            minimum candle count
        position_fraction: Share of the balance committed per BUY when the
            strategy has no fixed size
        annualization_factor: Sharpe-like ratio scaling

    Raises:
        StrategyConfigError: If the strategy references unknown sources
    """

    def __init__(
        self,
        strategy: Strategy,
        initial_balance: Decimal | float = 1000,
        warmup_candles: int = 50,
        position_fraction: float = 0.1,
        annualization_factor: float = 252.0,
    ):
        self.strategy = strategy
        self.compiled = compile_strategy(strategy)
        self.initial_balance = (
            initial_balance if isinstance(initial_balance, Decimal) else _decimal(initial_balance)
        )
        self.warmup_candles = warmup_candles
        self.position_fraction = _decimal(position_fraction)
        self.timeframe = backtest_timeframe(strategy.timeframe)
        self._stats = StatisticsCalculator(annualization_factor)

    def _context(self, candles: list[Candle]) -> EvaluationContext:
        context = EvaluationContext(candles, timeframe_to_ms(self.timeframe))
        for indicator in self.strategy.condition_indicators:
            results = calculate_indicator(candles, indicator)
            context.add_series(indicator.id, results)
            logger.debug(f"Calculated {indicator.label}: {len(results)} values")
        return context

    def _signal_side(self, result: ConditionSetResult, holding: bool) -> TradeSide | None:
        """Trade side for a satisfied condition set, or None for no action."""
        sides = {ACTION_SIDES[a.strip()] for a in result.actions if a.strip() in ACTION_SIDES}
        if sides:
            if holding and "SELL" in sides:
                return "SELL"
            if not holding and "BUY" in sides:
                return "BUY"
            return None

        if (self.strategy.side or "").lower() == "buy" or self.strategy.is_long:
            return "BUY"
        return "SELL"

    def _order_size(self, balance: Decimal, price: Decimal) -> Decimal:
        if self.strategy.fixed_shares_amount:
            return _decimal(self.strategy.fixed_shares_amount)
        return (balance * self.position_fraction / price).to_integral_value(rounding=ROUND_FLOOR)

    def _reason(self, result: ConditionSetResult) -> str:
        return ", ".join(describe_condition(c, self.compiled.indicators) for c in result.met)

    def run(
        self,
        candles: list[Candle],
        market_id: str,
        start_time: datetime,
        end_time: datetime,
    ) -> BacktestResult:
        """
        Run the simulation.

        Raises:
            InsufficientDataError: With fewer candles than the warm-up
        """
        if len(candles) < self.warmup_candles:
            raise InsufficientDataError(len(candles), self.warmup_candles)

        context = self._context(candles)

        balance = self.initial_balance
        position: _Position | None = None
        peak_equity = self.initial_balance
        max_drawdown = Decimal(0)
        conditions_triggered = 0

        trades: list[BacktestTrade] = []
        returns: list[float] = []

        def close(index: int, price: Decimal, reason: str) -> None:
            nonlocal balance, position
            value = position.shares * price
            cost = position.cost
            pnl = value - cost
            balance += value
            returns.append(float(pnl / cost) if cost > 0 else 0.0)
            trades.append(BacktestTrade(
                timestamp=candles[index].timestamp,
                side="SELL",
                price=price,
                shares=position.shares,
                value=value,
                pnl=pnl,
                balance=balance,
                trigger_reason=reason,
            ))
            position = None

        for i in range(self.warmup_candles, len(candles)):
            candle = candles[i]
            price = _decimal(candle.close)

            result = evaluate_conditions(self.compiled, context, i)
            if result.triggered:
                conditions_triggered += 1
                side = self._signal_side(result, holding=position is not None)

                if side == "BUY" and position is None and price > 0:
                    shares = self._order_size(balance, price)
                    cost = shares * price
                    if shares > 0 and cost <= balance:
                        balance -= cost
                        position = _Position(shares=shares, entry_price=price)
                        trades.append(BacktestTrade(
                            timestamp=candle.timestamp,
                            side="BUY",
                            price=price,
                            shares=shares,
                            value=cost,
                            balance=balance,
                            trigger_reason=self._reason(result),
                        ))
                elif side == "SELL" and position is not None:
                    close(i, price, self._reason(result))

            equity = balance + (position.shares * price if position else Decimal(0))
            if equity > peak_equity:
                peak_equity = equity
            drawdown = peak_equity - equity
            if drawdown > max_drawdown:
                max_drawdown = drawdown

        if position is not None:
            last = len(candles) - 1
            close(last, _decimal(candles[last].close), END_OF_BACKTEST)

        result = BacktestResult(
            strategy_id=self.strategy.id or "unknown",
            strategy_name=self.strategy.name,
            market_id=market_id,
            timeframe=self.timeframe,
            start_time=start_time,
            end_time=end_time,
            initial_balance=self.initial_balance,
            final_balance=balance,
            trades=trades,
            candles_processed=len(candles),
            conditions_triggered=conditions_triggered,
        )
        self._stats.calculate(result, returns, max_drawdown, peak_equity)

        logger.info(
            f"Backtest \"{self.strategy.name}\" completed: {result.total_trades} trades, "
            f"PnL {result.total_pnl:.2f} ({result.total_pnl_percent:.2f}%)"
        )
        return result
