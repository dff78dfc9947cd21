"""Statistics calculator for backtest results.

Money is tracked as Decimal through the whole ledger so that, with no open
position at the end, ``final_balance == initial_balance + sum(trade pnl)``
holds exactly. Ratios (win rate, profit factor, Sharpe) are plain floats.

Conventions:
- A closing trade with pnl > 0 is a win, pnl < 0 a loss; break-even
  closes count as neither.
- Profit factor is gross profit / gross loss; 999 when there is profit
  but no loss, 0 when there is neither.
- Sharpe-like ratio: mean / sample stdev of per-trade returns, scaled by
  sqrt(annualization factor); 0 with fewer than two returns or zero spread.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from statistics import mean, stdev
from typing import Any, Literal

logger = logging.getLogger(__name__)

NO_LOSS_PROFIT_FACTOR = 999.0

TradeSide = Literal["BUY", "SELL"]


@dataclass(slots=True)
class BacktestTrade:
    """One simulated fill."""

    timestamp: int
    side: TradeSide
    price: Decimal
    shares: Decimal
    value: Decimal
    balance: Decimal
    trigger_reason: str
    pnl: Decimal | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "side": self.side,
            "price": float(self.price),
            "shares": float(self.shares),
            "value": float(self.value),
            "pnl": float(self.pnl) if self.pnl is not None else None,
            "balance": float(self.balance),
            "trigger_reason": self.trigger_reason,
        }


@dataclass
class BacktestResult:
    """Complete backtest results: ledger plus aggregate statistics."""

    # Metadata
    strategy_id: str
    strategy_name: str
    market_id: str
    timeframe: str
    start_time: datetime
    end_time: datetime

    # Ledger
    initial_balance: Decimal
    final_balance: Decimal
    trades: list[BacktestTrade] = field(default_factory=list)

    # Overall
    total_pnl: Decimal = Decimal(0)
    total_pnl_percent: float = 0.0
    realized_pnl: Decimal = Decimal(0)
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    avg_win: Decimal = Decimal(0)
    avg_loss: Decimal = Decimal(0)
    profit_factor: float = 0.0
    max_drawdown: Decimal = Decimal(0)
    max_drawdown_percent: float = 0.0
    sharpe_ratio: float = 0.0

    # Run counters
    candles_processed: int = 0
    conditions_triggered: int = 0

    def to_dict(self) -> dict[str, Any]:
        """JSON-serializable form (money as float)."""
        return {
            "strategy_id": self.strategy_id,
            "strategy_name": self.strategy_name,
            "market_id": self.market_id,
            "timeframe": self.timeframe,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "initial_balance": float(self.initial_balance),
            "final_balance": float(self.final_balance),
            "total_pnl": float(self.total_pnl),
            "total_pnl_percent": round(self.total_pnl_percent, 4),
            "realized_pnl": float(self.realized_pnl),
            "total_trades": self.total_trades,
            "winning_trades": self.winning_trades,
            "losing_trades": self.losing_trades,
            "win_rate": round(self.win_rate, 2),
            "avg_win": float(self.avg_win),
            "avg_loss": float(self.avg_loss),
            "profit_factor": round(self.profit_factor, 4),
            "max_drawdown": float(self.max_drawdown),
            "max_drawdown_percent": round(self.max_drawdown_percent, 4),
            "sharpe_ratio": round(self.sharpe_ratio, 4),
            "candles_processed": self.candles_processed,
            "conditions_triggered": self.conditions_triggered,
            "trades": [t.to_dict() for t in self.trades],
        }


class StatisticsCalculator:
    """Fill in the aggregate statistics of a BacktestResult."""

    def __init__(self, annualization_factor: float = 252.0):
        self.annualization_factor = annualization_factor

    def calculate(
        self,
        result: BacktestResult,
        returns: list[float],
        max_drawdown: Decimal,
        peak_equity: Decimal,
    ) -> BacktestResult:
        """
        Compute statistics from the ledger already stored on ``result``.

        Args:
            result: Result with trades, balances and counters set
            returns: Per-trade returns (pnl / cost basis) of closing trades
            max_drawdown: Largest peak-to-trough equity drop seen
            peak_equity: Highest equity seen during the run

        Returns:
            The same result, updated in place
        """
        self._calc_overall(result)
        self._calc_win_loss(result)
        result.max_drawdown = max_drawdown
        result.max_drawdown_percent = (
            float(max_drawdown / peak_equity * 100) if peak_equity > 0 else 0.0
        )
        result.sharpe_ratio = self.sharpe_ratio(returns)
        return result

    def _calc_overall(self, result: BacktestResult) -> None:
        result.total_trades = len(result.trades)
        result.total_pnl = result.final_balance - result.initial_balance
        if result.initial_balance > 0:
            result.total_pnl_percent = float(result.total_pnl / result.initial_balance * 100)
        result.realized_pnl = sum(
            (t.pnl for t in result.trades if t.pnl is not None), Decimal(0)
        )

    def _calc_win_loss(self, result: BacktestResult) -> None:
        wins = [t.pnl for t in result.trades if t.pnl is not None and t.pnl > 0]
        losses = [-t.pnl for t in result.trades if t.pnl is not None and t.pnl < 0]

        result.winning_trades = len(wins)
        result.losing_trades = len(losses)
        closed = len(wins) + len(losses)
        result.win_rate = len(wins) / closed * 100 if closed > 0 else 0.0

        gross_profit = sum(wins, Decimal(0))
        gross_loss = sum(losses, Decimal(0))
        result.avg_win = gross_profit / len(wins) if wins else Decimal(0)
        result.avg_loss = gross_loss / len(losses) if losses else Decimal(0)

        if gross_loss > 0:
            result.profit_factor = float(gross_profit / gross_loss)
        elif gross_profit > 0:
            result.profit_factor = NO_LOSS_PROFIT_FACTOR
        else:
            result.profit_factor = 0.0

    def sharpe_ratio(self, returns: list[float]) -> float:
        if len(returns) < 2:
            return 0.0
        spread = stdev(returns)
        if spread <= 0:
            return 0.0
        return mean(returns) / spread * math.sqrt(self.annualization_factor)
