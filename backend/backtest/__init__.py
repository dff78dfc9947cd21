"""Backtesting for condition-based strategies.

Fully independent of app/: only depends on core/ for candles, indicators
and condition evaluation.

Storage:
- Ticks: read from PostgreSQL price_events via asyncpg (no SQLAlchemy)

Usage:
    python -m backtest --strategy-file strategies.yaml --start 2025-06-01 --end 2025-06-08
"""

from backtest.engine import BacktestEngine
from backtest.runner import BacktestConfig, BacktestRunner, run_backtest
from backtest.stats import BacktestResult, BacktestTrade

__all__ = [
    "BacktestConfig",
    "BacktestEngine",
    "BacktestRunner",
    "BacktestResult",
    "BacktestTrade",
    "run_backtest",
]
