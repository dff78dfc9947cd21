"""Backtest storage layer, independent of app/storage.

Reads recorded ticks through a shared asyncpg pool.
"""

from backtest.storage.database import BacktestDatabase
from backtest.storage.tick_source import PostgresTickSource, TickSource

__all__ = [
    "BacktestDatabase",
    "PostgresTickSource",
    "TickSource",
]
