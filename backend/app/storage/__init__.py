"""Data storage layer."""

from app.storage.database import Database, get_database, init_database
from app.storage.indicator_cache import IndicatorCacheRepository
from app.storage.strategy_repo import StrategyRepository, StrategySource, YamlStrategySource
from app.storage.tick_repo import TickRepository
from app.storage import cache

__all__ = [
    "Database",
    "get_database",
    "init_database",
    "IndicatorCacheRepository",
    "StrategyRepository",
    "StrategySource",
    "YamlStrategySource",
    "TickRepository",
    "cache",
]
