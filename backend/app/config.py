"""Application configuration."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_url: str = "postgresql://localhost/market_signals"
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_command_timeout: float = 30.0

    # Redis
    redis_url: str = "redis://localhost:6379/0"
    redis_max_connections: int = 50

    # Strategy asset -> price feed symbol
    asset_symbols: dict[str, str] = {
        "BTC": "btcusdt",
        "ETH": "ethusdt",
        "SOL": "solusdt",
        "XRP": "xrpusdt",
    }
    # Timeframes the live candle feed builds for every symbol
    feed_timeframes: list[str] = ["1m", "5m", "15m", "1h"]

    # Strategy monitor
    monitor_enabled: bool = True
    monitor_offset_seconds: float = 1.0   # Fire this long after each minute boundary
    monitor_cycle_timeout: float = 50.0   # Deadline for one cycle
    indicator_cache_ttl: float = 55.0
    indicator_cache_capacity: int = 1024
    max_lookback_candles: int = 500
    trigger_policy: Literal["every_cycle", "edge"] = "every_cycle"
    trigger_queue_size: int = 1000
    trigger_max_attempts: int = 3

    # Strategy source: YAML file when set, otherwise the strategies table
    strategies_file: str = ""

    # Indicator cache
    indicator_cache_retention_days: int = 30
    precompute_interval_seconds: int = 300
    precompute_timeframes: list[str] = ["15m", "1h"]

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
