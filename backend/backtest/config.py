"""Backtest-specific configuration.

Independent of app/config.py: only needs a database URL and the
simulation knobs.
"""

from __future__ import annotations

import os

from pydantic_settings import BaseSettings, SettingsConfigDict


class BacktestSettings(BaseSettings):
    """Backtest configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="BACKTEST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # PostgreSQL holding the recorded price_events (read only)
    database_url: str = os.environ.get(
        "DATABASE_URL", "postgresql://localhost/market_signals"
    )

    # Sharpe-like ratio is scaled by sqrt(annualization_factor)
    annualization_factor: float = 252.0
    # Bars skipped before the first evaluation so indicators have warmed up
    warmup_candles: int = 50
    # Share of the balance committed per BUY when no fixed size is set
    position_fraction: float = 0.1


_settings: BacktestSettings | None = None


def get_backtest_settings() -> BacktestSettings:
    """Get cached backtest settings instance."""
    global _settings
    if _settings is None:
        _settings = BacktestSettings()
    return _settings
