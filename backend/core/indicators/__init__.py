"""Technical indicators (pure math, no I/O)."""

from core.indicators.indicators import (
    INDICATOR_DEFAULTS,
    SUPPORTED_INDICATORS,
    calculate_atr,
    calculate_bollinger_bands,
    calculate_ema,
    calculate_indicator,
    calculate_macd,
    calculate_rolling_up_percent,
    calculate_rsi,
    calculate_sma,
    calculate_stochastic,
    calculate_vwap,
    crossed_above,
    crossed_above_series,
    crossed_below,
    crossed_below_series,
    latest_indicator_value,
)
from core.indicators.primitives import (
    ema,
    highest,
    lowest,
    rma,
    sma,
    stdev,
    true_range,
)

__all__ = [
    "INDICATOR_DEFAULTS",
    "SUPPORTED_INDICATORS",
    "calculate_atr",
    "calculate_bollinger_bands",
    "calculate_ema",
    "calculate_indicator",
    "calculate_macd",
    "calculate_rolling_up_percent",
    "calculate_rsi",
    "calculate_sma",
    "calculate_stochastic",
    "calculate_vwap",
    "crossed_above",
    "crossed_above_series",
    "crossed_below",
    "crossed_below_series",
    "latest_indicator_value",
    "ema",
    "highest",
    "lowest",
    "rma",
    "sma",
    "stdev",
    "true_range",
]
