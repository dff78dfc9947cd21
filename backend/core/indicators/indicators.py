"""Technical indicators over candle arrays.

Every calculate_* function is pure: ``(candles, parameters) -> list[IndicatorResult]``.
Results are aligned to the source candle timestamps; warm-up positions where
the indicator is undefined are omitted rather than emitted as zeros.

Type names match the ones stored in strategy configurations:
'RSI', 'MACD', 'SMA', 'EMA', 'Bollinger Bands', 'Stochastic', 'ATR',
'VWAP', 'Rolling Up %'.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence

import numpy as np

from core.indicators.primitives import (
    ema,
    highest,
    lowest,
    rma,
    sma,
    stdev,
    true_range,
)
from core.models.candle import Candle
from core.models.indicator import IndicatorResult

logger = logging.getLogger(__name__)


def _closes(candles: Sequence[Candle]) -> list[float]:
    return [c.close for c in candles]


def _defined(value: float) -> bool:
    return not math.isnan(value)


# =============================================================================
# Indicators
# =============================================================================

def calculate_rsi(candles: Sequence[Candle], period: int = 14) -> list[IndicatorResult]:
    """
    Relative Strength Index with Wilder's smoothing.

    gain/loss come from successive closes (the first bar contributes 0 to
    both), averaged by RMA. avgLoss == 0 gives 100, otherwise avgGain == 0
    gives 0, so a constant series reads 100 everywhere.

    Args:
        candles: Candles in ascending time order
        period: RSI length

    Returns:
        RSI points, empty if fewer than period + 1 candles
    """
    if len(candles) < period + 1:
        return []

    closes = _closes(candles)
    gains = [0.0]
    losses = [0.0]
    for i in range(1, len(closes)):
        change = closes[i] - closes[i - 1]
        gains.append(change if change > 0 else 0.0)
        losses.append(-change if change < 0 else 0.0)

    avg_gain = rma(gains, period)
    avg_loss = rma(losses, period)

    results = []
    for i in range(len(closes)):
        g = float(avg_gain[i])
        l = float(avg_loss[i])
        if not _defined(g) or not _defined(l):
            continue

        if l == 0:
            value = 100.0
        elif g == 0:
            value = 0.0
        else:
            rs = g / l
            value = 100 - (100 / (1 + rs))

        results.append(IndicatorResult(timestamp=candles[i].timestamp, value=value))

    return results


def calculate_macd(
    candles: Sequence[Candle],
    fast_period: int = 12,
    slow_period: int = 26,
    signal_period: int = 9,
) -> list[IndicatorResult]:
    """
    MACD line, signal line and histogram.

    The signal EMA runs over the MACD line with its leading undefined values
    dropped. ``value`` is the histogram.
    """
    if len(candles) < slow_period + signal_period:
        return []

    closes = _closes(candles)
    fast = ema(closes, fast_period)
    slow = ema(closes, slow_period)

    macd_line = np.full(len(closes), np.nan, dtype=np.float64)
    for i in range(len(closes)):
        if _defined(fast[i]) and _defined(slow[i]):
            macd_line[i] = float(fast[i]) - float(slow[i])

    start = next((i for i in range(len(macd_line)) if _defined(macd_line[i])), None)
    if start is None:
        return []

    signal_line = ema(macd_line[start:], signal_period)

    results = []
    for i in range(len(signal_line)):
        signal = float(signal_line[i])
        if not _defined(signal):
            continue
        index = start + i
        macd = float(macd_line[index])
        histogram = macd - signal
        results.append(IndicatorResult(
            timestamp=candles[index].timestamp,
            value=histogram,
            values={"macd": macd, "signal": signal, "histogram": histogram},
        ))

    return results


def calculate_sma(candles: Sequence[Candle], period: int = 20) -> list[IndicatorResult]:
    """Simple moving average of closes."""
    if len(candles) < period:
        return []

    values = sma(_closes(candles), period)
    return [
        IndicatorResult(timestamp=candles[i].timestamp, value=float(values[i]))
        for i in range(len(candles))
        if _defined(values[i])
    ]


def calculate_ema(candles: Sequence[Candle], period: int = 20) -> list[IndicatorResult]:
    """
    Exponential moving average of closes.

    The primitive defines values before ``period - 1`` (seeding), but the
    indicator only emits from the SMA-seeded point onward.
    """
    if len(candles) < period:
        return []

    values = ema(_closes(candles), period)
    return [
        IndicatorResult(timestamp=candles[i].timestamp, value=float(values[i]))
        for i in range(period - 1, len(candles))
    ]


def calculate_bollinger_bands(
    candles: Sequence[Candle],
    period: int = 20,
    mult: float = 2,
) -> list[IndicatorResult]:
    """
    Bollinger Bands.

    basis = SMA(close), upper/lower = basis +/- mult * stdev(close).
    ``value`` is the basis.
    """
    if len(candles) < period:
        return []

    closes = _closes(candles)
    basis = sma(closes, period)
    dev = stdev(closes, period)

    results = []
    for i in range(len(closes)):
        b = float(basis[i])
        d = float(dev[i])
        if not _defined(b) or not _defined(d):
            continue
        results.append(IndicatorResult(
            timestamp=candles[i].timestamp,
            value=b,
            values={"upper": b + mult * d, "middle": b, "lower": b - mult * d},
        ))

    return results


def calculate_stochastic(
    candles: Sequence[Candle],
    k_period: int = 14,
    smooth_k: int = 1,
    d_period: int = 3,
) -> list[IndicatorResult]:
    """
    Stochastic oscillator (%K and %D).

    Raw %K is 50 when the high/low range is zero. %K is smoothed by an SMA
    only when smooth_k > 1. ``value`` is %K.
    """
    if len(candles) < k_period + d_period:
        return []

    closes = _closes(candles)
    hh = highest([c.high for c in candles], k_period)
    ll = lowest([c.low for c in candles], k_period)

    raw_k = np.full(len(closes), np.nan, dtype=np.float64)
    for i in range(len(closes)):
        if not _defined(hh[i]) or not _defined(ll[i]):
            continue
        low = float(ll[i])
        span = float(hh[i]) - low
        if span == 0:
            raw_k[i] = 50.0
        else:
            raw_k[i] = 100 * (closes[i] - low) / span

    k_line = sma(raw_k, smooth_k) if smooth_k > 1 else raw_k
    d_line = sma(k_line, d_period)

    results = []
    for i in range(len(closes)):
        k = float(k_line[i])
        d = float(d_line[i])
        if not _defined(k) or not _defined(d):
            continue
        results.append(IndicatorResult(
            timestamp=candles[i].timestamp,
            value=k,
            values={"k": k, "d": d},
        ))

    return results


def calculate_atr(candles: Sequence[Candle], period: int = 14) -> list[IndicatorResult]:
    """Average True Range (RMA of true range)."""
    if len(candles) < period + 1:
        return []

    tr = true_range(
        [c.high for c in candles],
        [c.low for c in candles],
        _closes(candles),
    )
    values = rma(tr, period)
    return [
        IndicatorResult(timestamp=candles[i].timestamp, value=float(values[i]))
        for i in range(len(candles))
        if _defined(values[i])
    ]


def _utc_date(timestamp_ms: int):
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).date()


def calculate_vwap(candles: Sequence[Candle], reset_daily: bool = True) -> list[IndicatorResult]:
    """
    Volume weighted average price of the typical price (H+L+C)/3.

    With ``reset_daily`` the running sums restart whenever the UTC calendar
    date of the candle changes. Zero volume counts as 1.
    """
    results = []
    cum_tpv = 0.0
    cum_volume = 0.0
    last_day = None

    for candle in candles:
        day = _utc_date(candle.timestamp)
        if reset_daily and last_day is not None and day != last_day:
            cum_tpv = 0.0
            cum_volume = 0.0
        last_day = day

        typical = (candle.high + candle.low + candle.close) / 3
        volume = candle.volume or 1

        cum_tpv += typical * volume
        cum_volume += volume

        results.append(IndicatorResult(
            timestamp=candle.timestamp,
            value=cum_tpv / cum_volume if cum_volume > 0 else typical,
        ))

    return results


def calculate_rolling_up_percent(
    candles: Sequence[Candle],
    period: int = 50,
) -> list[IndicatorResult]:
    """Percentage of candles with close >= open in the trailing window."""
    if len(candles) < period:
        return []

    results = []
    for i in range(period - 1, len(candles)):
        up_count = 0
        for j in range(i - period + 1, i + 1):
            if candles[j].is_bullish:
                up_count += 1
        results.append(IndicatorResult(
            timestamp=candles[i].timestamp,
            value=(up_count / period) * 100,
        ))

    return results


# =============================================================================
# Dispatch
# =============================================================================

# Defaults applied when a parameter is absent or zero
INDICATOR_DEFAULTS: dict[str, dict[str, float]] = {
    "RSI": {"length": 14},
    "MACD": {"fast": 12, "slow": 26, "signal": 9},
    "SMA": {"length": 20},
    "EMA": {"length": 20},
    "Bollinger Bands": {"length": 20, "stdDev": 2},
    "Stochastic": {"k": 14, "smoothK": 1, "d": 3},
    "ATR": {"length": 14},
    "VWAP": {"resetDaily": 1},
    "Rolling Up %": {"length": 50},
}

SUPPORTED_INDICATORS = tuple(INDICATOR_DEFAULTS)


def _param(parameters: Mapping[str, float], name: str, default: float) -> float:
    value = parameters.get(name)
    return value if value else default


def _length(parameters: Mapping[str, float], name: str, default: int) -> int:
    return int(_param(parameters, name, default))


_CALCULATORS: dict[str, Callable[[Sequence[Candle], Mapping[str, float]], list[IndicatorResult]]] = {
    "RSI": lambda c, p: calculate_rsi(c, _length(p, "length", 14)),
    "MACD": lambda c, p: calculate_macd(
        c,
        _length(p, "fast", 12),
        _length(p, "slow", 26),
        _length(p, "signal", 9),
    ),
    "SMA": lambda c, p: calculate_sma(c, _length(p, "length", 20)),
    "EMA": lambda c, p: calculate_ema(c, _length(p, "length", 20)),
    "Bollinger Bands": lambda c, p: calculate_bollinger_bands(
        c,
        _length(p, "length", 20),
        _param(p, "stdDev", 2),
    ),
    "Stochastic": lambda c, p: calculate_stochastic(
        c,
        _length(p, "k", 14),
        _length(p, "smoothK", 1),
        _length(p, "d", 3),
    ),
    "ATR": lambda c, p: calculate_atr(c, _length(p, "length", 14)),
    "VWAP": lambda c, p: calculate_vwap(c, p.get("resetDaily", 1) != 0),
    "Rolling Up %": lambda c, p: calculate_rolling_up_percent(c, _length(p, "length", 50)),
}


def _config_fields(config: Any) -> tuple[str, Mapping[str, float]]:
    if isinstance(config, Mapping):
        return config["type"], config.get("parameters") or {}
    return config.type, config.parameters or {}


def calculate_indicator(candles: Sequence[Candle], config: Any) -> list[IndicatorResult]:
    """
    Calculate any supported indicator by type.

    Args:
        candles: Candles in ascending time order
        config: IndicatorConfig, or a mapping with ``type`` and ``parameters``

    Returns:
        The indicator series; empty for unknown types (logged, never raised)
    """
    indicator_type, parameters = _config_fields(config)
    calculator = _CALCULATORS.get(indicator_type)
    if calculator is None:
        logger.warning(f"Unknown indicator type: {indicator_type}")
        return []
    return calculator(candles, parameters)


def latest_indicator_value(candles: Sequence[Candle], config: Any) -> IndicatorResult | None:
    """Most recent point of an indicator series, or None if it is empty."""
    results = calculate_indicator(candles, config)
    return results[-1] if results else None


# =============================================================================
# Crossover helpers (last two points of a series)
# =============================================================================

def crossed_above(results: Sequence[IndicatorResult], threshold: float) -> bool:
    """Series crossed above a threshold on its last point."""
    if len(results) < 2:
        return False
    prev = results[-2].value
    curr = results[-1].value
    if prev is None or curr is None:
        return False
    return prev < threshold and curr >= threshold


def crossed_below(results: Sequence[IndicatorResult], threshold: float) -> bool:
    """Series crossed below a threshold on its last point."""
    if len(results) < 2:
        return False
    prev = results[-2].value
    curr = results[-1].value
    if prev is None or curr is None:
        return False
    return prev > threshold and curr <= threshold


def crossed_above_series(
    results_a: Sequence[IndicatorResult],
    results_b: Sequence[IndicatorResult],
) -> bool:
    """Series A crossed above series B on their last points."""
    if len(results_a) < 2 or len(results_b) < 2:
        return False
    prev_a, curr_a = results_a[-2].value, results_a[-1].value
    prev_b, curr_b = results_b[-2].value, results_b[-1].value
    if None in (prev_a, curr_a, prev_b, curr_b):
        return False
    return prev_a < prev_b and curr_a >= curr_b


def crossed_below_series(
    results_a: Sequence[IndicatorResult],
    results_b: Sequence[IndicatorResult],
) -> bool:
    """Series A crossed below series B on their last points."""
    if len(results_a) < 2 or len(results_b) < 2:
        return False
    prev_a, curr_a = results_a[-2].value, results_a[-1].value
    prev_b, curr_b = results_b[-2].value, results_b[-1].value
    if None in (prev_a, curr_a, prev_b, curr_b):
        return False
    return prev_a > prev_b and curr_a <= curr_b
