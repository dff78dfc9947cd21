"""Indicator building blocks matching TradingView's Pine Script formulas.

Every function returns a float64 array the same length as its input, with
NaN at positions where the value is undefined (warm-up).

Window sums are accumulated newest-to-oldest in plain double arithmetic,
the same order the reference implementation uses, so series match it
bit-for-bit. Do not replace the loops with np.sum/np.mean: pairwise
summation changes the last bits.
"""

from __future__ import annotations

import math
from typing import Sequence

import numpy as np


def _as_floats(values: Sequence[float] | np.ndarray) -> list[float]:
    return [float(v) for v in values]


def _window_sum(values: list[float], i: int, period: int) -> float:
    total = 0.0
    for j in range(period):
        total += values[i - j]
    return total


def sma(values: Sequence[float] | np.ndarray, period: int) -> np.ndarray:
    """Simple Moving Average.

    Pine: ta.sma(source, length) = sum(source, length) / length
    """
    vals = _as_floats(values)
    result = np.full(len(vals), np.nan, dtype=np.float64)

    for i in range(period - 1, len(vals)):
        result[i] = _window_sum(vals, i, period) / period

    return result


def ema(values: Sequence[float] | np.ndarray, period: int) -> np.ndarray:
    """Exponential Moving Average with TradingView's seeding.

    alpha = 2 / (period + 1). Index 0 is the first value; indices before
    period - 1 blend against the previous EMA output; index period - 1 is
    reseeded to the SMA of the first ``period`` values; later indices blend
    normally. The values before period - 1 are therefore defined, which a
    naive EMA would not produce.
    """
    vals = _as_floats(values)
    n = len(vals)
    result = np.full(n, np.nan, dtype=np.float64)
    if n == 0:
        return result

    alpha = 2 / (period + 1)
    prev = vals[0]
    result[0] = prev

    for i in range(1, n):
        if i == period - 1:
            prev = _window_sum(vals, i, period) / period
        else:
            prev = alpha * vals[i] + (1 - alpha) * prev
        result[i] = prev

    return result


def rma(values: Sequence[float] | np.ndarray, period: int) -> np.ndarray:
    """Wilder's smoothing (RMA), used by RSI and ATR.

    alpha = 1 / period; undefined before period - 1; seeded with the SMA of
    the first ``period`` values.
    """
    vals = _as_floats(values)
    n = len(vals)
    result = np.full(n, np.nan, dtype=np.float64)
    if n < period:
        return result

    alpha = 1 / period
    prev = _window_sum(vals, period - 1, period) / period
    result[period - 1] = prev

    for i in range(period, n):
        prev = alpha * vals[i] + (1 - alpha) * prev
        result[i] = prev

    return result


def stdev(values: Sequence[float] | np.ndarray, period: int) -> np.ndarray:
    """Population standard deviation against the SMA of the same window.

    Pine: ta.stdev(source, length)
    """
    vals = _as_floats(values)
    basis = sma(vals, period)
    result = np.full(len(vals), np.nan, dtype=np.float64)

    for i in range(period - 1, len(vals)):
        mean = float(basis[i])
        if math.isnan(mean):
            continue
        sum_sq = 0.0
        for j in range(period):
            diff = vals[i - j] - mean
            sum_sq += diff * diff
        result[i] = math.sqrt(sum_sq / period)

    return result


def true_range(
    highs: Sequence[float] | np.ndarray,
    lows: Sequence[float] | np.ndarray,
    closes: Sequence[float] | np.ndarray,
) -> np.ndarray:
    """True Range.

    TR = max(high - low, abs(high - prev_close), abs(low - prev_close));
    the first bar has no previous close and uses high - low.
    """
    h = _as_floats(highs)
    lo = _as_floats(lows)
    c = _as_floats(closes)
    n = len(h)
    result = np.empty(n, dtype=np.float64)

    for i in range(n):
        if i == 0:
            result[i] = h[i] - lo[i]
        else:
            result[i] = max(h[i] - lo[i], abs(h[i] - c[i - 1]), abs(lo[i] - c[i - 1]))

    return result


def highest(values: Sequence[float] | np.ndarray, period: int) -> np.ndarray:
    """Rolling maximum over the trailing ``period`` values."""
    vals = _as_floats(values)
    result = np.full(len(vals), np.nan, dtype=np.float64)

    for i in range(period - 1, len(vals)):
        top = vals[i]
        for j in range(1, period):
            if vals[i - j] > top:
                top = vals[i - j]
        result[i] = top

    return result


def lowest(values: Sequence[float] | np.ndarray, period: int) -> np.ndarray:
    """Rolling minimum over the trailing ``period`` values."""
    vals = _as_floats(values)
    result = np.full(len(vals), np.nan, dtype=np.float64)

    for i in range(period - 1, len(vals)):
        bottom = vals[i]
        for j in range(1, period):
            if vals[i - j] < bottom:
                bottom = vals[i - j]
        result[i] = bottom

    return result
