"""Tests for technical indicators."""

import math

import numpy as np
import pytest

from core.indicators import (
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
    ema,
    highest,
    latest_indicator_value,
    lowest,
    rma,
    sma,
    stdev,
    true_range,
)
from core.models.candle import Candle
from core.models.indicator import IndicatorResult

MINUTE = 60_000
DAY = 86_400_000


def make_candles(closes: list[float], start: int = 0, interval: int = MINUTE, spread: float = 0.0) -> list[Candle]:
    """Candles whose open is the previous close."""
    candles = []
    prev = closes[0]
    for i, close in enumerate(closes):
        candles.append(Candle(
            timestamp=start + i * interval,
            open=prev,
            high=max(prev, close) + spread,
            low=min(prev, close) - spread,
            close=close,
            volume=1,
        ))
        prev = close
    return candles


def wave(n: int, base: float = 0.5, amp: float = 0.1) -> list[float]:
    return [base + amp * math.sin(i / 3) + 0.01 * (i % 4) for i in range(n)]


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------

class TestPrimitives:
    def test_sma_basic(self):
        result = sma([1, 2, 3, 4, 5], 3)
        assert np.isnan(result[0]) and np.isnan(result[1])
        assert result[2] == 2.0
        assert result[4] == 4.0

    def test_ema_seeding_quirk(self):
        """Index 0 is the first value, period-1 is reseeded to the SMA."""
        result = ema([1, 2, 3, 4], 3)
        assert result[0] == 1.0
        assert result[1] == 1.5  # 0.5 * 2 + 0.5 * 1
        assert result[2] == 2.0  # SMA(1, 2, 3), not 0.5 * 3 + 0.5 * 1.5
        assert result[3] == 3.0  # 0.5 * 4 + 0.5 * 2

    def test_rma_seed_and_smoothing(self):
        result = rma([2, 4, 6, 8], 2)
        assert np.isnan(result[0])
        assert result[1] == 3.0
        assert result[2] == 4.5  # 0.5 * 6 + 0.5 * 3
        assert result[3] == 6.25

    def test_rma_short_input(self):
        assert np.isnan(rma([1.0], 3)).all()

    def test_stdev_is_population(self):
        result = stdev([2, 4, 4, 4, 5, 5, 7, 9], 8)
        assert result[7] == 2.0

    def test_true_range_first_bar_is_high_minus_low(self):
        tr = true_range([10, 12], [8, 11], [9, 11.5])
        assert tr[0] == 2.0
        assert tr[1] == 3.0  # |12 - 9|

    def test_highest_lowest(self):
        values = [3, 1, 4, 1, 5, 9, 2]
        assert highest(values, 3)[4] == 5
        assert lowest(values, 3)[4] == 1
        assert np.isnan(highest(values, 3)[1])


# ---------------------------------------------------------------------------
# RSI
# ---------------------------------------------------------------------------

class TestRSI:
    def test_insufficient_data_is_empty(self):
        assert calculate_rsi(make_candles([0.5] * 14), 14) == []

    def test_warmup_length(self):
        candles = make_candles(wave(40))
        results = calculate_rsi(candles, 14)
        assert len(results) == 40 - 13
        assert results[0].timestamp == candles[13].timestamp

    def test_constant_price_reads_100(self):
        results = calculate_rsi(make_candles([0.5] * 30), 14)
        assert results
        assert all(r.value == 100.0 for r in results)

    def test_falling_price_reads_0(self):
        closes = [1.0 - 0.01 * i for i in range(30)]
        results = calculate_rsi(make_candles(closes), 14)
        assert all(r.value == 0.0 for r in results)

    def test_bounds(self):
        results = calculate_rsi(make_candles(wave(200)), 14)
        assert all(0.0 <= r.value <= 100.0 for r in results)

    def test_deterministic(self):
        candles = make_candles(wave(120))
        first = [r.value for r in calculate_rsi(candles, 14)]
        second = [r.value for r in calculate_rsi(candles, 14)]
        assert first == second


# ---------------------------------------------------------------------------
# Moving averages
# ---------------------------------------------------------------------------

class TestMovingAverages:
    def test_sma_values(self):
        candles = make_candles([float(i) for i in range(1, 11)])
        results = calculate_sma(candles, 3)
        assert len(results) == 8
        assert results[0].value == 2.0
        assert results[0].timestamp == candles[2].timestamp

    def test_ema_emits_from_seed(self):
        candles = make_candles([1.0, 2.0, 3.0, 4.0])
        results = calculate_ema(candles, 3)
        assert [r.value for r in results] == [2.0, 3.0]

    def test_short_input_empty(self):
        candles = make_candles([1.0, 2.0])
        assert calculate_sma(candles, 3) == []
        assert calculate_ema(candles, 3) == []


# ---------------------------------------------------------------------------
# MACD
# ---------------------------------------------------------------------------

class TestMACD:
    def test_insufficient_data(self):
        assert calculate_macd(make_candles(wave(34)), 12, 26, 9) == []

    def test_histogram_identity(self):
        results = calculate_macd(make_candles(wave(100)), 12, 26, 9)
        assert results
        for r in results:
            assert r.values["histogram"] == r.values["macd"] - r.values["signal"]
            assert r.value == r.values["histogram"]

    def test_seeded_emas_define_every_point(self):
        candles = make_candles(wave(60))
        results = calculate_macd(candles, 12, 26, 9)
        assert len(results) == len(candles)

    def test_constant_price_is_flat(self):
        results = calculate_macd(make_candles([0.5] * 50), 12, 26, 9)
        assert all(r.value == pytest.approx(0.0, abs=1e-12) for r in results)


# ---------------------------------------------------------------------------
# Bands and oscillators
# ---------------------------------------------------------------------------

class TestBollingerBands:
    def test_ordering(self):
        results = calculate_bollinger_bands(make_candles(wave(80)), 20, 2)
        assert len(results) == 61
        for r in results:
            assert r.values["upper"] >= r.values["middle"] >= r.values["lower"]
            assert r.value == r.values["middle"]

    def test_constant_price_collapses(self):
        results = calculate_bollinger_bands(make_candles([0.4] * 25), 20, 2)
        r = results[-1]
        assert r.values["upper"] == pytest.approx(0.4)
        assert r.values["lower"] == pytest.approx(0.4)


class TestStochastic:
    def test_zero_range_reads_50(self):
        results = calculate_stochastic(make_candles([0.5] * 30), 14, 1, 3)
        assert results
        assert all(r.values["k"] == 50.0 and r.values["d"] == 50.0 for r in results)

    def test_bounds_and_fields(self):
        results = calculate_stochastic(make_candles(wave(100), spread=0.01), 14, 3, 3)
        for r in results:
            assert 0.0 <= r.values["k"] <= 100.0
            assert 0.0 <= r.values["d"] <= 100.0
            assert r.value == r.values["k"]

    def test_insufficient_data(self):
        assert calculate_stochastic(make_candles(wave(16)), 14, 1, 3) == []


class TestATR:
    def test_flat_market_is_zero(self):
        results = calculate_atr(make_candles([0.5] * 30), 14)
        assert all(r.value == 0.0 for r in results)

    def test_warmup(self):
        candles = make_candles(wave(30), spread=0.01)
        results = calculate_atr(candles, 14)
        assert len(results) == 30 - 13
        assert all(r.value > 0 for r in results)


class TestVWAP:
    def test_resets_on_utc_date(self):
        day_one = make_candles([0.3, 0.3], start=DAY - 2 * MINUTE)
        day_two = make_candles([0.9], start=DAY)
        results = calculate_vwap(day_one + day_two, reset_daily=True)

        assert results[1].value == pytest.approx(0.3)
        assert results[2].value == pytest.approx(0.9)

    def test_without_reset_accumulates(self):
        candles = make_candles([0.3, 0.3], start=DAY - 2 * MINUTE) + make_candles([0.3], start=DAY)
        results = calculate_vwap(candles, reset_daily=False)
        assert len(results) == 3
        assert results[-1].value == pytest.approx(0.3)

    def test_zero_volume_counts_as_one(self):
        candle = Candle(timestamp=0, open=0.5, high=0.6, low=0.4, close=0.5, volume=0)
        assert calculate_vwap([candle])[0].value == pytest.approx(0.5)


class TestRollingUpPercent:
    def test_all_up(self):
        results = calculate_rolling_up_percent(make_candles([0.1 * i for i in range(1, 11)]), 5)
        assert len(results) == 6
        assert all(r.value == 100.0 for r in results)

    def test_mixed(self):
        closes = [0.5, 0.6, 0.5, 0.6, 0.5]
        results = calculate_rolling_up_percent(make_candles(closes), 4)
        # Windows: [0.5>=0.5 up, up, down, up] and [up, down, up, down]
        assert [r.value for r in results] == [75.0, 50.0]


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

class TestCalculateIndicator:
    def test_supported_types(self):
        assert set(SUPPORTED_INDICATORS) == {
            "RSI", "MACD", "SMA", "EMA", "Bollinger Bands", "Stochastic",
            "ATR", "VWAP", "Rolling Up %",
        }
        assert set(INDICATOR_DEFAULTS) == set(SUPPORTED_INDICATORS)

    def test_every_type_runs(self):
        candles = make_candles(wave(120), spread=0.01)
        for indicator_type in SUPPORTED_INDICATORS:
            results = calculate_indicator(candles, {"type": indicator_type, "parameters": {}})
            assert results, indicator_type

    def test_unknown_type_is_empty(self):
        assert calculate_indicator(make_candles(wave(50)), {"type": "Ichimoku"}) == []

    def test_zero_parameter_uses_default(self):
        candles = make_candles(wave(60))
        explicit = calculate_indicator(candles, {"type": "RSI", "parameters": {"length": 14}})
        defaulted = calculate_indicator(candles, {"type": "RSI", "parameters": {"length": 0}})
        assert [r.value for r in explicit] == [r.value for r in defaulted]

    def test_vwap_reset_flag(self):
        candles = make_candles([0.3, 0.9], start=DAY - MINUTE)
        reset = calculate_indicator(candles, {"type": "VWAP", "parameters": {"resetDaily": 1}})
        no_reset = calculate_indicator(candles, {"type": "VWAP", "parameters": {"resetDaily": 0}})
        assert reset[-1].value != no_reset[-1].value

    def test_latest_value(self):
        candles = make_candles(wave(40))
        latest = latest_indicator_value(candles, {"type": "SMA", "parameters": {"length": 5}})
        assert latest.timestamp == candles[-1].timestamp
        assert latest_indicator_value(candles[:2], {"type": "SMA", "parameters": {"length": 5}}) is None


class TestCrossHelpers:
    def _series(self, values):
        return [IndicatorResult(timestamp=i, value=v) for i, v in enumerate(values)]

    def test_crossed_above(self):
        assert crossed_above(self._series([69, 71]), 70)
        assert crossed_above(self._series([69, 70]), 70)
        assert not crossed_above(self._series([70, 71]), 70)

    def test_crossed_below(self):
        assert crossed_below(self._series([31, 29]), 30)
        assert not crossed_below(self._series([29, 28]), 30)

    def test_exclusive(self):
        series = self._series([50, 60])
        assert not (crossed_above(series, 55) and crossed_below(series, 55))

    def test_short_or_undefined(self):
        assert not crossed_above(self._series([71]), 70)
        assert not crossed_above(self._series([None, 71]), 70)

    def test_series_crossings(self):
        fast = self._series([1.0, 3.0])
        slow = self._series([2.0, 2.5])
        assert crossed_above_series(fast, slow)
        assert not crossed_below_series(fast, slow)
        assert crossed_below_series(slow, fast)

    def test_series_touching_counts(self):
        assert crossed_above_series(self._series([1.0, 2.0]), self._series([2.0, 2.0]))
        assert crossed_below_series(self._series([3.0, 2.0]), self._series([2.0, 2.0]))

    def test_series_without_cross(self):
        a = self._series([3.0, 4.0])
        b = self._series([2.0, 2.0])
        assert not crossed_above_series(a, b)
        assert not crossed_below_series(a, b)

    def test_series_short_or_undefined(self):
        assert not crossed_above_series(self._series([3.0]), self._series([2.0]))
        assert not crossed_above_series(self._series([1.0, 3.0]), self._series([None, 2.0]))
        assert not crossed_below_series(self._series([None, 1.0]), self._series([2.0, 2.0]))
