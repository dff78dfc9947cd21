"""Tests for the storage layer (database and Redis mocked)."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from sqlalchemy.exc import SQLAlchemyError

from app.storage.indicator_cache import IndicatorCacheRepository, canonical_params
from app.storage.strategy_repo import (
    StrategyRepository,
    YamlStrategySource,
    load_strategies_file,
    strategy_from_record,
)
from app.storage.tick_repo import TickRepository
from core.models.candle import Candle

MINUTE = 60_000
START = datetime(2024, 1, 1, tzinfo=timezone.utc)
START_MS = int(START.timestamp() * 1000)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def mock_database(execute_result=None, execute_side_effect=None):
    """A get_database() stand-in whose session() yields one mock session."""
    session = MagicMock()
    session.execute = AsyncMock(return_value=execute_result, side_effect=execute_side_effect)

    cm = MagicMock()
    cm.__aenter__ = AsyncMock(return_value=session)
    cm.__aexit__ = AsyncMock(return_value=False)

    db = MagicMock()
    db.session.return_value = cm
    return db, session


def make_candles(n: int) -> list[Candle]:
    return [
        Candle(timestamp=START_MS + i * MINUTE, open=0.5, high=0.52 + 0.001 * (i % 5),
               low=0.48, close=0.5 + 0.01 * ((i % 7) - 3), volume=1)
        for i in range(n)
    ]


CATALOGUE = [
    {"type": "SMA", "parameters": {"length": 5}},
    {"type": "RSI", "parameters": {"length": 14}},
]


# ---------------------------------------------------------------------------
# Indicator cache
# ---------------------------------------------------------------------------

class TestCanonicalParams:
    def test_integral_floats_and_order(self):
        assert canonical_params({"length": 14.0}) == canonical_params({"length": 14}) == '{"length":14}'
        assert canonical_params({"slow": 26, "fast": 12}) == '{"fast":12,"slow":26}'
        assert canonical_params({"stdDev": 2.5}) == '{"stdDev":2.5}'
        assert canonical_params(None) == "{}"


class TestIndicatorCacheRepository:
    @pytest.mark.asyncio
    async def test_precompute_writes_every_series(self):
        db, session = mock_database()
        repo = IndicatorCacheRepository(CATALOGUE)

        with patch("app.storage.indicator_cache.get_database", return_value=db), \
             patch("app.storage.cache.set_json", new=AsyncMock(return_value=True)) as set_json:
            saved = await repo.precompute("btc", "1m", make_candles(60))

        assert saved == 56 + 47
        assert session.execute.await_count == 2
        key = set_json.await_args_list[0].args[0]
        assert "BTC" in key and "SMA" in key

    @pytest.mark.asyncio
    async def test_precompute_needs_enough_candles(self):
        db, session = mock_database()
        with patch("app.storage.indicator_cache.get_database", return_value=db):
            assert await IndicatorCacheRepository(CATALOGUE).precompute("BTC", "1m", make_candles(49)) == 0
        session.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_write_failure_skips_one_series(self):
        db, session = mock_database(execute_side_effect=[SQLAlchemyError("deadlock"), None])

        with patch("app.storage.indicator_cache.get_database", return_value=db), \
             patch("app.storage.cache.set_json", new=AsyncMock(return_value=True)) as set_json:
            saved = await IndicatorCacheRepository(CATALOGUE).precompute("BTC", "1m", make_candles(60))

        assert saved == 47
        assert set_json.await_count == 1

    @pytest.mark.asyncio
    async def test_unknown_type_in_catalogue_ignored(self):
        db, session = mock_database()
        repo = IndicatorCacheRepository([{"type": "Ichimoku", "parameters": {}}])
        with patch("app.storage.indicator_cache.get_database", return_value=db):
            assert await repo.precompute("BTC", "1m", make_candles(60)) == 0

    @pytest.mark.asyncio
    async def test_latest_from_redis(self):
        db, session = mock_database()
        hit = {"timestamp": START_MS, "value": 55.0}
        with patch("app.storage.indicator_cache.get_database", return_value=db), \
             patch("app.storage.cache.get_json", new=AsyncMock(return_value=hit)):
            latest = await IndicatorCacheRepository().get_latest("btc", "1m", "RSI", {"length": 14})

        assert latest.timestamp == START_MS
        assert latest.value == 55.0
        session.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_latest_falls_back_to_postgres(self):
        result = MagicMock()
        result.first.return_value = (START, 61.5, None)
        db, _ = mock_database(execute_result=result)

        with patch("app.storage.indicator_cache.get_database", return_value=db), \
             patch("app.storage.cache.get_json", new=AsyncMock(return_value=None)), \
             patch("app.storage.cache.set_json", new=AsyncMock(return_value=True)) as set_json:
            latest = await IndicatorCacheRepository().get_latest("BTC", "1m", "RSI", {"length": 14})

        assert latest.timestamp == START_MS
        assert latest.value == 61.5
        set_json.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_range_read_failure_is_empty(self):
        db, _ = mock_database(execute_side_effect=SQLAlchemyError("gone"))
        with patch("app.storage.indicator_cache.get_database", return_value=db):
            assert await IndicatorCacheRepository().get_range("BTC", "1m", "RSI") == []

    @pytest.mark.asyncio
    async def test_range_rows(self):
        result = MagicMock()
        result.all.return_value = [
            (START, None, {"macd": 0.1, "signal": 0.05, "histogram": 0.05}),
            (START + timedelta(minutes=1), 0.2, None),
        ]
        db, _ = mock_database(execute_result=result)
        with patch("app.storage.indicator_cache.get_database", return_value=db):
            points = await IndicatorCacheRepository().get_range("BTC", "1m", "MACD", start_ms=START_MS)

        assert [p.timestamp for p in points] == [START_MS, START_MS + MINUTE]
        assert points[0].values["signal"] == 0.05

    @pytest.mark.asyncio
    async def test_cleanup(self):
        result = MagicMock(rowcount=3)
        db, _ = mock_database(execute_result=result)
        with patch("app.storage.indicator_cache.get_database", return_value=db):
            assert await IndicatorCacheRepository().cleanup(30) == 3


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

def strategy_row(**kwargs):
    data = dict(
        id="s1",
        name="Row strategy",
        asset="BTC",
        direction="UP",
        timeframe="15m",
        is_active=True,
        indicators=[{"id": "rsi1", "type": "RSI", "parameters": {"length": 14}, "useInConditions": True}],
        condition_logic="all",
        conditions=[{"id": "c1", "sourceA": "indicator_rsi1", "operator": ">", "sourceB": "value", "value": 70}],
        actions=[{"conditionId": "c1", "action": "sell"}],
        market=None,
        side=None,
        fixed_shares_amount=None,
    )
    data.update(kwargs)
    return SimpleNamespace(**data)


class TestStrategyRepository:
    @pytest.mark.asyncio
    async def test_active_strategies(self):
        result = MagicMock()
        result.scalars.return_value.all.return_value = [strategy_row(), strategy_row(id="bad", asset=None)]
        db, _ = mock_database(execute_result=result)

        with patch("app.storage.strategy_repo.get_database", return_value=db):
            strategies = await StrategyRepository().get_active_strategies()

        assert [s.id for s in strategies] == ["s1"]
        strategy = strategies[0]
        assert strategy.indicators[0].parameters == {"length": 14.0}
        assert strategy.conditions[0].source_a == "indicator_rsi1"
        assert strategy.conditions[0].action == "sell"

    def test_invalid_record_is_none(self):
        assert strategy_from_record({"id": "x", "conditions": "not a list"}) is None

    def test_existing_action_not_overridden(self):
        strategy = strategy_from_record({
            "id": "x",
            "asset": "BTC",
            "conditions": [{"id": "c1", "sourceA": "Close", "operator": ">", "value": 1, "action": "buy"}],
            "actions": [{"conditionId": "c1", "action": "sell"}],
        })
        assert strategy.conditions[0].action == "buy"


class TestYamlStrategySource:
    YAML = (
        "strategies:\n"
        "  - id: a\n"
        "    name: Active\n"
        "    asset: BTC\n"
        "    conditionLogic: any\n"
        "    conditions:\n"
        "      - {id: c1, sourceA: Close, operator: '>', value: 0.5}\n"
        "  - id: b\n"
        "    name: Inactive\n"
        "    asset: ETH\n"
        "    isActive: false\n"
        "  - id: c\n"
        "    name: Broken\n"
    )

    def test_load_file(self, tmp_path):
        path = tmp_path / "strategies.yaml"
        path.write_text(self.YAML)
        strategies = load_strategies_file(path)
        assert [s.id for s in strategies] == ["a", "b"]
        assert strategies[0].condition_logic == "any"

    def test_list_layout(self, tmp_path):
        path = tmp_path / "strategies.yaml"
        path.write_text("- {id: a, name: A, asset: BTC}\n")
        assert [s.id for s in load_strategies_file(path)] == ["a"]

    @pytest.mark.asyncio
    async def test_only_active(self, tmp_path):
        path = tmp_path / "strategies.yaml"
        path.write_text(self.YAML)
        strategies = await YamlStrategySource(path).get_active_strategies()
        assert [s.id for s in strategies] == ["a"]

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        assert await YamlStrategySource(tmp_path / "nope.yaml").get_active_strategies() == []


# ---------------------------------------------------------------------------
# Ticks
# ---------------------------------------------------------------------------

class TestTickRepository:
    @pytest.mark.asyncio
    async def test_get_range_flattens_and_clips(self):
        result = MagicMock()
        result.scalars.return_value.all.return_value = [
            [{"t": START_MS + MINUTE, "yb": 55, "ya": 56, "nb": 44, "na": 45}],
            [
                {"t": START_MS - 1, "yb": 10, "ya": 11, "nb": 89, "na": 90},
                {"t": START_MS, "yb": 50, "ya": 51, "nb": 49, "na": 50},
            ],
            None,
        ]
        db, _ = mock_database(execute_result=result)

        with patch("app.storage.tick_repo.get_database", return_value=db):
            ticks = await TickRepository().get_range("m1", START, START + timedelta(hours=1))

        assert [t.t for t in ticks] == [START_MS, START_MS + MINUTE]
        assert ticks[1].yes_bid == 55
