"""Tests for the live candle feed."""

import pytest
from unittest.mock import AsyncMock

from app.services.candle_feed import CandleFeed, side_for
from core.models.candle import Candle, Tick

MINUTE = 60_000


def make_tick(t: int, yes_bid: float = 60, no_bid: float = 40) -> Tick:
    return Tick(t=t, yes_bid=yes_bid, yes_ask=yes_bid + 1, no_bid=no_bid, no_ask=no_bid + 1)


class TestCandleFeed:
    def test_invalid_timeframe_rejected(self):
        with pytest.raises(ValueError):
            CandleFeed(["7m"])

    def test_side_for(self):
        assert side_for("UP") == "long"
        assert side_for("DOWN") == "short"

    @pytest.mark.asyncio
    async def test_ingest_closes_candles_for_both_sides(self):
        feed = CandleFeed(["1m"])
        assert await feed.ingest("btc", make_tick(0)) == []

        closed = await feed.ingest("btc", make_tick(MINUTE))
        keys = sorted(key for key, _ in closed)
        assert keys == [("btc", "1m", "long"), ("btc", "1m", "short")]

        assert feed.get_candles("btc", "1m", "UP")[0].close == pytest.approx(0.60)
        assert feed.get_candles("btc", "1m", "DOWN")[0].close == pytest.approx(0.40)

    @pytest.mark.asyncio
    async def test_multiple_timeframes(self):
        feed = CandleFeed(["1m", "5m"])
        for i in range(11):
            await feed.ingest("btc", make_tick(i * MINUTE))

        assert len(feed.get_candles("btc", "1m")) == 10
        assert [c.timestamp for c in feed.get_candles("btc", "5m")] == [0, 5 * MINUTE]

    @pytest.mark.asyncio
    async def test_out_of_order_tick_dropped(self):
        feed = CandleFeed(["1m"])
        await feed.ingest("btc", make_tick(2 * MINUTE))
        assert await feed.ingest("btc", make_tick(MINUTE)) == []
        assert feed.get_candles("btc", "1m") == []

    @pytest.mark.asyncio
    async def test_close_due_and_callbacks(self):
        feed = CandleFeed(["1m"])
        callback = AsyncMock()
        feed.on_closed_candle(callback)

        await feed.ingest("btc", make_tick(10_000))
        assert await feed.close_due(MINUTE - 1) == 0
        assert await feed.close_due(MINUTE) == 2

        assert callback.await_count == 2
        symbol, timeframe, side, candle = callback.await_args_list[0].args
        assert (symbol, timeframe) == ("btc", "1m")
        assert candle.timestamp == 0

    @pytest.mark.asyncio
    async def test_callback_error_does_not_break_ingest(self):
        feed = CandleFeed(["1m"])
        feed.on_closed_candle(AsyncMock(side_effect=RuntimeError("boom")))

        await feed.ingest("btc", make_tick(0))
        closed = await feed.ingest("btc", make_tick(MINUTE))
        assert len(closed) == 2
        assert len(feed.get_candles("btc", "1m")) == 1

    @pytest.mark.asyncio
    async def test_bounded_history(self):
        feed = CandleFeed(["1m"], max_candles=5)
        for i in range(20):
            await feed.ingest("btc", make_tick(i * MINUTE))
        candles = feed.get_candles("btc", "1m")
        assert len(candles) == 5
        assert candles[-1].timestamp == 18 * MINUTE

    def test_add_candle_and_limit(self):
        feed = CandleFeed(["1m"])
        for i in range(4):
            feed.add_candle("eth", "1m", "UP", Candle(i * MINUTE, 0.5, 0.5, 0.5, 0.5, 1))

        assert [c.timestamp for c in feed.get_candles("eth", "1m", limit=2)] == [2 * MINUTE, 3 * MINUTE]
        assert feed.get_candles("eth", "1m", "DOWN") == []
        assert feed.get_candles("sol", "1m") == []
        assert feed.symbols == ["eth"]
        assert feed.stats()["candles"] == 4
