"""Tests for the REST and WebSocket API."""

from datetime import datetime, timezone

import orjson
import pytest
from unittest.mock import AsyncMock, MagicMock
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.api import router, websocket_endpoint
from app.api.websocket import ConnectionManager
from app.services.candle_feed import CandleFeed
from app.services.strategy_monitor import CycleStats
from core.models.candle import Tick
from core.models.indicator import IndicatorResult
from core.models.strategy import StrategyTrigger

MINUTE = 60_000
START = datetime(2024, 1, 1, tzinfo=timezone.utc)
START_MS = int(START.timestamp() * 1000)

STRATEGY = {
    "id": "bt1",
    "name": "Dip buyer",
    "asset": "BTC",
    "timeframe": "1m",
    "conditionLogic": "any",
    "conditions": [
        {"id": "buy", "sourceA": "Close", "operator": "<", "value": 0.4},
        {"id": "sell", "sourceA": "Close", "operator": ">", "value": 0.6},
    ],
    "actions": [
        {"conditionId": "buy", "action": "buy"},
        {"conditionId": "sell", "action": "sell"},
    ],
}


def make_ticks(cents: list[float]) -> list[Tick]:
    return [
        Tick(t=START_MS + i * MINUTE, yes_bid=c, yes_ask=c + 1, no_bid=100 - c, no_ask=101 - c)
        for i, c in enumerate(cents)
    ]


def make_app(ticks=None, monitor=None) -> FastAPI:
    """Router mounted on a bare app with mocked services (no lifespan)."""
    app = FastAPI()
    app.include_router(router, prefix="/api")
    app.websocket("/ws")(websocket_endpoint)

    tick_repo = MagicMock()
    tick_repo.get_range = AsyncMock(return_value=ticks or [])
    app.state.tick_repo = tick_repo
    app.state.indicator_cache = MagicMock()
    app.state.candle_feed = CandleFeed(["1m", "5m"])
    app.state.monitor = monitor
    return app


def backtest_body(**kwargs) -> dict:
    body = {
        "strategy": STRATEGY,
        "start_time": "2024-01-01T00:00:00Z",
        "end_time": "2024-01-02T00:00:00Z",
        "initial_balance": 1000,
        "market_id": "m1",
    }
    body.update(kwargs)
    return body


# ---------------------------------------------------------------------------
# Backtests
# ---------------------------------------------------------------------------

class TestBacktestRoutes:
    def test_run_backtest(self):
        client = TestClient(make_app(ticks=make_ticks([50] * 50 + [30, 50, 70])))
        response = client.post("/api/backtest", json=backtest_body())

        assert response.status_code == 200
        data = response.json()
        assert data["total_trades"] == 2
        assert data["winning_trades"] == 1
        assert data["trades"][0]["trigger_reason"] == "Close < 0.4"

    def test_end_before_start(self):
        client = TestClient(make_app())
        response = client.post("/api/backtest", json=backtest_body(end_time="2023-12-31T00:00:00Z"))
        assert response.status_code == 400

    def test_no_price_data(self):
        client = TestClient(make_app(ticks=[]))
        assert client.post("/api/backtest", json=backtest_body()).status_code == 404

    def test_insufficient_data(self):
        client = TestClient(make_app(ticks=make_ticks([50] * 10)))
        response = client.post("/api/backtest", json=backtest_body())
        assert response.status_code == 422
        assert "Insufficient" in response.json()["detail"]

    def test_no_market(self):
        client = TestClient(make_app(ticks=make_ticks([50] * 60)))
        assert client.post("/api/backtest", json=backtest_body(market_id=None)).status_code == 400

    def test_invalid_strategy_reference(self):
        strategy = {**STRATEGY, "conditions": [{"id": "x", "sourceA": "indicator_nope", "operator": ">"}]}
        client = TestClient(make_app(ticks=make_ticks([50] * 60)))
        assert client.post("/api/backtest", json=backtest_body(strategy=strategy)).status_code == 400

    def test_profitability_never_errors(self):
        client = TestClient(make_app(ticks=[]))
        response = client.post("/api/backtest/profitable", json={"strategy": STRATEGY, "market_id": "m1"})
        assert response.status_code == 200
        assert response.json() == {"profitable": False, "pnl_percent": 0.0, "win_rate": 0.0}


# ---------------------------------------------------------------------------
# Indicators
# ---------------------------------------------------------------------------

class TestIndicatorRoutes:
    def test_list(self):
        response = TestClient(make_app()).get("/api/indicators")
        assert "Rolling Up %" in response.json()

    def test_range(self):
        app = make_app()
        app.state.indicator_cache.get_range = AsyncMock(return_value=[
            IndicatorResult(timestamp=START_MS, value=42.0),
        ])
        response = TestClient(app).get(
            "/api/indicators/BTC/1m",
            params={"type": "RSI", "params": '{"length": 14}', "start": "2024-01-01T00:00:00Z"},
        )

        assert response.status_code == 200
        assert response.json()[0]["value"] == 42.0
        args = app.state.indicator_cache.get_range.await_args.args
        assert args[:4] == ("BTC", "1m", "RSI", {"length": 14})
        assert args[4] == START_MS

    def test_bad_params(self):
        response = TestClient(make_app()).get("/api/indicators/BTC/1m", params={"type": "RSI", "params": "[1]"})
        assert response.status_code == 400

    def test_latest_missing(self):
        app = make_app()
        app.state.indicator_cache.get_latest = AsyncMock(return_value=None)
        response = TestClient(app).get("/api/indicators/BTC/1m/latest", params={"type": "RSI"})
        assert response.status_code == 404


# ---------------------------------------------------------------------------
# Monitor and feed
# ---------------------------------------------------------------------------

class TestMonitorRoutes:
    def test_disabled(self):
        client = TestClient(make_app())
        assert client.get("/api/monitor/status").json() == {"is_running": False, "enabled": False}
        assert client.post("/api/monitor/check").status_code == 503

    def test_status(self):
        monitor = MagicMock()
        monitor.status.return_value = {"is_running": True, "cycles_run": 4}
        client = TestClient(make_app(monitor=monitor))
        assert client.get("/api/monitor/status").json() == {"enabled": True, "is_running": True, "cycles_run": 4}

    def test_manual_check(self):
        monitor = MagicMock()
        monitor.trigger_check = AsyncMock(return_value=CycleStats(started_at=1, strategies_checked=2, triggered=1))
        client = TestClient(make_app(monitor=monitor))

        data = client.post("/api/monitor/check").json()
        assert data["ran"] is True
        assert data["strategies_checked"] == 2

        monitor.trigger_check = AsyncMock(return_value=None)
        assert client.post("/api/monitor/check").json()["ran"] is False

    def test_clear_cache(self):
        monitor = MagicMock()
        client = TestClient(make_app(monitor=monitor))
        assert client.post("/api/monitor/cache/clear").json() == {"cleared": True}
        monitor.clear_cache.assert_called_once()


class TestFeedRoutes:
    def test_ingest_and_read(self):
        client = TestClient(make_app())
        rows = [{"t": START_MS + i * MINUTE, "yb": 40 + i, "nb": 60 - i} for i in range(6)]

        response = client.post("/api/feed/btc/ticks", json=rows)
        assert response.json() == {"accepted": 6, "candles_closed": 2 * 5 + 2 * 1}

        candles = client.get("/api/feed/btc/1m", params={"limit": 2}).json()
        assert [c["timestamp"] for c in candles] == [START_MS + 3 * MINUTE, START_MS + 4 * MINUTE]

        short = client.get("/api/feed/btc/1m", params={"direction": "DOWN"}).json()
        assert short[0]["close"] == pytest.approx(0.60)


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------

class TestWebSocket:
    def test_connect_and_ping(self):
        client = TestClient(make_app())
        with client.websocket_connect("/ws") as ws:
            assert orjson.loads(ws.receive_text())["type"] == "connected"
            ws.send_text('{"type": "ping"}')
            assert orjson.loads(ws.receive_text())["type"] == "pong"
            ws.send_text("not json")
            assert orjson.loads(ws.receive_text())["type"] == "error"

    def test_subscribe(self):
        client = TestClient(make_app())
        with client.websocket_connect("/ws") as ws:
            ws.receive_text()
            ws.send_text('{"type": "subscribe", "assets": ["btc", "ETH"]}')
            frame = orjson.loads(ws.receive_text())
            assert frame["type"] == "subscribed"
            assert frame["data"]["assets"] == ["BTC", "ETH"]

            ws.send_text('{"type": "subscribe", "assets": "BTC"}')
            assert orjson.loads(ws.receive_text())["type"] == "error"

            ws.send_text('{"type": "unsubscribe"}')
            assert orjson.loads(ws.receive_text())["data"]["assets"] == []

    @pytest.mark.asyncio
    async def test_send_trigger_drops_dead_clients(self):
        manager = ConnectionManager()
        alive, dead = MagicMock(), MagicMock()
        alive.send_text = AsyncMock()
        dead.send_text = AsyncMock(side_effect=RuntimeError("closed"))
        manager._clients.update({alive: None, dead: None})

        await manager.send_trigger(make_trigger("BTC"))

        frame = orjson.loads(alive.send_text.await_args.args[0])
        assert frame["type"] == "strategy_trigger"
        assert frame["data"]["strategy_id"] == "s1"
        assert manager.connection_count == 1

    @pytest.mark.asyncio
    async def test_asset_filter(self):
        manager = ConnectionManager()
        btc_only, everything = MagicMock(), MagicMock()
        btc_only.send_text = AsyncMock()
        everything.send_text = AsyncMock()
        manager._clients.update({btc_only: None, everything: None})
        await manager.subscribe(btc_only, ["btc"])

        await manager.send_trigger(make_trigger("ETH"))
        btc_only.send_text.assert_not_awaited()
        everything.send_text.assert_awaited_once()

        await manager.send_trigger(make_trigger("BTC"))
        btc_only.send_text.assert_awaited_once()


def make_trigger(asset: str) -> StrategyTrigger:
    return StrategyTrigger(
        strategy_id="s1",
        strategy_name="Test",
        asset=asset,
        direction="UP",
        triggered_conditions=[],
        indicator_values={},
        timestamp=START_MS,
    )
