"""REST API routes.

Long-lived services (strategy monitor, indicator cache, tick repository)
are created in the application lifespan and read from ``request.app.state``.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import orjson
from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from backtest.runner import BacktestConfig, BacktestRunner
from core.errors import InsufficientDataError, NoPriceDataError, StrategyConfigError
from core.indicators import SUPPORTED_INDICATORS
from core.models.candle import Tick
from core.models.strategy import Strategy

logger = logging.getLogger(__name__)

router = APIRouter()


class BacktestRequest(BaseModel):
    """Backtest request model."""

    strategy: Strategy
    start_time: datetime
    end_time: datetime
    initial_balance: float = Field(1000.0, gt=0)
    market_id: Optional[str] = None


class ProfitabilityRequest(BaseModel):
    strategy: Strategy
    market_id: Optional[str] = None
    lookback_days: int = Field(7, ge=1, le=90)


class IndicatorPoint(BaseModel):
    timestamp: int
    value: Optional[float] = None
    values: Optional[dict[str, Optional[float]]] = None


def _parse_params(params: str | None) -> dict[str, Any]:
    if not params:
        return {}
    try:
        parsed = orjson.loads(params)
    except orjson.JSONDecodeError:
        raise HTTPException(status_code=400, detail="params must be a JSON object")
    if not isinstance(parsed, dict):
        raise HTTPException(status_code=400, detail="params must be a JSON object")
    return parsed


def _to_ms(value: datetime | None) -> int | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _runner(request: Request) -> BacktestRunner:
    return BacktestRunner(request.app.state.tick_repo)


# =============================================================================
# Backtests
# =============================================================================

@router.post("/backtest")
async def run_backtest(body: BacktestRequest, request: Request):
    """Run a backtest over recorded prices."""
    start, end = _aware(body.start_time), _aware(body.end_time)
    if end <= start:
        raise HTTPException(status_code=400, detail="end_time must be after start_time")

    config = BacktestConfig(
        strategy=body.strategy,
        start_time=start,
        end_time=end,
        initial_balance=body.initial_balance,
        market_id=body.market_id,
    )

    try:
        result = await _runner(request).run(config)
    except InsufficientDataError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except NoPriceDataError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (StrategyConfigError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    return result.to_dict()


@router.post("/backtest/profitable")
async def check_profitable(body: ProfitabilityRequest, request: Request):
    """Quick profitability check over the last ``lookback_days``."""
    return await _runner(request).is_strategy_profitable(
        body.strategy, market_id=body.market_id, lookback_days=body.lookback_days
    )


# =============================================================================
# Indicator cache
# =============================================================================

@router.get("/indicators", response_model=list[str])
async def list_indicators():
    """Supported indicator types."""
    return list(SUPPORTED_INDICATORS)


@router.get("/indicators/{asset}/{timeframe}", response_model=list[IndicatorPoint])
async def get_indicator_range(
    request: Request,
    asset: str,
    timeframe: str,
    type: str = Query(..., description="Indicator type, e.g. RSI"),
    params: Optional[str] = Query(None, description='Parameters as JSON, e.g. {"length":14}'),
    start: Optional[datetime] = Query(None, description="Range start"),
    end: Optional[datetime] = Query(None, description="Range end"),
):
    """Cached indicator points in ascending time order."""
    if start is None and end is None:
        end = datetime.now(timezone.utc)
        start = end - timedelta(days=1)

    results = await request.app.state.indicator_cache.get_range(
        asset, timeframe, type, _parse_params(params), _to_ms(start), _to_ms(end)
    )
    return [r.to_dict() for r in results]


@router.get("/indicators/{asset}/{timeframe}/latest", response_model=IndicatorPoint)
async def get_indicator_latest(
    request: Request,
    asset: str,
    timeframe: str,
    type: str = Query(..., description="Indicator type, e.g. RSI"),
    params: Optional[str] = Query(None, description="Parameters as JSON"),
):
    """Newest cached indicator point."""
    latest = await request.app.state.indicator_cache.get_latest(
        asset, timeframe, type, _parse_params(params)
    )
    if latest is None:
        raise HTTPException(status_code=404, detail="No cached value")
    return latest.to_dict()


# =============================================================================
# Strategy monitor
# =============================================================================

@router.get("/monitor/status")
async def monitor_status(request: Request):
    """Strategy monitor status."""
    monitor = getattr(request.app.state, "monitor", None)
    if monitor is None:
        return {"is_running": False, "enabled": False}
    return {"enabled": True, **monitor.status()}


@router.post("/monitor/check")
async def monitor_check(request: Request):
    """Run a monitor cycle now."""
    monitor = getattr(request.app.state, "monitor", None)
    if monitor is None:
        raise HTTPException(status_code=503, detail="Strategy monitor disabled")

    stats = await monitor.trigger_check()
    if stats is None:
        return {"ran": False, "reason": "A check is already running"}
    return {"ran": True, **stats.to_dict()}


@router.post("/monitor/cache/clear")
async def monitor_clear_cache(request: Request):
    monitor = getattr(request.app.state, "monitor", None)
    if monitor is None:
        raise HTTPException(status_code=503, detail="Strategy monitor disabled")
    monitor.clear_cache()
    return {"cleared": True}


# =============================================================================
# Candle feed
# =============================================================================

class TickRow(BaseModel):
    """A quote in the stored short-key form."""

    t: int
    yb: float = 0
    ya: float = 0
    nb: float = 0
    na: float = 0


@router.post("/feed/{symbol}/ticks")
async def ingest_ticks(symbol: str, ticks: list[TickRow], request: Request):
    """Feed quote ticks for a symbol into the live candle feed."""
    feed = request.app.state.candle_feed
    closed = 0
    for row in ticks:
        closed += len(await feed.ingest(symbol, Tick.from_row(row.model_dump())))
    return {"accepted": len(ticks), "candles_closed": closed}


@router.get("/feed/{symbol}/{timeframe}")
async def get_feed_candles(
    symbol: str,
    timeframe: str,
    request: Request,
    direction: str = Query("UP", description="UP prices the yes side, DOWN the no side"),
    limit: int = Query(100, ge=1, le=1000),
):
    """Closed candles held by the live feed, oldest first."""
    candles = request.app.state.candle_feed.get_candles(symbol, timeframe, direction, limit)
    return [c.to_dict() for c in candles]
