"""Main application entry point."""

import asyncio
import logging
import time
from contextlib import asynccontextmanager

# Configure logging FIRST, before any other imports
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
)

# Reduce noise from third-party libraries (must be set before importing them)
logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("asyncio").setLevel(logging.WARNING)

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from app.api import router, manager, websocket_endpoint
from app.config import Settings, get_settings
from app.services import CandleFeed, StrategyMonitor, TriggerChannel
from app.storage import (
    IndicatorCacheRepository,
    StrategyRepository,
    StrategySource,
    TickRepository,
    YamlStrategySource,
    cache,
    get_database,
    init_database,
)
from core.ttl_cache import TTLCache

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 24 * 3600

_background_tasks: list[asyncio.Task] = []


def _strategy_source(settings: Settings) -> StrategySource:
    if settings.strategies_file:
        logger.info(f"Reading strategies from {settings.strategies_file}")
        return YamlStrategySource(settings.strategies_file)
    return StrategyRepository()


async def _periodic_precompute(
    feed: CandleFeed,
    indicator_cache: IndicatorCacheRepository,
    settings: Settings,
) -> None:
    """Precompute the indicator catalogue from the live feed and expire old rows."""
    assets = {symbol: asset for asset, symbol in settings.asset_symbols.items()}
    last_cleanup = 0.0

    while True:
        try:
            await asyncio.sleep(settings.precompute_interval_seconds)

            for symbol in feed.symbols:
                asset = assets.get(symbol, symbol)
                for timeframe in settings.precompute_timeframes:
                    candles = feed.get_candles(symbol, timeframe, "UP")
                    await indicator_cache.precompute(asset, timeframe, candles)

            if time.monotonic() - last_cleanup >= CLEANUP_INTERVAL_SECONDS:
                await indicator_cache.cleanup(settings.indicator_cache_retention_days)
                last_cleanup = time.monotonic()

        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.warning(f"Indicator precompute error: {e}")


async def _stop_background_tasks() -> None:
    for task in _background_tasks:
        task.cancel()
    for task in _background_tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
    _background_tasks.clear()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting market-signal engine...")

    settings = get_settings()
    db_initialized = False
    cache_initialized = False
    monitor: StrategyMonitor | None = None

    try:
        # Initialize database with timeout
        try:
            await asyncio.wait_for(init_database(), timeout=30)
            db_initialized = True
            logger.info("Database initialized")
        except asyncio.TimeoutError:
            raise RuntimeError("Database initialization timed out after 30s")

        # Initialize Redis cache with timeout
        try:
            await asyncio.wait_for(cache.init_cache(), timeout=10)
            cache_initialized = True
            if cache.is_cache_available():
                logger.info("Redis cache initialized")
            else:
                logger.warning("Redis cache unavailable - serving indicator cache from Postgres")
        except asyncio.TimeoutError:
            logger.warning("Redis cache initialization timed out - running without Redis")
            cache_initialized = True

        # Services
        candle_feed = CandleFeed(settings.feed_timeframes, max_candles=settings.max_lookback_candles)
        channel = TriggerChannel(
            maxsize=settings.trigger_queue_size,
            max_attempts=settings.trigger_max_attempts,
        )
        indicator_cache = IndicatorCacheRepository()

        app.state.candle_feed = candle_feed
        app.state.trigger_channel = channel
        app.state.indicator_cache = indicator_cache
        app.state.tick_repo = TickRepository()
        app.state.monitor = None

        # Triggers go out over the WebSocket
        _background_tasks.append(asyncio.create_task(channel.consume(manager.send_trigger)))
        _background_tasks.append(
            asyncio.create_task(_periodic_precompute(candle_feed, indicator_cache, settings))
        )

        if settings.monitor_enabled:
            monitor = StrategyMonitor(
                strategy_source=_strategy_source(settings),
                candle_feed=candle_feed,
                channel=channel,
                asset_symbols=settings.asset_symbols,
                indicator_cache=TTLCache(
                    capacity=settings.indicator_cache_capacity,
                    ttl=settings.indicator_cache_ttl,
                ),
                trigger_policy=settings.trigger_policy,
                offset_seconds=settings.monitor_offset_seconds,
                cycle_timeout=settings.monitor_cycle_timeout,
                max_lookback_candles=settings.max_lookback_candles,
            )
            await monitor.start()
            app.state.monitor = monitor
        else:
            logger.info("Strategy monitor disabled")

    except Exception as e:
        logger.error(f"Startup failed: {e}")
        if monitor:
            try:
                await monitor.stop()
            except Exception as cleanup_err:
                logger.warning(f"Error stopping strategy monitor: {cleanup_err}")
        await _stop_background_tasks()
        if cache_initialized:
            try:
                await cache.close_cache()
            except Exception as cleanup_err:
                logger.warning(f"Error closing cache: {cleanup_err}")
        if db_initialized:
            try:
                await get_database().close()
            except Exception as cleanup_err:
                logger.warning(f"Error closing database: {cleanup_err}")
        raise  # Re-raise to prevent app from starting in broken state

    yield

    # Shutdown
    logger.info("Shutting down...")

    # Stop evaluating first (no more triggers)
    app.state.monitor = None
    if monitor:
        await monitor.stop()

    await _stop_background_tasks()

    await cache.close_cache()

    try:
        await get_database().close()
        logger.info("Database connections closed")
    except Exception as e:
        logger.warning(f"Error closing database: {e}")

    logger.info("Shutdown complete")


# Create FastAPI app with orjson for faster JSON serialization
app = FastAPI(
    title="Market-Signal Engine",
    description="Candles, indicators, strategy triggers and backtests for prediction markets",
    version="0.1.0",
    lifespan=lifespan,
    default_response_class=ORJSONResponse,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include REST routes
app.include_router(router, prefix="/api")

# WebSocket endpoint
app.websocket("/ws")(websocket_endpoint)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Market-Signal Engine",
        "version": "0.1.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "redis": cache.is_cache_available(),
        "websocket_clients": manager.connection_count,
    }


def main():
    """Run the application."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
