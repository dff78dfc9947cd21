"""Redis cache layer for hot indicator data.

Holds the newest precomputed point of each cached indicator series so the
API and dashboards can answer "latest value" without touching Postgres.

Key layout:
- ind:latest:{ASSET}:{timeframe}:{type}:{params} -> JSON IndicatorResult

Every call degrades to a miss (None / False) when Redis is down or not
configured; callers fall back to the database or to direct computation.
"""

from __future__ import annotations

import logging
from typing import Any

import orjson
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from app.config import get_settings

logger = logging.getLogger(__name__)

_pool: ConnectionPool | None = None
_client: redis.Redis | None = None

KEY_PREFIX_INDICATOR_LATEST = "ind:latest:"

# Latest-point entries outlive one precompute interval by a wide margin
INDICATOR_LATEST_TTL = 3600


def indicator_latest_key(asset: str, timeframe: str, indicator_type: str, params_key: str) -> str:
    return f"{KEY_PREFIX_INDICATOR_LATEST}{asset}:{timeframe}:{indicator_type}:{params_key}"


# =============================================================================
# Connection management
# =============================================================================

async def init_cache() -> None:
    """Create the Redis pool and verify the server answers."""
    global _pool, _client

    if _client is not None:
        return

    settings = get_settings()
    _pool = ConnectionPool.from_url(
        settings.redis_url,
        max_connections=settings.redis_max_connections,
        socket_timeout=5,
        decode_responses=False,
    )
    _client = redis.Redis(connection_pool=_pool)

    try:
        await _client.ping()
        logger.info(f"Redis connected: {settings.redis_url}")
    except redis.RedisError as e:
        logger.warning(f"Redis unavailable ({e}); indicator latest-values served from Postgres")
        _client = None
        _pool = None


async def close_cache() -> None:
    global _pool, _client

    if _client is not None:
        await _client.aclose()
        _client = None

    if _pool is not None:
        await _pool.disconnect()
        _pool = None

    logger.info("Redis connection closed")


def is_cache_available() -> bool:
    return _client is not None


# =============================================================================
# JSON values (orjson)
# =============================================================================

async def get_json(key: str) -> Any | None:
    """Get and decode a JSON value; None on miss or error."""
    if _client is None:
        return None

    try:
        data = await _client.get(key)
    except redis.RedisError as e:
        logger.warning(f"Redis GET {key} failed: {e}")
        return None

    if data is None:
        return None
    try:
        return orjson.loads(data)
    except orjson.JSONDecodeError as e:
        logger.warning(f"Bad JSON under {key}: {e}")
        return None


async def set_json(key: str, value: Any, ttl: int | None = None) -> bool:
    """Encode and store a JSON value.

    Returns:
        True if stored, False if Redis is unavailable or the write failed
    """
    if _client is None:
        return False

    try:
        data = orjson.dumps(value)
    except TypeError as e:
        logger.warning(f"Cannot encode value for {key}: {e}")
        return False

    try:
        if ttl:
            await _client.setex(key, ttl, data)
        else:
            await _client.set(key, data)
        return True
    except redis.RedisError as e:
        logger.warning(f"Redis SET {key} failed: {e}")
        return False
