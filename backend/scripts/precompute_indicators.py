#!/usr/bin/env python3
"""
Precompute the indicator catalogue for recorded markets.

Loads recorded ticks for a market, builds candles for each timeframe and
upserts every indicator point into the indicator_cache table.

Usage:
    python scripts/precompute_indicators.py --market btc-updown-15m --asset BTC --days 7
    python scripts/precompute_indicators.py --market btc-updown-15m --asset BTC --timeframes 15m,1h --cleanup
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config import get_settings
from app.storage import IndicatorCacheRepository, TickRepository, cache, init_database
from core.candle_builder import build_candles

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Precompute cached indicators")
    parser.add_argument("--market", required=True, help="Recorded market id")
    parser.add_argument("--asset", required=True, help="Asset name stored with the rows (e.g. BTC)")
    parser.add_argument("--days", type=int, default=7, help="Days of history to load (default: 7)")
    parser.add_argument(
        "--timeframes",
        type=str,
        default=",".join(settings.precompute_timeframes),
        help="Comma-separated timeframes",
    )
    parser.add_argument("--direction", default="UP", help="Price side: UP (yes) or DOWN (no)")
    parser.add_argument("--cleanup", action="store_true", help="Delete rows past the retention window")
    return parser.parse_args()


async def main():
    args = parse_args()
    settings = get_settings()

    db = await init_database()
    await cache.init_cache()

    try:
        end = datetime.now(timezone.utc)
        start = end - timedelta(days=args.days)
        ticks = await TickRepository().get_range(args.market, start, end)
        if not ticks:
            logger.warning(f"No ticks for {args.market} in the last {args.days} days")
            return

        repo = IndicatorCacheRepository()
        for timeframe in (t.strip() for t in args.timeframes.split(",")):
            candles = build_candles(ticks, timeframe, args.direction)
            saved = await repo.precompute(args.asset, timeframe, candles)
            print(f"{args.asset} {timeframe}: {len(candles)} candles, {saved} points saved")

        if args.cleanup:
            deleted = await repo.cleanup(settings.indicator_cache_retention_days)
            print(f"Cleanup: {deleted} rows deleted")
    finally:
        await cache.close_cache()
        await db.close()


if __name__ == "__main__":
    asyncio.run(main())
