"""CLI entry point for the backtesting system.

Completely independent of app/: strategies come from a YAML (or JSON)
file and ticks from the recorded price_events table.

Usage:
    python -m backtest --strategy-file strategies.yaml --start 2025-06-01 --end 2025-06-08
    python -m backtest --strategy-file strategies.yaml --strategy-id abc --market btc-updown-15m
    python -m backtest --strategy-file strategies.yaml --quick
"""

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

# Add backend to Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.errors import EngineError
from core.models.strategy import Strategy

from backtest.config import get_backtest_settings
from backtest.report import ReportFormatter
from backtest.runner import BacktestConfig, BacktestRunner
from backtest.storage.database import BacktestDatabase
from backtest.storage.tick_source import PostgresTickSource


def parse_date(date_str: str) -> datetime:
    """Parse YYYY-MM-DD or an ISO timestamp to a timezone-aware datetime."""
    for fmt in ("%Y-%m-%d", "%Y-%m-%dT%H:%M", "%Y-%m-%dT%H:%M:%S"):
        try:
            return datetime.strptime(date_str, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    raise argparse.ArgumentTypeError(
        f"Invalid date format: {date_str} (expected YYYY-MM-DD or YYYY-MM-DDTHH:MM)"
    )


def parse_balance(value: str) -> Decimal:
    try:
        balance = Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"Invalid balance: {value}")
    if balance <= 0:
        raise argparse.ArgumentTypeError("Balance must be positive")
    return balance


def load_strategy(path: Path, strategy_id: str | None = None) -> Strategy:
    """
    Load one strategy from a YAML/JSON file.

    The file holds a single strategy, a list of strategies, or a mapping
    with a ``strategies`` list. Without ``strategy_id`` the first one is used.
    """
    load_dotenv(path.parent / ".env", override=False)
    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    if isinstance(raw, dict) and "strategies" in raw:
        records = raw["strategies"] or []
    elif isinstance(raw, list):
        records = raw
    else:
        records = [raw]

    if strategy_id is not None:
        records = [r for r in records if str(r.get("id")) == strategy_id]
    if not records:
        raise ValueError(f"No matching strategy in {path}")

    return Strategy.model_validate(records[0])


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Backtest a strategy against recorded market prices",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m backtest --strategy-file strategies.yaml --start 2025-06-01 --end 2025-06-08
  python -m backtest --strategy-file strategies.yaml --market btc-updown-15m --balance 500
  python -m backtest --strategy-file strategies.yaml --quick
        """,
    )
    parser.add_argument(
        "--strategy-file",
        type=Path,
        required=True,
        help="YAML or JSON file with the strategy definition",
    )
    parser.add_argument(
        "--strategy-id",
        type=str,
        default=None,
        help="Strategy id to pick from a multi-strategy file (default: first)",
    )
    parser.add_argument(
        "--market",
        type=str,
        default=None,
        help="Market id (default: the strategy's market)",
    )
    parser.add_argument(
        "--start",
        type=parse_date,
        default=None,
        help="Start (YYYY-MM-DD or YYYY-MM-DDTHH:MM, UTC)",
    )
    parser.add_argument(
        "--end",
        type=parse_date,
        default=None,
        help="End (YYYY-MM-DD or YYYY-MM-DDTHH:MM, UTC)",
    )
    parser.add_argument(
        "--balance",
        type=parse_balance,
        default=Decimal(1000),
        help="Initial balance (default: 1000)",
    )
    parser.add_argument(
        "--quick",
        action="store_true",
        help="Only run the 7-day profitability check",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print results as JSON instead of the console report",
    )
    parser.add_argument(
        "--output", "-o",
        type=str,
        default=None,
        help="Output file path for JSON results",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose logging",
    )
    return parser.parse_args()


async def cmd_quick_check(args: argparse.Namespace, runner: BacktestRunner, strategy: Strategy) -> None:
    check = await runner.is_strategy_profitable(strategy, market_id=args.market)
    verdict = "PROFITABLE" if check["profitable"] else "NOT PROFITABLE"
    print(
        f"\n{strategy.name}: {verdict} "
        f"(PnL {check['pnl_percent']:+.2f}%, win rate {check['win_rate']:.1f}%)"
    )


async def cmd_run_backtest(args: argparse.Namespace, runner: BacktestRunner, strategy: Strategy) -> None:
    if args.start is None or args.end is None:
        print("Error: --start and --end are required for a backtest")
        sys.exit(1)

    # A bare end date includes the full day
    end_time = args.end
    if end_time.hour == 0 and end_time.minute == 0 and end_time.second == 0:
        end_time = end_time.replace(hour=23, minute=59, second=59)

    config = BacktestConfig(
        strategy=strategy,
        start_time=args.start,
        end_time=end_time,
        initial_balance=args.balance,
        market_id=args.market,
    )

    try:
        result = await runner.run(config)
    except (EngineError, ValueError) as e:
        print(f"\nBacktest failed: {e}")
        sys.exit(2)

    if args.json:
        print(ReportFormatter.to_json(result))
    else:
        ReportFormatter.print_console(result)

    if args.output:
        ReportFormatter.save_json(result, args.output)


async def main() -> None:
    args = parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    try:
        strategy = load_strategy(args.strategy_file, args.strategy_id)
    except (OSError, ValueError, ValidationError, yaml.YAMLError) as e:
        print(f"Error: cannot load strategy: {e}")
        sys.exit(1)

    settings = get_backtest_settings()
    db = BacktestDatabase(settings.database_url)
    await db.init()

    try:
        runner = BacktestRunner(PostgresTickSource(db.pool), settings)
        if args.quick:
            await cmd_quick_check(args, runner, strategy)
        else:
            await cmd_run_backtest(args, runner, strategy)
    finally:
        await db.close()


if __name__ == "__main__":
    asyncio.run(main())
