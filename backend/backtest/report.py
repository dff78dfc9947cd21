"""Report formatting for backtest results.

Outputs results to console (formatted tables) and JSON files.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal

from backtest.stats import BacktestResult


class DecimalEncoder(json.JSONEncoder):
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


def _fmt_time(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


class ReportFormatter:
    """Format backtest results for display and export."""

    @staticmethod
    def print_console(result: BacktestResult, max_trades: int = 20) -> None:
        """Print formatted report to console."""
        print("\n" + "=" * 70)
        print(f"  BACKTEST RESULTS: {result.strategy_name}")
        print("=" * 70)
        print(f"  Period:    {result.start_time:%Y-%m-%d %H:%M} → {result.end_time:%Y-%m-%d %H:%M}")
        print(f"  Market:    {result.market_id}")
        print(f"  Timeframe: {result.timeframe}")
        print(f"  Candles:   {result.candles_processed} ({result.conditions_triggered} triggers)")

        print("\n" + "-" * 70)
        print("  OVERALL")
        print("-" * 70)
        print(f"  Initial balance: {result.initial_balance:>12.2f}")
        print(f"  Final balance:   {result.final_balance:>12.2f}")
        print(f"  Total PnL:       {result.total_pnl:>+12.2f} ({result.total_pnl_percent:+.2f}%)")
        print(f"  Trades:          {result.total_trades:>12}")
        print(f"  Wins / Losses:   {result.winning_trades:>5} / {result.losing_trades}")
        print(f"  Win rate:        {result.win_rate:>11.1f}%")
        print(f"  Avg win:         {result.avg_win:>12.2f}")
        print(f"  Avg loss:        {result.avg_loss:>12.2f}")
        print(f"  Profit factor:   {result.profit_factor:>12.2f}")
        print(f"  Max drawdown:    {result.max_drawdown:>12.2f} ({result.max_drawdown_percent:.2f}%)")
        print(f"  Sharpe ratio:    {result.sharpe_ratio:>12.2f}")

        if result.trades:
            print("\n" + "-" * 70)
            print(f"  TRADES (last {min(max_trades, len(result.trades))})")
            print("-" * 70)
            print(f"  {'Time':<17} {'Side':<5} {'Price':>8} {'Shares':>8} {'PnL':>10} {'Balance':>10}")
            for t in result.trades[-max_trades:]:
                pnl = f"{t.pnl:+.2f}" if t.pnl is not None else ""
                print(
                    f"  {_fmt_time(t.timestamp):<17} {t.side:<5} {t.price:>8.4f} "
                    f"{t.shares:>8} {pnl:>10} {t.balance:>10.2f}"
                )

        print("\n" + "=" * 70)

    @staticmethod
    def to_dict(result: BacktestResult) -> dict:
        """Convert results to JSON-serializable dict."""
        return result.to_dict()

    @staticmethod
    def to_json(result: BacktestResult) -> str:
        return json.dumps(ReportFormatter.to_dict(result), indent=2, cls=DecimalEncoder)

    @staticmethod
    def save_json(result: BacktestResult, filepath: str) -> None:
        """Save results to JSON file."""
        data = ReportFormatter.to_dict(result)
        with open(filepath, "w") as f:
            json.dump(data, f, indent=2, cls=DecimalEncoder)
        print(f"\nResults saved to {filepath}")
