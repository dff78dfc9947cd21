"""Business services."""

from app.services.candle_feed import CandleFeed, side_for
from app.services.strategy_monitor import CycleStats, StrategyMonitor, TriggerPolicy
from app.services.trigger_channel import TriggerChannel

__all__ = [
    "CandleFeed",
    "side_for",
    "CycleStats",
    "StrategyMonitor",
    "TriggerPolicy",
    "TriggerChannel",
]
