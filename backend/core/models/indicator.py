"""Indicator result model."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(slots=True)
class IndicatorResult:
    """One point of an indicator series.

    ``value`` is the primary scalar (RSI, MACD histogram, Bollinger basis,
    Stochastic %K). ``values`` holds named sub-series for multi-output
    indicators.
    """

    timestamp: int
    value: float | None
    values: dict[str, float | None] | None = None

    def get(self, field: str | None = None) -> float | None:
        """Get the primary value, or a named sub-value if ``field`` is given."""
        if field is None:
            return self.value
        if self.values is None:
            return None
        return self.values.get(field)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"timestamp": self.timestamp, "value": self.value}
        if self.values is not None:
            data["values"] = dict(self.values)
        return data
