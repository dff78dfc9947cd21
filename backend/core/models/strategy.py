"""Strategy configuration and trigger models.

Strategies are owned by an external store and arrive as camelCase JSON
(``sourceA``, ``useInConditions``, ``conditionLogic``); the models accept
both that form and snake_case field names. Order actions stored next to the
conditions (``actions: [{conditionId, action}]``) are folded into each
condition's ``action``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

# Indicator timeframe marker meaning "same timeframe as the strategy"
USE_STRATEGY_TIMEFRAME = "Use strategy timeframe"

PriceField = Literal["open", "high", "low", "close"]


class _StoreModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class IndicatorConfig(_StoreModel):
    """An indicator configured on a strategy."""

    id: str
    type: str
    timeframe: str = USE_STRATEGY_TIMEFRAME
    parameters: dict[str, float] = Field(default_factory=dict)
    use_in_conditions: bool = True

    def resolve_timeframe(self, strategy_timeframe: str) -> str:
        if not self.timeframe or self.timeframe == USE_STRATEGY_TIMEFRAME:
            return strategy_timeframe
        return self.timeframe

    @property
    def label(self) -> str:
        """Short human-readable name, e.g. ``RSI(14)``."""
        if not self.parameters:
            return self.type
        params = ",".join(_format_number(v) for v in self.parameters.values())
        return f"{self.type}({params})"


class Condition(_StoreModel):
    """A single boolean condition ``source_a <operator> source_b``."""

    id: str
    source_a: str
    operator: str
    source_b: str = "value"
    value: float | None = None
    value2: float | None = None
    # Trade side signalled when this condition is satisfied ("buy"/"sell")
    action: str | None = None


class Strategy(_StoreModel):
    """A trading strategy: indicators plus a combined condition set."""

    id: str = ""
    name: str = ""
    asset: str
    direction: str = "UP"
    timeframe: str = "15m"
    indicators: list[IndicatorConfig] = Field(default_factory=list)
    condition_logic: Literal["all", "any"] = "all"
    conditions: list[Condition] = Field(default_factory=list)
    is_active: bool = True
    market: str | None = None
    side: str | None = None
    fixed_shares_amount: float | None = None

    @model_validator(mode="before")
    @classmethod
    def _fold_actions(cls, data: Any) -> Any:
        """Fold stored ``actions: [{conditionId, action}]`` into the conditions."""
        if not isinstance(data, dict):
            return data
        by_condition = {
            a.get("conditionId") or a.get("condition_id"): a.get("action")
            for a in data.get("actions") or []
            if isinstance(a, dict)
        }
        if not by_condition:
            return data

        conditions = []
        for condition in data.get("conditions") or []:
            if isinstance(condition, dict):
                condition = dict(condition)
                action = by_condition.get(condition.get("id"))
                if action and not condition.get("action"):
                    condition["action"] = action
            conditions.append(condition)
        return {**data, "conditions": conditions}

    @property
    def is_long(self) -> bool:
        """Long side prices off the yes-bid, short side off the no-bid."""
        return self.direction.lower() in ("up", "long", "yes")

    @property
    def condition_indicators(self) -> list[IndicatorConfig]:
        return [i for i in self.indicators if i.use_in_conditions]


# =============================================================================
# Resolved condition sources
# =============================================================================

@dataclass(slots=True, frozen=True)
class PriceSource:
    """A candle price field."""

    field: PriceField = "close"

    @property
    def label(self) -> str:
        return self.field.capitalize()


@dataclass(slots=True, frozen=True)
class IndicatorSource:
    """Output of a configured indicator, optionally a named sub-field."""

    indicator_id: str
    field: str | None = None

    @property
    def key(self) -> str:
        return f"indicator_{self.indicator_id}"


@dataclass(slots=True, frozen=True)
class ValueSource:
    """A constant taken from the condition's ``value``."""

    value: float | None

    @property
    def label(self) -> str:
        return "" if self.value is None else _format_number(self.value)


Source = PriceSource | IndicatorSource | ValueSource


@dataclass(slots=True, frozen=True)
class ResolvedCondition:
    """A condition with its sources validated and its operator normalized."""

    condition: Condition
    source_a: Source
    operator: str
    source_b: Source

    @property
    def id(self) -> str:
        return self.condition.id

    @property
    def action(self) -> str | None:
        return self.condition.action


@dataclass(slots=True)
class CompiledStrategy:
    """A strategy validated once at load time, ready for evaluation."""

    strategy: Strategy
    conditions: list[ResolvedCondition]
    indicators: dict[str, IndicatorConfig]

    @property
    def id(self) -> str:
        return self.strategy.id


@dataclass(slots=True)
class StrategyTrigger:
    """Event emitted when a strategy's condition set evaluates true."""

    strategy_id: str
    strategy_name: str
    asset: str
    direction: str
    triggered_conditions: list[dict[str, str]]
    indicator_values: dict[str, float | None]
    timestamp: int
    candle_timestamp: int | None = None
    attempts: int = field(default=0, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy_id": self.strategy_id,
            "strategy_name": self.strategy_name,
            "asset": self.asset,
            "direction": self.direction,
            "triggered_conditions": self.triggered_conditions,
            "indicator_values": self.indicator_values,
            "timestamp": self.timestamp,
            "candle_timestamp": self.candle_timestamp,
        }


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:g}"
