"""Condition evaluation for strategies.

Strategies are compiled once: every ``source_a`` / ``source_b`` string is
resolved into a PriceSource, IndicatorSource or ValueSource and every
operator is normalized. Evaluation then works on those resolved values
against an EvaluationContext (price candles plus indicator series).

Source grammar accepted from the strategy store:
- ``Open`` / ``High`` / ``Low`` / ``Close`` (any case), ``price`` (= Close)
- ``indicator_<id>`` or ``<id>``, optionally ``.<field>`` for multi-output
  indicators (``indicator_macd1.signal``)
- ``value`` or empty: the condition's constant ``value``

Indicator series are looked up as-of the bar being evaluated: the latest
point whose candle had closed by the time the bar closed. Indicators on the
strategy timeframe line up one-to-one; warm-up gaps read as undefined.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from core.errors import StrategyConfigError
from core.models.candle import Candle
from core.models.indicator import IndicatorResult
from core.models.strategy import (
    CompiledStrategy,
    IndicatorConfig,
    IndicatorSource,
    PriceSource,
    ResolvedCondition,
    Source,
    Strategy,
    ValueSource,
)

logger = logging.getLogger(__name__)

# |a - b| below this counts as equal
EQUALS_EPSILON = 1e-4

OPERATORS = frozenset({
    ">", "<", ">=", "<=", "==", "between", "crosses_above", "crosses_below",
})

# Spellings found in stored strategies
OPERATOR_ALIASES = {
    "greater than": ">",
    "greater_than": ">",
    "less than": "<",
    "less_than": "<",
    "greater than or equal": ">=",
    "greater_equal": ">=",
    "greater_than_or_equal": ">=",
    "less than or equal": "<=",
    "less_equal": "<=",
    "less_than_or_equal": "<=",
    "equals": "==",
    "=": "==",
    "crosses above": "crosses_above",
    "crosses below": "crosses_below",
}

_OPERATOR_LABELS = {
    "crosses_above": "crosses above",
    "crosses_below": "crosses below",
}

_PRICE_FIELDS = {
    "open": "open",
    "high": "high",
    "low": "low",
    "close": "close",
    "price": "close",
}

INDICATOR_PREFIX = "indicator_"


def normalize_operator(operator: str) -> str | None:
    """Map an operator spelling to its canonical form, or None if unknown."""
    op = operator.strip()
    if op in OPERATORS:
        return op
    return OPERATOR_ALIASES.get(op.lower())


def parse_source(
    raw: str | None,
    indicators: Mapping[str, IndicatorConfig],
    value: float | None = None,
) -> Source:
    """
    Resolve a raw source string.

    Args:
        raw: Source string from the strategy store
        indicators: Configured indicators by id
        value: The condition's constant, used for ``value`` sources

    Returns:
        The resolved source

    Raises:
        StrategyConfigError: If the string names no price field and no
            configured indicator
    """
    text = (raw or "").strip()
    if not text or text.lower() == "value":
        return ValueSource(value)

    price_field = _PRICE_FIELDS.get(text.lower())
    if price_field is not None:
        return PriceSource(price_field)

    ref, _, sub_field = text.partition(".")
    indicator_id = ref[len(INDICATOR_PREFIX):] if ref.startswith(INDICATOR_PREFIX) else ref
    if indicator_id not in indicators and ref in indicators:
        indicator_id = ref
    if indicator_id not in indicators:
        raise StrategyConfigError(None, f"Unknown condition source '{text}'")

    return IndicatorSource(indicator_id, sub_field or None)


def compile_strategy(strategy: Strategy) -> CompiledStrategy:
    """
    Validate a strategy's conditions and resolve their sources.

    Unknown operators are kept (they evaluate false with a warning) so one
    bad condition under ``any`` logic does not disable the others.

    Raises:
        StrategyConfigError: On an unresolvable source reference
    """
    indicators = {i.id: i for i in strategy.indicators}
    resolved = []

    for condition in strategy.conditions:
        try:
            source_a = parse_source(condition.source_a, indicators, condition.value)
            source_b = parse_source(condition.source_b, indicators, condition.value)
        except StrategyConfigError as e:
            raise StrategyConfigError(strategy.id, f"condition {condition.id}: {e.message}") from None

        if isinstance(source_a, ValueSource):
            raise StrategyConfigError(
                strategy.id, f"condition {condition.id}: source A must be a price or indicator"
            )

        operator = normalize_operator(condition.operator) or condition.operator
        resolved.append(ResolvedCondition(condition, source_a, operator, source_b))

    return CompiledStrategy(strategy=strategy, conditions=resolved, indicators=indicators)


# =============================================================================
# Evaluation context
# =============================================================================

class IndicatorSeries:
    """An indicator series with as-of lookup by close time."""

    __slots__ = ("results", "interval_ms", "_close_times")

    def __init__(self, results: Sequence[IndicatorResult], interval_ms: int = 0):
        self.results = results
        self.interval_ms = interval_ms
        self._close_times = [r.timestamp + interval_ms for r in results]

    def as_of(self, close_time: int) -> IndicatorResult | None:
        """Latest point whose candle closed at or before ``close_time``."""
        pos = bisect.bisect_right(self._close_times, close_time)
        if pos == 0:
            return None
        return self.results[pos - 1]

    def __len__(self) -> int:
        return len(self.results)


@dataclass
class EvaluationContext:
    """Price candles and indicator series a strategy is evaluated against.

    ``interval_ms`` is the price candle interval; series registered without
    their own interval are assumed to share it.
    """

    candles: Sequence[Candle]
    interval_ms: int = 0
    series: dict[str, IndicatorSeries] = field(default_factory=dict)

    def add_series(
        self,
        indicator_id: str,
        results: Sequence[IndicatorResult],
        interval_ms: int | None = None,
    ) -> None:
        self.series[indicator_id] = IndicatorSeries(
            results, self.interval_ms if interval_ms is None else interval_ms
        )

    @property
    def last_index(self) -> int:
        return len(self.candles) - 1

    def value(self, source: Source, index: int) -> float | None:
        """Value of a source at a candle index, or None if undefined."""
        if isinstance(source, ValueSource):
            return source.value

        if index < 0 or index >= len(self.candles):
            return None
        candle = self.candles[index]

        if isinstance(source, PriceSource):
            return getattr(candle, source.field)

        series = self.series.get(source.indicator_id)
        if series is None:
            return None
        point = series.as_of(candle.timestamp + self.interval_ms)
        if point is None:
            return None
        return point.get(source.field)

    def latest_values(self, indicator_ids: Sequence[str]) -> dict[str, float | None]:
        """Latest primary value of each series, keyed ``indicator_<id>``."""
        latest = {}
        for indicator_id in indicator_ids:
            series = self.series.get(indicator_id)
            if series is not None and len(series) > 0:
                latest[f"{INDICATOR_PREFIX}{indicator_id}"] = series.results[-1].value
        return latest


# =============================================================================
# Evaluation
# =============================================================================

def evaluate_condition(
    condition: ResolvedCondition,
    context: EvaluationContext,
    index: int | None = None,
) -> bool:
    """
    Evaluate one condition at a bar (defaults to the last candle).

    Cross operators compare the previous and current bar:
    crosses_above is prev_a < prev_b and cur_a >= cur_b, crosses_below is
    prev_a > prev_b and cur_a <= cur_b. Any undefined value makes the
    condition false.
    """
    if index is None:
        index = context.last_index

    op = condition.operator
    if op not in OPERATORS:
        logger.warning(f"Unknown operator '{op}' in condition {condition.id}")
        return False

    cur_a = context.value(condition.source_a, index)
    cur_b = context.value(condition.source_b, index)
    if cur_a is None or cur_b is None:
        return False

    if op == ">":
        return cur_a > cur_b
    if op == "<":
        return cur_a < cur_b
    if op == ">=":
        return cur_a >= cur_b
    if op == "<=":
        return cur_a <= cur_b
    if op == "==":
        return abs(cur_a - cur_b) < EQUALS_EPSILON
    if op == "between":
        upper = condition.condition.value2
        if upper is None:
            return False
        return cur_b <= cur_a <= upper

    if index < 1:
        return False
    prev_a = context.value(condition.source_a, index - 1)
    prev_b = context.value(condition.source_b, index - 1)
    if prev_a is None or prev_b is None:
        return False

    if op == "crosses_above":
        return prev_a < prev_b and cur_a >= cur_b
    return prev_a > prev_b and cur_a <= cur_b


@dataclass(slots=True)
class ConditionSetResult:
    """Outcome of evaluating a strategy's condition set at one bar."""

    triggered: bool
    met: list[ResolvedCondition] = field(default_factory=list)

    @property
    def actions(self) -> list[str]:
        """Trade actions carried by the satisfied conditions, lower-cased."""
        return [c.action.lower() for c in self.met if c.action]


def evaluate_conditions(
    strategy: CompiledStrategy,
    context: EvaluationContext,
    index: int | None = None,
) -> ConditionSetResult:
    """
    Evaluate a compiled strategy's condition set.

    ``all`` requires every condition, ``any`` at least one. An empty
    condition list never triggers.
    """
    if not strategy.conditions:
        return ConditionSetResult(triggered=False)

    outcomes = [(c, evaluate_condition(c, context, index)) for c in strategy.conditions]
    met = [c for c, ok in outcomes if ok]

    if strategy.strategy.condition_logic == "all":
        triggered = len(met) == len(outcomes)
    else:
        triggered = bool(met)

    return ConditionSetResult(triggered=triggered, met=met)


def _describe_source(source: Source, indicators: Mapping[str, IndicatorConfig]) -> str:
    if isinstance(source, PriceSource):
        return source.label
    if isinstance(source, ValueSource):
        return source.label
    config = indicators.get(source.indicator_id)
    name = config.label if config is not None else f"Indicator {source.indicator_id}"
    return f"{name}.{source.field}" if source.field else name


def describe_condition(
    condition: ResolvedCondition,
    indicators: Mapping[str, IndicatorConfig],
) -> str:
    """Human-readable condition, e.g. ``RSI(14) crosses above 70``."""
    left = _describe_source(condition.source_a, indicators)
    op = _OPERATOR_LABELS.get(condition.operator, condition.operator)
    right = _describe_source(condition.source_b, indicators)

    if condition.operator == "between":
        upper = condition.condition.value2
        upper_label = ValueSource(upper).label
        return f"{left} between {right} and {upper_label}"

    return f"{left} {op} {right}".rstrip()
