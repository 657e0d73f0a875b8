"""Condition tree interpreter.

Each condition model has exactly one evaluator, registered with
@register_condition. The module checks at import time that every variant of
the Condition union is covered, so adding a condition kind without an
evaluator fails loudly instead of silently evaluating to false.
"""

from __future__ import annotations

import logging
import operator
import typing
from typing import Callable

from core.rules.models import (
    CompareCondition,
    Condition,
    ConditionGroup,
    CrossCondition,
    HigherTimeframeCondition,
    MarketOpenCondition,
    TouchCondition,
)
from core.rules.resolver import ResolutionContext, ValueResolver

logger = logging.getLogger(__name__)

# Guards touch tolerance against a zero band
BAND_EPSILON = 1.0

ConditionEvaluatorFn = Callable[[typing.Any, ResolutionContext], bool]

# Global registry: condition model -> evaluator
_EVALUATORS: dict[type, ConditionEvaluatorFn] = {}

_COMPARE_OPS: dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}


def register_condition(model: type):
    """Decorator registering the evaluator for one condition model.

    Raises:
        ValueError: If the model already has an evaluator.
    """

    def decorator(fn: ConditionEvaluatorFn) -> ConditionEvaluatorFn:
        if model in _EVALUATORS:
            raise ValueError(
                f"Condition '{model.__name__}' is already handled by "
                f"{_EVALUATORS[model].__name__}"
            )
        _EVALUATORS[model] = fn
        return fn

    return decorator


def condition_variants() -> tuple[type, ...]:
    """All condition models in the Condition union."""
    union = typing.get_args(Condition)[0]
    return typing.get_args(union)


def evaluate_condition(condition: Condition, context: ResolutionContext) -> bool:
    """Evaluate one condition against a context."""
    evaluator = _EVALUATORS.get(type(condition))
    if evaluator is None:
        raise TypeError(f"No evaluator registered for {type(condition).__name__}")
    return evaluator(condition, context)


def evaluate_group(group: ConditionGroup | None, context: ResolutionContext) -> bool:
    """Evaluate a condition group.

    all_of: every member true (vacuously true when empty).
    any_of: at least one member true.
    Neither (or no group at all): true.
    """
    if group is None:
        return True

    if group.all_of is not None:
        return all(evaluate_condition(c, context) for c in group.all_of)

    if group.any_of is not None:
        return any(evaluate_condition(c, context) for c in group.any_of)

    return True


# ---------------------------------------------------------------------------
# Condition kinds
# ---------------------------------------------------------------------------

@register_condition(CompareCondition)
def _compare(condition: CompareCondition, context: ResolutionContext) -> bool:
    resolver = ValueResolver(context)
    left = resolver.resolve(condition.left)
    right = resolver.resolve(condition.right)
    if left is None or right is None:
        return False

    op = _COMPARE_OPS.get(condition.op)
    if op is None:
        logger.debug("Unknown compare operator %r", condition.op)
        return False
    return op(left, right)


@register_condition(TouchCondition)
def _touch(condition: TouchCondition, context: ResolutionContext) -> bool:
    resolver = ValueResolver(context)
    price = resolver.resolve(condition.series)
    band = resolver.resolve(condition.band)
    if price is None or band is None:
        return False

    denominator = abs(band) if band != 0 else BAND_EPSILON
    return abs(price - band) / denominator <= condition.tolerance_pct


@register_condition(CrossCondition)
def _cross(condition: CrossCondition, context: ResolutionContext) -> bool:
    resolver = ValueResolver(context)
    series_a = resolver.series(condition.a)
    series_b = resolver.series(condition.b)
    if not series_a or not series_b or len(series_a) < 2 or len(series_b) < 2:
        return False

    return find_cross(
        series_a,
        series_b,
        direction=condition.direction,
        lookback=condition.lookback_candles,
    )


def find_cross(
    series_a: list[float],
    series_b: list[float],
    direction: str = "any",
    lookback: int = 1,
) -> bool:
    """Look for a crossing of a over b in the last `lookback` adjacent pairs.

    Both series are read over a common length, newest pair first. Up is
    prev_a < prev_b and curr_a >= curr_b; down is the mirror.
    """
    length = min(len(series_a), len(series_b))
    for step in range(1, min(lookback, length - 1) + 1):
        current = length - step
        previous = current - 1

        prev_a, prev_b = series_a[previous], series_b[previous]
        curr_a, curr_b = series_a[current], series_b[current]

        crossed_up = prev_a < prev_b and curr_a >= curr_b
        crossed_down = prev_a > prev_b and curr_a <= curr_b

        if direction == "up" and crossed_up:
            return True
        if direction == "down" and crossed_down:
            return True
        if direction == "any" and (crossed_up or crossed_down):
            return True

    return False


@register_condition(MarketOpenCondition)
def _market_open(condition: MarketOpenCondition, context: ResolutionContext) -> bool:
    minutes = ValueResolver(context).number_at("meta", "minutesSinceMarketOpen")
    return minutes is not None and minutes <= condition.minutes


@register_condition(HigherTimeframeCondition)
def _higher_timeframe(
    condition: HigherTimeframeCondition, context: ResolutionContext
) -> bool:
    subtree = ValueResolver(context).subtree("higherTimeframes", str(condition.timeframe))
    if not isinstance(subtree, dict):
        return False
    return evaluate_condition(condition.condition, context.with_features(subtree))


_missing = [m.__name__ for m in condition_variants() if m not in _EVALUATORS]
if _missing:
    raise RuntimeError(f"Condition kinds without an evaluator: {', '.join(_missing)}")
