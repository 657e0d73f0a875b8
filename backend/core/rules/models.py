"""Rule AST parsed from the tag rule JSON.

Wire format (authored externally):

    {
      "when": {"all_of": [<Condition>, ...]} | {"any_of": [<Condition>, ...]},
      "score": {"base": 1, "decay_per_candle_since_cross": 0.2},
      "traffic": {"green_if_score_gte": 0.8, "yellow_if_score_between": [0.5, 0.8]}
    }

A condition is a single-key object whose key selects the variant
(compare, touch, cross, market_open_within_min, higher_tf_confirms).
On parse the key is folded into a `kind` discriminator so the rest of the
engine works with one of five typed models.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

CONDITION_KINDS = (
    "compare",
    "touch",
    "cross",
    "market_open_within_min",
    "higher_tf_confirms",
)


class RuleParseError(ValueError):
    """Raised when a tag rule cannot be parsed into the rule AST."""


# =============================================================================
# Value references
# =============================================================================


class RefObject(BaseModel):
    """Object form of a value reference: {"value": 1.5} or {"path": "meta.x"}.

    A numeric `value` wins over `path` when both are given.
    """

    value: float | None = None
    path: str | None = None


# A numeric literal, a dotted path string, or a RefObject
ValueRef = Union[float, str, RefObject]


# =============================================================================
# Conditions
# =============================================================================


class CompareCondition(BaseModel):
    """Numeric comparison of two value references."""

    kind: Literal["compare"] = "compare"
    left: ValueRef
    op: str
    right: ValueRef


class TouchCondition(BaseModel):
    """True when `series` is within `tolerance_pct` of `band`."""

    kind: Literal["touch"] = "touch"
    series: ValueRef
    band: ValueRef
    tolerance_pct: float = 0.01


class CrossCondition(BaseModel):
    """Crossing of series `a` over series `b` within the last candles."""

    kind: Literal["cross"] = "cross"
    a: str
    b: str
    direction: Literal["up", "down", "any"] = "any"
    lookback_candles: int = Field(default=1, ge=0)


class MarketOpenCondition(BaseModel):
    """True within `minutes` of the market open."""

    kind: Literal["market_open_within_min"] = "market_open_within_min"
    minutes: float


class HigherTimeframeCondition(BaseModel):
    """Evaluate a nested condition against a higher-timeframe feature subtree."""

    kind: Literal["higher_tf_confirms"] = "higher_tf_confirms"
    timeframe: int | str
    condition: Condition

    @model_validator(mode="before")
    @classmethod
    def _unwrap_nested(cls, data: Any) -> Any:
        if isinstance(data, dict) and "condition" in data:
            data = {**data, "condition": unwrap_condition(data["condition"])}
        return data


Condition = Annotated[
    Union[
        CompareCondition,
        TouchCondition,
        CrossCondition,
        MarketOpenCondition,
        HigherTimeframeCondition,
    ],
    Field(discriminator="kind"),
]


def unwrap_condition(raw: Any) -> Any:
    """Fold the wire form {"<kind>": {...}} into {"kind": "<kind>", ...}.

    Anything that is not a single recognised key is returned unchanged and
    left for validation to reject.
    """
    if not isinstance(raw, dict) or "kind" in raw:
        return raw

    for kind in CONDITION_KINDS:
        if kind not in raw:
            continue
        body = raw[kind]
        if kind == "market_open_within_min" and not isinstance(body, dict):
            return {"kind": kind, "minutes": body}
        if isinstance(body, dict):
            return {"kind": kind, **body}
        return {"kind": kind}
    return raw


class ConditionGroup(BaseModel):
    """Boolean combinator over conditions.

    all_of is AND (vacuously true), any_of is OR. With neither key the
    group is vacuously true. all_of wins when both are present.
    """

    all_of: list[Condition] | None = None
    any_of: list[Condition] | None = None

    @model_validator(mode="before")
    @classmethod
    def _unwrap_members(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for key in ("all_of", "any_of"):
            members = data.get(key)
            if isinstance(members, list):
                data[key] = [unwrap_condition(m) for m in members]
        return data


# =============================================================================
# Score and traffic
# =============================================================================


class ScoreSpec(BaseModel):
    """Score definition: base score with optional linear decay."""

    base: float | None = None
    decay_per_candle_since_cross: float | None = None


class TrafficSpec(BaseModel):
    """Per-tag threshold overrides."""

    green_if_score_gte: float | None = None
    yellow_if_score_between: tuple[float, float] | None = None


class TagRule(BaseModel):
    """A parsed tag rule."""

    model_config = ConfigDict(extra="ignore")

    when: ConditionGroup | None = None
    score: ScoreSpec | None = None
    traffic: TrafficSpec | None = None


HigherTimeframeCondition.model_rebuild()
ConditionGroup.model_rebuild()
TagRule.model_rebuild()


def parse_rule(raw: Any) -> TagRule:
    """Parse a tag's stored rule JSON into a TagRule.

    Args:
        raw: Rule as a dict, or as a JSON string/bytes.

    Returns:
        The validated TagRule.

    Raises:
        RuleParseError: If the rule is empty, not valid JSON, or fails
            validation.
    """
    if raw is None:
        raise RuleParseError("rule is empty")

    if isinstance(raw, (str, bytes)):
        try:
            raw = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            raise RuleParseError(f"rule is not valid JSON: {e}") from e

    if not isinstance(raw, dict):
        raise RuleParseError(f"rule must be an object, got {type(raw).__name__}")

    try:
        return TagRule.model_validate(raw)
    except ValidationError as e:
        raise RuleParseError(str(e)) from e
