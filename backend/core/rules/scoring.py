"""Scoring and traffic-light classification."""

from __future__ import annotations

from core.models.coach import EvaluationStatus, Thresholds
from core.rules.models import ScoreSpec, TrafficSpec
from core.rules.resolver import ResolutionContext, ValueResolver

DEFAULT_BASE_SCORE = 1.0


def clamp_score(score: float) -> float:
    return min(1.0, max(0.0, score))


def compute_score(
    spec: ScoreSpec | None,
    satisfied: bool,
    context: ResolutionContext,
) -> float:
    """Score a verdict.

    Unsatisfied scores 0. Satisfied starts at `base` (default 1) and, when
    `decay_per_candle_since_cross` is set and features.meta.candlesSinceCross
    resolves, loses decay * candles. The result is clamped to [0, 1].
    """
    if not satisfied:
        return 0.0

    spec = spec or ScoreSpec()
    base = spec.base if spec.base is not None else DEFAULT_BASE_SCORE
    score = base

    if spec.decay_per_candle_since_cross:
        candles = ValueResolver(context).number_at("meta", "candlesSinceCross")
        if candles is not None:
            score = base - spec.decay_per_candle_since_cross * candles

    return clamp_score(score)


def resolve_thresholds(
    traffic: TrafficSpec | None,
    defaults: Thresholds,
) -> Thresholds:
    """Merge a tag's traffic overrides over the rule set defaults."""
    if traffic is None:
        return defaults

    green = traffic.green_if_score_gte
    yellow = traffic.yellow_if_score_between
    return Thresholds(
        green_gte=green if green is not None else defaults.green_gte,
        yellow_range=yellow if yellow is not None else defaults.yellow_range,
    )


def classify(
    score: float,
    satisfied: bool,
    thresholds: Thresholds | None = None,
) -> EvaluationStatus:
    """Map a score and verdict to RED / YELLOW / GREEN.

    GREEN: satisfied and score >= green_gte.
    YELLOW: satisfied and yellow_lo <= score < yellow_hi.
    RED: everything else, including every unsatisfied verdict.
    """
    thresholds = thresholds or Thresholds()

    if satisfied and score >= thresholds.green_gte:
        return EvaluationStatus.GREEN

    yellow_lo, yellow_hi = thresholds.yellow_range
    if satisfied and yellow_lo <= score < yellow_hi:
        return EvaluationStatus.YELLOW

    return EvaluationStatus.RED
