"""Rule evaluation engine.

Public API:
- parse_rule / TagRule: Parse tag rule JSON into the rule AST
- ValueResolver / ResolutionContext: Resolve paths in features and payload
- evaluate_group / evaluate_condition: Interpret condition trees
- compute_score / classify: Score verdicts and grade them RED/YELLOW/GREEN
- derive_session_state / build_advice: Session rollup and advice copy
- EvaluationJobHandler: Run an evaluation job against a CoachGateway
"""

from core.rules.models import (
    CompareCondition,
    Condition,
    ConditionGroup,
    CrossCondition,
    HigherTimeframeCondition,
    MarketOpenCondition,
    RefObject,
    RuleParseError,
    ScoreSpec,
    TagRule,
    TouchCondition,
    TrafficSpec,
    parse_rule,
)
from core.rules.resolver import ResolutionContext, ValueResolver, canonical_key
from core.rules.evaluator import (
    evaluate_condition,
    evaluate_group,
    find_cross,
    register_condition,
)
from core.rules.scoring import classify, clamp_score, compute_score, resolve_thresholds
from core.rules.session_state import (
    AdviceCopy,
    advice_state,
    build_advice,
    derive_session_state,
)
from core.rules.gateway_protocol import CoachGateway, CoachTransaction
from core.rules.handler import (
    EvaluationJobHandler,
    JobOutcome,
    JobResult,
    TagResult,
    evaluate_rule_set,
    evaluate_tag,
)

__all__ = [
    "CompareCondition",
    "Condition",
    "ConditionGroup",
    "CrossCondition",
    "HigherTimeframeCondition",
    "MarketOpenCondition",
    "RefObject",
    "RuleParseError",
    "ScoreSpec",
    "TagRule",
    "TouchCondition",
    "TrafficSpec",
    "parse_rule",
    "ResolutionContext",
    "ValueResolver",
    "canonical_key",
    "evaluate_condition",
    "evaluate_group",
    "find_cross",
    "register_condition",
    "classify",
    "clamp_score",
    "compute_score",
    "resolve_thresholds",
    "AdviceCopy",
    "advice_state",
    "build_advice",
    "derive_session_state",
    "CoachGateway",
    "CoachTransaction",
    "EvaluationJobHandler",
    "JobOutcome",
    "JobResult",
    "TagResult",
    "evaluate_rule_set",
    "evaluate_tag",
]
