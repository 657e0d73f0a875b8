"""Data models."""

from core.models.coach import (
    ACTIONABLE_SEVERITIES,
    AdviceRecord,
    CoachSession,
    EvaluationJob,
    EvaluationRecord,
    EvaluationStatus,
    JobTrigger,
    RuleSet,
    SessionState,
    Snapshot,
    SnapshotSource,
    TagDefinition,
    TagSeverity,
    Thresholds,
    generate_id,
    next_rule_set_version,
    utcnow,
)

__all__ = [
    "ACTIONABLE_SEVERITIES",
    "AdviceRecord",
    "CoachSession",
    "EvaluationJob",
    "EvaluationRecord",
    "EvaluationStatus",
    "JobTrigger",
    "RuleSet",
    "SessionState",
    "Snapshot",
    "SnapshotSource",
    "TagDefinition",
    "TagSeverity",
    "Thresholds",
    "generate_id",
    "next_rule_set_version",
    "utcnow",
]
