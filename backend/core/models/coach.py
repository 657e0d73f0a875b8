"""Coach domain records: rule sets, sessions, snapshots, evaluations."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def generate_id() -> str:
    """Generate a new record ID."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TagSeverity(str, Enum):
    """Tag category used by session-state derivation."""

    INFO = "INFO"
    SETUP = "SETUP"
    ENTRY = "ENTRY"
    EXIT = "EXIT"


class EvaluationStatus(str, Enum):
    """Traffic-light status of one evaluation."""

    RED = "RED"
    YELLOW = "YELLOW"
    GREEN = "GREEN"


class SessionState(str, Enum):
    """Session phase. SCANNING is the initial state."""

    SCANNING = "SCANNING"
    SETUP_FORMING = "SETUP_FORMING"
    READY = "READY"
    MANAGE = "MANAGE"


class SnapshotSource(str, Enum):
    """What produced a snapshot."""

    ALERT = "ALERT"
    SNAPSHOT = "SNAPSHOT"
    HEARTBEAT = "HEARTBEAT"
    MANUAL = "MANUAL"


class JobTrigger(str, Enum):
    """Why an evaluation job was enqueued."""

    ALERT = "alert"
    SNAPSHOT = "snapshot"
    HEARTBEAT = "heartbeat"


# Actionable severities: a GREEN on one of these makes the session READY
ACTIONABLE_SEVERITIES = frozenset({TagSeverity.ENTRY, TagSeverity.SETUP})


class Thresholds(BaseModel):
    """Score thresholds for the traffic-light classifier."""

    model_config = ConfigDict(frozen=True)

    green_gte: float = 0.85
    yellow_range: tuple[float, float] = (0.6, 0.85)

    @classmethod
    def from_json(
        cls,
        raw: Any,
        defaults: Thresholds | None = None,
    ) -> Thresholds:
        """Build thresholds from a rule set's stored JSON.

        Accepts both the authoring keys (green_if_score_gte,
        yellow_if_score_between) and the camel-case keys (greenGte,
        yellowRange). Missing or malformed values fall back to defaults.
        """
        base = defaults or cls()
        if not isinstance(raw, dict):
            return base

        green = raw.get("green_if_score_gte", raw.get("greenGte"))
        yellow = raw.get("yellow_if_score_between", raw.get("yellowRange"))

        try:
            green_gte = float(green) if green is not None else base.green_gte
        except (TypeError, ValueError):
            green_gte = base.green_gte

        yellow_range = base.yellow_range
        if isinstance(yellow, (list, tuple)) and len(yellow) == 2:
            try:
                yellow_range = (float(yellow[0]), float(yellow[1]))
            except (TypeError, ValueError):
                pass

        return cls(green_gte=green_gte, yellow_range=yellow_range)


class TagDefinition(BaseModel):
    """One named signal inside a rule set. `rule` is the raw rule JSON."""

    id: str = Field(default_factory=generate_id)
    rule_set_id: str | None = None
    tag_key: str
    name: str
    severity: TagSeverity = TagSeverity.INFO
    category: str | None = None
    description: str | None = None
    rule: Any = None


class RuleSet(BaseModel):
    """Named, versioned collection of tag definitions."""

    id: str = Field(default_factory=generate_id)
    owner_id: str | None = None
    name: str
    version: int = 1
    summary: str | None = None
    thresholds: Any = None
    tags: list[TagDefinition] = Field(default_factory=list)

    def default_thresholds(self, fallback: Thresholds | None = None) -> Thresholds:
        """Rule set thresholds, falling back to `fallback` for missing keys."""
        return Thresholds.from_json(self.thresholds, defaults=fallback)


def next_rule_set_version(latest: int | None) -> int:
    """Version for a new rule set given the latest one for owner+name."""
    return (latest or 0) + 1


class CoachSession(BaseModel):
    """A coaching session on one symbol/timeframe."""

    id: str = Field(default_factory=generate_id)
    rule_set_id: str | None = None
    symbol: str
    timeframe_minutes: int = 1
    state: SessionState = SessionState.SCANNING
    started_at: datetime = Field(default_factory=utcnow)
    last_evaluated_at: datetime | None = None

    # Loaded with the session by the persistence gateway
    rule_set: RuleSet | None = None


class Snapshot(BaseModel):
    """Immutable capture of feature data for a session."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_id)
    session_id: str
    source: SnapshotSource = SnapshotSource.SNAPSHOT
    captured_at: datetime = Field(default_factory=utcnow)
    features: Any = None
    payload: Any = None


class EvaluationRecord(BaseModel):
    """Computed outcome of one tag against one snapshot."""

    id: str = Field(default_factory=generate_id)
    session_id: str
    snapshot_id: str
    tag_id: str
    status: EvaluationStatus
    score: float
    context: dict[str, Any] = Field(default_factory=dict)
    job_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class AdviceRecord(BaseModel):
    """Human-readable explanation attached to one evaluation."""

    id: str = Field(default_factory=generate_id)
    evaluation_id: str
    session_state: SessionState
    headline: str
    body: str
    created_at: datetime = Field(default_factory=utcnow)


class EvaluationJob(BaseModel):
    """Job message consumed from the evaluation queue.

    Accepts the camelCase wire keys (sessionId, snapshotId) as well as
    snake_case field names.
    """

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    snapshot_id: str | None = Field(default=None, alias="snapshotId")
    trigger: JobTrigger | None = None
    job_id: str | None = Field(default=None, alias="jobId")

    def to_message(self) -> dict[str, Any]:
        """Serialize to the wire format (camelCase, None fields dropped)."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")
