"""Evaluation job handler.

Runs one evaluation job end to end:

1. Load the session with its rule set and tags
2. Resolve the snapshot (explicit ID, else the latest for the session)
3. Parse and evaluate every tag rule; malformed rules are skipped
4. Commit Evaluation + Advice rows and the session update atomically

Missing session, missing snapshot and an empty result set are logged and
treated as successful no-ops. Persistence errors propagate so the queue can
retry the job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable

from core.models.coach import (
    AdviceRecord,
    CoachSession,
    EvaluationJob,
    EvaluationRecord,
    EvaluationStatus,
    SessionState,
    Snapshot,
    TagDefinition,
    Thresholds,
    utcnow,
)
from core.rules.evaluator import evaluate_group
from core.rules.gateway_protocol import CoachGateway, CoachTransaction
from core.rules.models import RuleParseError, TagRule, parse_rule
from core.rules.resolver import ResolutionContext
from core.rules.scoring import classify, compute_score, resolve_thresholds
from core.rules.session_state import build_advice, derive_session_state

logger = logging.getLogger(__name__)


class JobOutcome(str, Enum):
    """How a job run ended. Only COMPLETED writes anything."""

    COMPLETED = "completed"
    SESSION_NOT_FOUND = "session_not_found"
    SNAPSHOT_NOT_FOUND = "snapshot_not_found"
    NO_RESULTS = "no_results"
    DUPLICATE = "duplicate"


@dataclass
class TagResult:
    """Evaluation of one tag against one snapshot."""

    tag: TagDefinition
    satisfied: bool
    score: float
    status: EvaluationStatus

    @property
    def context(self) -> dict[str, Any]:
        return {"satisfied": self.satisfied, "score": self.score}


@dataclass
class JobResult:
    """Outcome of EvaluationJobHandler.handle."""

    outcome: JobOutcome
    session_state: SessionState | None = None
    results: list[TagResult] = field(default_factory=list)
    evaluation_ids: list[str] = field(default_factory=list)

    @property
    def wrote(self) -> bool:
        return self.outcome == JobOutcome.COMPLETED


def evaluate_tag(
    tag: TagDefinition,
    rule: TagRule,
    context: ResolutionContext,
    defaults: Thresholds,
) -> TagResult:
    """Evaluate a parsed rule: condition tree -> score -> status."""
    satisfied = evaluate_group(rule.when, context)
    score = compute_score(rule.score, satisfied, context)
    thresholds = resolve_thresholds(rule.traffic, defaults)
    return TagResult(
        tag=tag,
        satisfied=satisfied,
        score=score,
        status=classify(score, satisfied, thresholds),
    )


def evaluate_rule_set(
    tags: Iterable[TagDefinition],
    features: Any,
    payload: Any,
    defaults: Thresholds,
) -> list[TagResult]:
    """Evaluate every tag against one snapshot's features and payload.

    Tags whose rule fails to parse are logged and skipped.
    """
    context = ResolutionContext(features=features, payload=payload)
    results: list[TagResult] = []

    for tag in tags:
        try:
            rule = parse_rule(tag.rule)
        except RuleParseError as e:
            logger.warning(f"Skipping tag {tag.tag_key} ({tag.id}): invalid rule: {e}")
            continue

        results.append(evaluate_tag(tag, rule, context, defaults))

    return results


class EvaluationJobHandler:
    """Evaluates a session's rule set against a snapshot and persists it."""

    def __init__(
        self,
        gateway: CoachGateway,
        default_thresholds: Thresholds | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.gateway = gateway
        self.default_thresholds = default_thresholds or Thresholds()
        self._clock = clock

    async def handle(self, job: EvaluationJob) -> JobResult:
        """Run one job. Raises only on persistence failure."""
        session = await self.gateway.load_session_with_rule_set_and_tags(job.session_id)
        if session is None or session.rule_set is None:
            logger.warning(
                f"Coach session {job.session_id} missing or has no rule set; "
                f"skipping job (trigger={_trigger(job)})"
            )
            return JobResult(outcome=JobOutcome.SESSION_NOT_FOUND)

        snapshot = await self._resolve_snapshot(session, job)
        if snapshot is None:
            logger.warning(
                f"No snapshot available for session {session.id} "
                f"(snapshot_id={job.snapshot_id}, trigger={_trigger(job)})"
            )
            return JobResult(outcome=JobOutcome.SNAPSHOT_NOT_FOUND)

        results = evaluate_rule_set(
            session.rule_set.tags,
            snapshot.features,
            snapshot.payload,
            session.rule_set.default_thresholds(self.default_thresholds),
        )
        if not results:
            logger.warning(f"No evaluations produced for session {session.id}")
            return JobResult(outcome=JobOutcome.NO_RESULTS)

        if job.job_id and await self.gateway.has_evaluations_for_job(job.job_id):
            logger.info(f"Job {job.job_id} already committed for session {session.id}")
            return JobResult(outcome=JobOutcome.DUPLICATE, results=results)

        state = derive_session_state((r.tag, r.status) for r in results)
        evaluation_ids = await self._persist(session, snapshot, results, state, job.job_id)

        logger.info(
            f"Evaluated session {session.id} ({session.symbol}) on snapshot "
            f"{snapshot.id}: {len(results)} tags -> {state.value}"
        )
        return JobResult(
            outcome=JobOutcome.COMPLETED,
            session_state=state,
            results=results,
            evaluation_ids=evaluation_ids,
        )

    async def _resolve_snapshot(
        self, session: CoachSession, job: EvaluationJob
    ) -> Snapshot | None:
        if job.snapshot_id:
            snapshot = await self.gateway.load_snapshot(job.snapshot_id)
            if snapshot is not None and snapshot.session_id != session.id:
                logger.warning(
                    f"Snapshot {snapshot.id} belongs to session {snapshot.session_id}, "
                    f"not {session.id}"
                )
                return None
            return snapshot
        return await self.gateway.load_latest_snapshot(session.id)

    async def _persist(
        self,
        session: CoachSession,
        snapshot: Snapshot,
        results: list[TagResult],
        state: SessionState,
        job_id: str | None,
    ) -> list[str]:
        now = self._clock()

        async def write(tx: CoachTransaction) -> list[str]:
            ids: list[str] = []
            for result in results:
                evaluation = await tx.create_evaluation(
                    EvaluationRecord(
                        session_id=session.id,
                        snapshot_id=snapshot.id,
                        tag_id=result.tag.id,
                        status=result.status,
                        score=result.score,
                        context=result.context,
                        job_id=job_id,
                        created_at=now,
                    )
                )
                advice = build_advice(result.tag, result.status, result.satisfied, result.score)
                await tx.create_advice(
                    AdviceRecord(
                        evaluation_id=evaluation.id,
                        session_state=advice.state,
                        headline=advice.headline,
                        body=advice.body,
                        created_at=now,
                    )
                )
                ids.append(evaluation.id)

            await tx.update_session(session.id, state, now)
            return ids

        return await self.gateway.run_in_transaction(write)


def _trigger(job: EvaluationJob) -> str:
    return job.trigger.value if job.trigger else "unspecified"
