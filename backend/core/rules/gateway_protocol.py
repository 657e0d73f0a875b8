"""Persistence gateway protocol for the evaluation job handler.

Any storage backend (live PostgreSQL, an in-memory fake for tests) can
implement this protocol to be driven by EvaluationJobHandler.
"""

from __future__ import annotations

from datetime import datetime
from typing import Awaitable, Callable, Protocol, TypeVar, runtime_checkable

from core.models.coach import (
    AdviceRecord,
    CoachSession,
    EvaluationRecord,
    SessionState,
    Snapshot,
)

T = TypeVar("T")


@runtime_checkable
class CoachTransaction(Protocol):
    """Writes available inside run_in_transaction. All commit or none do."""

    async def create_evaluation(self, record: EvaluationRecord) -> EvaluationRecord:
        ...

    async def create_advice(self, record: AdviceRecord) -> AdviceRecord:
        ...

    async def update_session(
        self,
        session_id: str,
        state: SessionState,
        last_evaluated_at: datetime,
    ) -> None:
        ...


@runtime_checkable
class CoachGateway(Protocol):
    """Protocol that coach storage backends must implement."""

    async def load_session_with_rule_set_and_tags(
        self, session_id: str
    ) -> CoachSession | None:
        """Load a session with its rule set and tag definitions attached."""
        ...

    async def load_snapshot(self, snapshot_id: str) -> Snapshot | None:
        ...

    async def load_latest_snapshot(self, session_id: str) -> Snapshot | None:
        """Most recently captured snapshot of a session."""
        ...

    async def has_evaluations_for_job(self, job_id: str) -> bool:
        """True if a previous delivery of this job already committed."""
        ...

    async def run_in_transaction(
        self, fn: Callable[[CoachTransaction], Awaitable[T]]
    ) -> T:
        """Run `fn` in one transaction; commit on return, roll back on raise."""
        ...

    async def list_evaluations(
        self,
        session_id: str,
        limit: int = 50,
        after: str | None = None,
    ) -> list[EvaluationRecord]:
        """Evaluations newest first; `after` is an evaluation ID cursor."""
        ...
