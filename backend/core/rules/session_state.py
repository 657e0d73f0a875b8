"""Session state derivation and advice copy."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from core.models.coach import (
    ACTIONABLE_SEVERITIES,
    EvaluationStatus,
    SessionState,
    TagDefinition,
    TagSeverity,
)

DEFAULT_TAG_NAME = "Condition"


@dataclass(frozen=True)
class AdviceCopy:
    """Advice text for one evaluation."""

    state: SessionState
    headline: str
    body: str


def derive_session_state(
    results: Iterable[tuple[TagDefinition, EvaluationStatus]],
) -> SessionState:
    """Roll a batch of (tag, status) pairs up into one session state.

    READY if any GREEN lands on an ENTRY or SETUP tag, else SETUP_FORMING if
    any evaluation is YELLOW, else SCANNING.
    """
    has_yellow = False
    for tag, status in results:
        if status == EvaluationStatus.GREEN and tag.severity in ACTIONABLE_SEVERITIES:
            return SessionState.READY
        if status == EvaluationStatus.YELLOW:
            has_yellow = True

    return SessionState.SETUP_FORMING if has_yellow else SessionState.SCANNING


def advice_state(severity: TagSeverity, status: EvaluationStatus) -> SessionState:
    """Session state suggested by a single tag, independent of the rollup."""
    if status == EvaluationStatus.GREEN:
        if severity in ACTIONABLE_SEVERITIES:
            return SessionState.READY
        return SessionState.MANAGE
    if status == EvaluationStatus.YELLOW:
        return SessionState.SETUP_FORMING
    return SessionState.SCANNING


def build_advice(
    tag: TagDefinition | None,
    status: EvaluationStatus,
    satisfied: bool,
    score: float,
) -> AdviceCopy:
    severity = tag.severity if tag is not None else TagSeverity.INFO
    name = tag.name if tag is not None and tag.name else DEFAULT_TAG_NAME

    if satisfied:
        body = f"Condition satisfied with score {score:.2f}."
    else:
        body = "Conditions not met yet. Monitor inputs."

    return AdviceCopy(
        state=advice_state(severity, status),
        headline=f"{name} → {status.value}",
        body=body,
    )
