"""Tests for session state derivation and advice copy."""

import pytest

from core.models.coach import EvaluationStatus, SessionState, TagDefinition, TagSeverity
from core.rules.session_state import advice_state, build_advice, derive_session_state

GREEN = EvaluationStatus.GREEN
YELLOW = EvaluationStatus.YELLOW
RED = EvaluationStatus.RED


def _make_tag(severity: TagSeverity = TagSeverity.INFO, name: str = "EMA Cross") -> TagDefinition:
    return TagDefinition(tag_key=name.lower().replace(" ", "_"), name=name, severity=severity)


class TestDeriveSessionState:
    """Tests for the session state rollup."""

    @pytest.mark.parametrize("severity", [TagSeverity.ENTRY, TagSeverity.SETUP])
    def test_green_actionable_is_ready(self, severity):
        """Test that a GREEN entry or setup tag makes the session READY."""
        results = [(_make_tag(TagSeverity.INFO), RED), (_make_tag(severity), GREEN)]
        assert derive_session_state(results) == SessionState.READY

    @pytest.mark.parametrize("severity", [TagSeverity.INFO, TagSeverity.EXIT])
    def test_green_non_actionable_is_not_ready(self, severity):
        """Test that a GREEN informational tag does not make the session READY."""
        assert derive_session_state([(_make_tag(severity), GREEN)]) == SessionState.SCANNING

    def test_yellow_is_setup_forming(self):
        """Test that a YELLOW tag means SETUP_FORMING."""
        results = [(_make_tag(TagSeverity.INFO), GREEN), (_make_tag(TagSeverity.ENTRY), YELLOW)]
        assert derive_session_state(results) == SessionState.SETUP_FORMING

    def test_ready_beats_yellow(self):
        """Test that READY wins over SETUP_FORMING."""
        results = [(_make_tag(TagSeverity.SETUP), YELLOW), (_make_tag(TagSeverity.ENTRY), GREEN)]
        assert derive_session_state(results) == SessionState.READY

    def test_all_red_is_scanning(self):
        """Test that all RED tags leave the session SCANNING."""
        results = [(_make_tag(TagSeverity.ENTRY), RED), (_make_tag(TagSeverity.SETUP), RED)]
        assert derive_session_state(results) == SessionState.SCANNING

    def test_empty_is_scanning(self):
        """Test that no results leave the session SCANNING."""
        assert derive_session_state([]) == SessionState.SCANNING

    def test_accepts_generator(self):
        """Test deriving state from a generator."""
        tags = [_make_tag(TagSeverity.ENTRY)]
        assert derive_session_state((t, GREEN) for t in tags) == SessionState.READY


class TestAdviceState:
    """Tests for the per-tag advice state."""

    def test_mapping(self):
        """Test the status to advice state mapping."""
        assert advice_state(TagSeverity.ENTRY, GREEN) == SessionState.READY
        assert advice_state(TagSeverity.SETUP, GREEN) == SessionState.READY
        assert advice_state(TagSeverity.INFO, GREEN) == SessionState.MANAGE
        assert advice_state(TagSeverity.EXIT, GREEN) == SessionState.MANAGE
        assert advice_state(TagSeverity.ENTRY, YELLOW) == SessionState.SETUP_FORMING
        assert advice_state(TagSeverity.EXIT, RED) == SessionState.SCANNING


class TestBuildAdvice:
    """Tests for advice copy."""

    def test_satisfied(self):
        """Test advice for a satisfied tag."""
        advice = build_advice(_make_tag(TagSeverity.ENTRY, "EMA Cross Recent"), GREEN, True, 0.8)
        assert advice.state == SessionState.READY
        assert advice.headline == "EMA Cross Recent → GREEN"
        assert advice.body == "Condition satisfied with score 0.80."

    def test_not_satisfied(self):
        """Test advice for an unsatisfied tag."""
        advice = build_advice(_make_tag(TagSeverity.SETUP), RED, False, 0.0)
        assert advice.state == SessionState.SCANNING
        assert advice.body == "Conditions not met yet. Monitor inputs."

    def test_missing_tag_uses_default_name(self):
        """Test advice for a tag without a display name."""
        advice = build_advice(None, YELLOW, True, 0.654)
        assert advice.headline == "Condition → YELLOW"
        assert advice.body == "Condition satisfied with score 0.65."
        assert advice.state == SessionState.SETUP_FORMING
