"""Tests for the condition tree interpreter."""

import pytest

from core.rules.evaluator import (
    condition_variants,
    evaluate_condition,
    evaluate_group,
    find_cross,
    register_condition,
)
from core.rules.models import (
    CompareCondition,
    ConditionGroup,
    CrossCondition,
    HigherTimeframeCondition,
    MarketOpenCondition,
    TouchCondition,
)
from core.rules.resolver import ResolutionContext


EMA_9 = [98.9, 99.5, 100.2, 101.3]
EMA_20 = [100.5, 100.1, 99.8, 99.5]


def _make_context(features=None, payload=None) -> ResolutionContext:
    return ResolutionContext(features=features, payload=payload)


def _group(**kwargs) -> ConditionGroup:
    return ConditionGroup.model_validate(kwargs)


# ---------------------------------------------------------------------------
# compare
# ---------------------------------------------------------------------------


class TestCompare:
    """Tests for the compare condition."""

    @pytest.mark.parametrize(
        "op,expected",
        [(">", True), (">=", True), ("<", False), ("<=", False), ("==", False), ("!=", True)],
    )
    def test_operators(self, op, expected):
        """Test every comparison operator."""
        condition = CompareCondition(left="price.close", op=op, right=100)
        context = _make_context(features={"price": {"close": 101}})
        assert evaluate_condition(condition, context) is expected

    def test_equal_values(self):
        """Test comparing equal operands."""
        condition = CompareCondition(left=100, op="==", right={"value": 100})
        assert evaluate_condition(condition, _make_context()) is True

    def test_payload_operand(self):
        """Test an operand resolved from the payload."""
        condition = CompareCondition(left="price.close", op=">", right="levels.pdh")
        context = _make_context(features={"price": {"close": 105}}, payload={"levels": {"pdh": 104}})
        assert evaluate_condition(condition, context) is True

    def test_unknown_operator_is_false(self):
        """Test that an unknown operator never matches."""
        condition = CompareCondition(left=2, op="=~", right=1)
        assert evaluate_condition(condition, _make_context()) is False

    @pytest.mark.parametrize("left,right", [("missing.path", 1), (1, "missing.path"), ("name", 1)])
    def test_unresolved_operand_is_false(self, left, right):
        """Test that an unresolved operand never matches."""
        condition = CompareCondition(left=left, op=">", right=right)
        context = _make_context(features={"name": "AAPL"})
        assert evaluate_condition(condition, context) is False


# ---------------------------------------------------------------------------
# touch
# ---------------------------------------------------------------------------


class TestTouch:
    """Tests for the touch condition."""

    def test_within_tolerance(self):
        """Test a series value inside the band tolerance."""
        condition = TouchCondition(series="price.close", band="vwap", tolerance_pct=0.01)
        context = _make_context(features={"price": {"close": 100.5}, "vwap": 100})
        assert evaluate_condition(condition, context) is True

    def test_outside_tolerance(self):
        """Test a series value outside the band tolerance."""
        condition = TouchCondition(series="price.close", band="vwap", tolerance_pct=0.01)
        context = _make_context(features={"price": {"close": 102}, "vwap": 100})
        assert evaluate_condition(condition, context) is False

    def test_negative_band_uses_magnitude(self):
        """Test that a negative band is measured by its magnitude."""
        condition = TouchCondition(series=-100.5, band=-100, tolerance_pct=0.01)
        assert evaluate_condition(condition, _make_context()) is True

    def test_zero_band_divides_by_one(self):
        """Test that a zero band uses the absolute distance."""
        near = TouchCondition(series=0.005, band=0, tolerance_pct=0.01)
        far = TouchCondition(series=0.5, band=0, tolerance_pct=0.01)
        assert evaluate_condition(near, _make_context()) is True
        assert evaluate_condition(far, _make_context()) is False

    def test_unresolved_is_false(self):
        """Test that an unresolved band or series never touches."""
        condition = TouchCondition(series="price.close", band="vwap")
        assert evaluate_condition(condition, _make_context(features={"vwap": 100})) is False


# ---------------------------------------------------------------------------
# cross
# ---------------------------------------------------------------------------


class TestCross:
    """Tests for the cross condition."""

    def _context(self, a=EMA_9, b=EMA_20):
        return _make_context(features={"series": {"EMA(9)": a, "EMA(20)": b}})

    def test_up_cross_within_lookback(self):
        """Test an up cross inside the lookback window."""
        condition = CrossCondition(a="EMA(9)", b="EMA(20)", direction="up", lookback_candles=3)
        assert evaluate_condition(condition, self._context()) is True

    def test_up_cross_outside_lookback(self):
        """Test that a cross older than the lookback is ignored."""
        # The cross happens between index 1 and 2, two pairs back
        condition = CrossCondition(a="EMA(9)", b="EMA(20)", direction="up", lookback_candles=1)
        assert evaluate_condition(condition, self._context()) is False

    def test_direction_filter(self):
        """Test that the direction filter excludes the other direction."""
        down = CrossCondition(a="EMA(9)", b="EMA(20)", direction="down", lookback_candles=3)
        any_ = CrossCondition(a="EMA(9)", b="EMA(20)", direction="any", lookback_candles=3)
        assert evaluate_condition(down, self._context()) is False
        assert evaluate_condition(any_, self._context()) is True

    def test_down_cross(self):
        """Test a down cross."""
        condition = CrossCondition(a="EMA(20)", b="EMA(9)", direction="down", lookback_candles=3)
        assert evaluate_condition(condition, self._context()) is True

    def test_zero_lookback_never_crosses(self):
        """Test that a zero lookback never finds a cross."""
        condition = CrossCondition(a="EMA(9)", b="EMA(20)", lookback_candles=0)
        assert evaluate_condition(condition, self._context()) is False

    def test_missing_or_short_series(self):
        """Test that missing or single-point series never cross."""
        condition = CrossCondition(a="EMA(9)", b="EMA(50)", lookback_candles=3)
        assert evaluate_condition(condition, self._context()) is False

        short = CrossCondition(a="EMA(9)", b="EMA(20)", lookback_candles=3)
        assert evaluate_condition(short, self._context(a=[1.0], b=[2.0])) is False

    def test_uneven_lengths_use_common_prefix(self):
        """Test that series of different lengths are read over their common prefix."""
        assert find_cross([1, 3, 5, 7, 9], [2, 2], direction="up", lookback=5) is True
        assert find_cross([3, 5], [2, 2, 9, 9], direction="any", lookback=5) is False

    def test_touching_counts_as_cross(self):
        """Test that reaching the other series counts as crossing it."""
        assert find_cross([1, 2], [2, 2], direction="up") is True
        assert find_cross([3, 2], [2, 2], direction="down") is True


# ---------------------------------------------------------------------------
# market open / higher timeframe
# ---------------------------------------------------------------------------


class TestMarketOpen:
    """Tests for the market-open window condition."""

    def test_within_window(self):
        """Test minutes since open inside the window."""
        condition = MarketOpenCondition(minutes=30)
        context = _make_context(features={"meta": {"minutesSinceMarketOpen": 30}})
        assert evaluate_condition(condition, context) is True

    def test_outside_window(self):
        """Test minutes since open past the window."""
        condition = MarketOpenCondition(minutes=30)
        context = _make_context(features={"meta": {"minutesSinceMarketOpen": 31}})
        assert evaluate_condition(condition, context) is False

    def test_missing_meta(self):
        """Test that missing market-open metadata never matches."""
        assert evaluate_condition(MarketOpenCondition(minutes=30), _make_context(features={})) is False


class TestHigherTimeframe:
    """Tests for the higher-timeframe condition."""

    def _condition(self, timeframe=15):
        return HigherTimeframeCondition(
            timeframe=timeframe,
            condition=CompareCondition(left="price.close", op=">", right="ema20"),
        )

    def test_evaluates_against_subtree(self):
        """Test that the nested condition sees the timeframe subtree."""
        features = {
            "price": {"close": 1},
            "ema20": 5,
            "higherTimeframes": {"15": {"price": {"close": 110}, "ema20": 100}},
        }
        assert evaluate_condition(self._condition(), _make_context(features=features)) is True

    def test_string_timeframe_key(self):
        """Test a timeframe given as a string key."""
        features = {"higherTimeframes": {"1h": {"price": {"close": 90}, "ema20": 100}}}
        assert evaluate_condition(self._condition("1h"), _make_context(features=features)) is False

    def test_missing_subtree_is_false(self):
        """Test that a missing timeframe subtree never matches."""
        features = {"price": {"close": 110}, "ema20": 100}
        assert evaluate_condition(self._condition(), _make_context(features=features)) is False

    def test_non_object_subtree_is_false(self):
        """Test that a scalar timeframe entry never matches."""
        features = {"higherTimeframes": {"15": [1, 2, 3]}}
        assert evaluate_condition(self._condition(), _make_context(features=features)) is False

    def test_payload_still_visible(self):
        """Test that the nested condition can still read the payload."""
        condition = HigherTimeframeCondition(
            timeframe=15,
            condition=CompareCondition(left="price.close", op=">", right="levels.pdh"),
        )
        features = {"higherTimeframes": {"15": {"price": {"close": 110}}}}
        context = _make_context(features=features, payload={"levels": {"pdh": 100}})
        assert evaluate_condition(condition, context) is True


# ---------------------------------------------------------------------------
# groups and registry
# ---------------------------------------------------------------------------


class TestEvaluateGroup:
    """Tests for all_of and any_of groups."""

    TRUE = {"compare": {"left": 1, "op": "<", "right": 2}}
    FALSE = {"compare": {"left": 2, "op": "<", "right": 1}}

    def test_all_of(self):
        """Test that all_of needs every condition."""
        assert evaluate_group(_group(all_of=[self.TRUE, self.TRUE]), _make_context()) is True
        assert evaluate_group(_group(all_of=[self.TRUE, self.FALSE]), _make_context()) is False

    def test_any_of(self):
        """Test that any_of needs one condition."""
        assert evaluate_group(_group(any_of=[self.FALSE, self.TRUE]), _make_context()) is True
        assert evaluate_group(_group(any_of=[self.FALSE]), _make_context()) is False

    def test_empty_all_of_is_true(self):
        """Test that an empty all_of is satisfied."""
        assert evaluate_group(_group(all_of=[]), _make_context()) is True

    def test_empty_any_of_is_false(self):
        """Test that an empty any_of is not satisfied."""
        assert evaluate_group(_group(any_of=[]), _make_context()) is False

    def test_no_group_is_true(self):
        """Test that a rule without conditions is satisfied."""
        assert evaluate_group(None, _make_context()) is True
        assert evaluate_group(_group(), _make_context()) is True

    def test_all_of_wins_over_any_of(self):
        """Test that all_of is used when both groups are present."""
        group = _group(all_of=[self.FALSE], any_of=[self.TRUE])
        assert evaluate_group(group, _make_context()) is False


class TestRegistry:
    """Tests for the condition evaluator registry."""

    def test_every_variant_has_an_evaluator(self):
        """Test that every condition kind has a registered evaluator."""
        variants = condition_variants()
        assert len(variants) == 5
        for model in variants:
            assert model.__name__.endswith("Condition")

    def test_duplicate_registration_rejected(self):
        """Test that registering a kind twice raises."""
        with pytest.raises(ValueError, match="already handled"):
            register_condition(CompareCondition)(lambda condition, context: True)

    def test_unregistered_type_raises(self):
        """Test evaluating a condition type with no evaluator."""
        with pytest.raises(TypeError):
            evaluate_condition(object(), _make_context())
