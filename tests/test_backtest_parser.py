"""
Tests for the rule AST, canonical text and rule parser.
"""

import pytest

from backtester.errors import RuleParseError
from backtester.indicators import IndicatorField, IndicatorKind, IndicatorSpec
from backtester.models import Strategy
from backtester.parser import parse_rule
from backtester.rules import (
    CLOSE,
    COMPARISON_KEYWORDS,
    FIELD_KEYWORDS,
    HIGH,
    LOW,
    OPEN,
    VOLUME,
    Above,
    And,
    AnyOf,
    Below,
    Between,
    ConstantOperand,
    Consecutive,
    CrossAbove,
    CrossBelow,
    Equals,
    IndicatorOperand,
    Not,
    Or,
    PriceField,
    PriceOperand,
    collect_indicators,
    strategy_indicators,
)


def _ind(spec, field=IndicatorField.VALUE):
    return IndicatorOperand(spec, field)


SMA20 = _ind(IndicatorSpec.sma(20))
SMA50 = _ind(IndicatorSpec.sma(50))
RSI14 = _ind(IndicatorSpec.rsi(14))


# ---------------------------------------------------------------------------
# AST construction
# ---------------------------------------------------------------------------

class TestRuleConstruction:
    def test_and_needs_two_children(self):
        with pytest.raises(ValueError, match="at least 2"):
            And((Above(CLOSE, SMA20),))

    def test_or_needs_two_children(self):
        with pytest.raises(ValueError, match="at least 2"):
            Or([Above(CLOSE, SMA20)])

    def test_and_children_stored_as_tuple(self):
        rule = And([Above(CLOSE, SMA20), Below(RSI14, ConstantOperand(70.0))])
        assert isinstance(rule.rules, tuple)

    def test_temporal_count_must_be_positive(self):
        with pytest.raises(ValueError):
            Consecutive(Above(CLOSE, SMA20), 0)
        with pytest.raises(ValueError):
            AnyOf(Above(CLOSE, SMA20), 0)

    def test_indicator_field_must_belong_to_kind(self):
        with pytest.raises(ValueError, match="no field"):
            IndicatorOperand(IndicatorSpec.sma(20), IndicatorField.UPPER)


class TestCanonicalText:
    def test_comparison(self):
        assert str(CrossAbove(SMA20, SMA50)) == "CROSS_ABOVE(SMA(20), SMA(50))"

    def test_nested(self):
        rule = And([Above(CLOSE, SMA20), Not(Below(RSI14, ConstantOperand(30.0)))])
        assert str(rule) == "AND(ABOVE(close, SMA(20)), NOT(BELOW(RSI(14), 30.0)))"

    def test_multi_field_operands(self):
        hist = _ind(IndicatorSpec.macd(12, 26, 9), IndicatorField.HISTOGRAM)
        upper = _ind(IndicatorSpec.bollinger(20, 2.0), IndicatorField.UPPER)
        assert str(hist) == "MACD_HISTOGRAM(12,26,9)"
        assert str(upper) == "BOLLINGER_UPPER(20,2.0)"
        assert str(_ind(IndicatorSpec.pivot(), IndicatorField.PIVOT)) == "PIVOT"
        assert str(_ind(IndicatorSpec.pivot(), IndicatorField.R2)) == "PIVOT_R2"

    def test_temporal_and_between(self):
        assert str(Consecutive(Above(CLOSE, SMA20), 3)) == "CONSECUTIVE(ABOVE(close, SMA(20)), 3)"
        assert str(Between(RSI14, 30.0, 70.0)) == "BETWEEN(RSI(14), 30.0, 70.0)"


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

class TestParseRule:
    def test_cross_above(self):
        assert parse_rule("CROSS_ABOVE(SMA(20), SMA(50))") == CrossAbove(SMA20, SMA50)

    def test_whitespace_insensitive(self):
        assert parse_rule("  CROSS_ABOVE ( SMA ( 20 ) ,SMA(50) )  ") == CrossAbove(SMA20, SMA50)

    def test_price_fields_and_constants(self):
        rule = parse_rule("ABOVE(volume, 1.5e6)")
        assert rule == Above(VOLUME, ConstantOperand(1.5e6))

    def test_negative_constant(self):
        rule = parse_rule("BELOW(ROC(10), -2.5)")
        assert rule == Below(_ind(IndicatorSpec.roc(10)), ConstantOperand(-2.5))

    def test_logical_forms(self):
        rule = parse_rule("OR(BELOW(RSI(14), 30), ABOVE(close, SMA(20)), NOT(EQUALS(close, open)))")
        assert isinstance(rule, Or)
        assert len(rule.rules) == 3
        assert isinstance(rule.rules[2], Not)

    def test_temporal_forms(self):
        assert parse_rule("ANY_OF(CROSS_BELOW(close, VWAP), 5)") == AnyOf(
            CrossBelow(CLOSE, _ind(IndicatorSpec.vwap())), 5,
        )

    def test_multi_field_indicators(self):
        rule = parse_rule("CROSS_ABOVE(MACD_LINE(12,26,9), MACD_SIGNAL(12, 26, 9))")
        macd = IndicatorSpec.macd(12, 26, 9)
        assert rule == CrossAbove(_ind(macd, IndicatorField.LINE), _ind(macd, IndicatorField.SIGNAL))

    def test_bollinger_integer_multiplier(self):
        rule = parse_rule("BELOW(close, BOLLINGER_LOWER(20, 2))")
        assert rule.right.spec == IndicatorSpec.bollinger(20, 2.0)

    def test_between(self):
        assert parse_rule("BETWEEN(RSI(14), 30, 70)") == Between(RSI14, 30.0, 70.0)


class TestParseErrors:
    def test_empty_input(self):
        with pytest.raises(RuleParseError, match="expected rule"):
            parse_rule("")

    def test_lowercase_keyword_rejected(self):
        with pytest.raises(RuleParseError) as exc:
            parse_rule("above(close, 10)")
        assert exc.value.position == 0

    def test_unknown_operand_position(self):
        with pytest.raises(RuleParseError, match="expected indicator") as exc:
            parse_rule("ABOVE(close, FOO(3))")
        assert exc.value.position == 13

    def test_single_child_and(self):
        with pytest.raises(RuleParseError, match="AND requires at least 2 rules"):
            parse_rule("AND(ABOVE(close, 10))")

    def test_trailing_input(self):
        with pytest.raises(RuleParseError, match="unexpected input"):
            parse_rule("ABOVE(close, 10) extra")

    def test_missing_paren(self):
        with pytest.raises(RuleParseError, match="expected '\\)'"):
            parse_rule("ABOVE(close, 10")

    def test_zero_period(self):
        with pytest.raises(RuleParseError, match="positive integer"):
            parse_rule("ABOVE(close, SMA(0))")

    def test_overflowing_constant(self):
        with pytest.raises(RuleParseError, match="number out of range") as exc:
            parse_rule("ABOVE(close, 1e999)")
        assert exc.value.position == 13

    def test_overflowing_bollinger_multiplier(self):
        with pytest.raises(RuleParseError, match="number out of range") as exc:
            parse_rule("ABOVE(close, BOLLINGER_UPPER(20, 1e999))")
        assert exc.value.position == 33

    def test_position_is_byte_offset(self):
        # U+00A0 is whitespace taking two bytes in UTF-8
        text = "ABOVE(close,\u00a0x)"
        with pytest.raises(RuleParseError) as exc:
            parse_rule(text)
        assert exc.value.position == 14
        caret_line = exc.value.display_with_context(text).splitlines()[1]
        assert caret_line == "  " + " " * 13 + "^"

    def test_display_with_context(self):
        text = "ABOVE(close, FOO)"
        with pytest.raises(RuleParseError) as exc:
            parse_rule(text)
        rendered = exc.value.display_with_context(text)
        lines = rendered.splitlines()
        assert lines[0] == "  " + text
        assert lines[1] == "  " + " " * 13 + "^"

    def test_with_key(self):
        err = RuleParseError("expected rule", 3).with_key("entry_long")
        assert str(err).startswith("entry_long: parse error at position 3")


# ---------------------------------------------------------------------------
# Round trip
# ---------------------------------------------------------------------------

ROUND_TRIP_RULES = [
    CrossAbove(SMA20, SMA50),
    CrossBelow(_ind(IndicatorSpec.ema(12)), _ind(IndicatorSpec.wma(26))),
    Below(OPEN, LOW),
    Equals(CLOSE, ConstantOperand(0.1)),
    Above(_ind(IndicatorSpec.obv()), ConstantOperand(1e-07)),
    And([
        Above(CLOSE, _ind(IndicatorSpec.bollinger(20, 2.5), IndicatorField.UPPER)),
        Or([
            Below(_ind(IndicatorSpec.stochastic(14, 3), IndicatorField.D), ConstantOperand(20.0)),
            Above(_ind(IndicatorSpec.pivot(), IndicatorField.S3), CLOSE),
        ]),
    ]),
    Consecutive(Not(Between(_ind(IndicatorSpec.atr(14)), -1.0, 3.25)), 4),
    AnyOf(Or([Above(HIGH, VOLUME), Not(AnyOf(Below(LOW, CLOSE), 2))]), 10),
]

PERIOD_KINDS = [
    IndicatorKind.SMA, IndicatorKind.EMA, IndicatorKind.WMA, IndicatorKind.RSI,
    IndicatorKind.ROC, IndicatorKind.ATR, IndicatorKind.STDDEV,
]

_SAMPLE_PARAMS = {
    IndicatorKind.MACD: (12, 26, 9),
    IndicatorKind.STOCHASTIC: (14, 3),
    IndicatorKind.BOLLINGER: (20, 0.5),
    IndicatorKind.PIVOT: (),
}

ALL_OPERANDS = (
    [PriceOperand(f) for f in PriceField]
    + [_ind(IndicatorSpec(kind, (14,))) for kind in PERIOD_KINDS]
    + [_ind(IndicatorSpec.obv()), _ind(IndicatorSpec.vwap())]
    + [_ind(IndicatorSpec(kind, _SAMPLE_PARAMS[kind]), field) for kind, field in FIELD_KEYWORDS]
)

EDGE_CONSTANTS = [
    0.0, -0.5, 3.0, 123456789.125, -1e16, 1e-300, 5e-324, 1.7976931348623157e308, 2.5e-07,
]


class TestRoundTrip:
    @pytest.mark.parametrize("rule", ROUND_TRIP_RULES, ids=str)
    def test_parse_of_display_is_identity(self, rule):
        assert parse_rule(str(rule)) == rule

    @pytest.mark.parametrize("operand", ALL_OPERANDS, ids=str)
    @pytest.mark.parametrize("rule_cls", list(COMPARISON_KEYWORDS), ids=lambda c: c.__name__)
    def test_every_comparison_and_operand(self, rule_cls, operand):
        rule = rule_cls(operand, CLOSE)
        assert parse_rule(str(rule)) == rule

    @pytest.mark.parametrize("operand", ALL_OPERANDS, ids=str)
    def test_between_every_operand(self, operand):
        rule = Between(operand, -1.5, 2e10)
        assert parse_rule(str(rule)) == rule

    @pytest.mark.parametrize("value", EDGE_CONSTANTS, ids=repr)
    def test_extreme_constants(self, value):
        for rule in (Above(CLOSE, ConstantOperand(value)), Between(VOLUME, value, value)):
            parsed = parse_rule(str(rule))
            assert parsed == rule

    def test_non_finite_constants_not_constructible(self):
        with pytest.raises(ValueError, match="finite"):
            ConstantOperand(float("inf"))
        with pytest.raises(ValueError, match="finite"):
            Between(CLOSE, 0.0, float("nan"))


# ---------------------------------------------------------------------------
# Indicator extraction
# ---------------------------------------------------------------------------

class TestCollectIndicators:
    def test_first_seen_order_deduplicated(self):
        rule = parse_rule("AND(CROSS_ABOVE(SMA(20), SMA(50)), ABOVE(close, SMA(20)), BELOW(RSI(14), 70))")
        assert collect_indicators(rule) == [
            IndicatorSpec.sma(20), IndicatorSpec.sma(50), IndicatorSpec.rsi(14),
        ]

    def test_multi_field_share_spec(self):
        rule = parse_rule("CROSS_ABOVE(MACD_LINE(12,26,9), MACD_SIGNAL(12,26,9))")
        assert collect_indicators(rule) == [IndicatorSpec.macd(12, 26, 9)]

    def test_strategy_indicators(self):
        strategy = Strategy(
            name="s",
            entry_long=parse_rule("ABOVE(close, EMA(10))"),
            exit_long=parse_rule("BELOW(close, EMA(10))"),
            entry_short=parse_rule("BELOW(RSI(5), 20)"),
        )
        assert strategy_indicators(strategy) == [IndicatorSpec.ema(10), IndicatorSpec.rsi(5)]
