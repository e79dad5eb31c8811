"""
Rule Backtester -- Rule text parser.

Recursive-descent parser for the rule language.  Keywords are uppercase
and case-sensitive; price fields are lowercase; whitespace between tokens
is ignored.

Grammar::

    rule       := comparison | between | logical | temporal
    comparison := ("CROSS_ABOVE" | "CROSS_BELOW" | "ABOVE" | "BELOW" | "EQUALS")
                  "(" operand "," operand ")"
    between    := "BETWEEN" "(" operand "," number "," number ")"
    logical    := ("AND" | "OR") "(" rule ("," rule)+ ")" | "NOT" "(" rule ")"
    temporal   := ("CONSECUTIVE" | "ANY_OF") "(" rule "," integer ")"
    operand    := number | price | indicator
    price      := "open" | "high" | "low" | "close" | "volume"
    indicator  := ("SMA" | "EMA" | "WMA" | "RSI" | "ROC" | "ATR" | "STDDEV") "(" integer ")"
                | "OBV" | "VWAP"
                | ("MACD_LINE" | "MACD_SIGNAL" | "MACD_HISTOGRAM") "(" integer "," integer "," integer ")"
                | ("STOCHASTIC_K" | "STOCHASTIC_D") "(" integer "," integer ")"
                | ("BOLLINGER_UPPER" | "BOLLINGER_MIDDLE" | "BOLLINGER_LOWER") "(" integer "," number ")"
                | "PIVOT" | "PIVOT_R1" | "PIVOT_R2" | "PIVOT_R3" | "PIVOT_S1" | "PIVOT_S2" | "PIVOT_S3"
    number     := "-"? digits ("." digits?)? (("e" | "E") ("+" | "-")? digits)?

Errors are raised as :class:`~backtester.errors.RuleParseError` carrying
the offset of the offending token.
"""

from __future__ import annotations

import math
import re
from typing import Callable, Dict, List, Optional, Tuple

from backtester.errors import RuleParseError
from backtester.indicators import IndicatorField, IndicatorKind, IndicatorSpec
from backtester.rules import (
    COMPARISON_KEYWORDS,
    FIELD_KEYWORDS,
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
    Operand,
    Or,
    PriceField,
    PriceOperand,
    Rule,
)

_WORD_RE = re.compile(r"[A-Za-z0-9_]+")
_NUMBER_RE = re.compile(r"-?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")
_INTEGER_RE = re.compile(r"\d+")

_COMPARISONS: Dict[str, type] = {kw: cls for cls, kw in COMPARISON_KEYWORDS.items()}
_PRICE_FIELDS = {f.value: f for f in PriceField}
_PERIOD_KEYWORDS = {
    "SMA": IndicatorKind.SMA,
    "EMA": IndicatorKind.EMA,
    "WMA": IndicatorKind.WMA,
    "RSI": IndicatorKind.RSI,
    "ROC": IndicatorKind.ROC,
    "ATR": IndicatorKind.ATR,
    "STDDEV": IndicatorKind.STDDEV,
}
_FIELD_OPERANDS: Dict[str, Tuple[IndicatorKind, IndicatorField]] = {
    kw: key for key, kw in FIELD_KEYWORDS.items()
}


class _Parser:
    """Single-use cursor over one rule string."""

    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0

    # Lexing helpers ---------------------------------------------------

    def _error(self, message: str, position: Optional[int] = None) -> RuleParseError:
        """Build a parse error at *position* (a character index), reported as a byte offset."""
        index = self.pos if position is None else position
        return RuleParseError(message, len(self.text[:index].encode("utf-8")))

    def _skip_ws(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def _peek(self) -> str:
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def _peek_word(self) -> str:
        """Identifier at the cursor, or the next character, for error messages."""
        m = _WORD_RE.match(self.text, self.pos)
        if m:
            return m.group(0)
        return self._peek() or "end of input"

    def _found(self) -> str:
        word = self._peek_word()
        return word if word == "end of input" else f"'{word}'"

    def _expect_char(self, ch: str) -> None:
        self._skip_ws()
        if self._peek() == ch:
            self.pos += 1
            return
        raise self._error(f"expected '{ch}', found {self._found()}")

    def _take_word(self) -> str:
        self._skip_ws()
        m = _WORD_RE.match(self.text, self.pos)
        return m.group(0) if m else ""

    def _number(self) -> float:
        self._skip_ws()
        start = self.pos
        m = _NUMBER_RE.match(self.text, self.pos)
        if not m:
            raise self._error(f"expected number, found {self._found()}")
        self.pos = m.end()
        value = float(m.group(0))
        if not math.isfinite(value):
            raise self._error("number out of range", start)
        return value

    def _integer(self) -> int:
        self._skip_ws()
        start = self.pos
        m = _INTEGER_RE.match(self.text, self.pos)
        if not m:
            raise self._error(f"expected integer, found {self._found()}")
        value = int(m.group(0))
        if value < 1:
            raise self._error("expected positive integer, found '0'", start)
        self.pos = m.end()
        return value

    def _integers(self, count: int) -> List[int]:
        self._expect_char("(")
        values = [self._integer()]
        for _ in range(count - 1):
            self._expect_char(",")
            values.append(self._integer())
        self._expect_char(")")
        return values

    # Operands ---------------------------------------------------------

    def operand(self) -> Operand:
        self._skip_ws()
        ch = self._peek()
        if ch.isdigit() or ch in ("-", "."):
            return ConstantOperand(self._number())

        start = self.pos
        word = self._take_word()
        if word in _PRICE_FIELDS:
            self.pos += len(word)
            return PriceOperand(_PRICE_FIELDS[word])
        if word in _PERIOD_KEYWORDS:
            self.pos += len(word)
            (period,) = self._integers(1)
            return IndicatorOperand(IndicatorSpec(_PERIOD_KEYWORDS[word], (period,)))
        if word == "OBV":
            self.pos += len(word)
            return IndicatorOperand(IndicatorSpec.obv())
        if word == "VWAP":
            self.pos += len(word)
            return IndicatorOperand(IndicatorSpec.vwap())
        if word in _FIELD_OPERANDS:
            self.pos += len(word)
            kind, field = _FIELD_OPERANDS[word]
            return IndicatorOperand(self._field_spec(kind), field)
        raise self._error(f"expected indicator, found {self._found()}", start)

    def _field_spec(self, kind: IndicatorKind) -> IndicatorSpec:
        if kind == IndicatorKind.MACD:
            return IndicatorSpec(kind, tuple(self._integers(3)))
        if kind == IndicatorKind.STOCHASTIC:
            return IndicatorSpec(kind, tuple(self._integers(2)))
        if kind == IndicatorKind.BOLLINGER:
            self._expect_char("(")
            period = self._integer()
            self._expect_char(",")
            mult_pos = self.pos
            mult = self._number()
            if mult < 0:
                raise self._error("Bollinger multiplier must not be negative", mult_pos)
            self._expect_char(")")
            return IndicatorSpec.bollinger(period, mult)
        return IndicatorSpec.pivot()

    # Rules ------------------------------------------------------------

    def rule(self) -> Rule:
        start = self.pos
        word = self._take_word()
        handler = self._RULES.get(word)
        if handler is None:
            self._skip_ws()
            raise self._error(f"expected rule, found {self._found()}")
        self.pos += len(word)
        return handler(self, word, start)

    def _comparison(self, keyword: str, start: int) -> Rule:
        self._expect_char("(")
        left = self.operand()
        self._expect_char(",")
        right = self.operand()
        self._expect_char(")")
        return _COMPARISONS[keyword](left, right)

    def _between(self, keyword: str, start: int) -> Rule:
        self._expect_char("(")
        operand = self.operand()
        self._expect_char(",")
        lower = self._number()
        self._expect_char(",")
        upper = self._number()
        self._expect_char(")")
        return Between(operand, lower, upper)

    def _logical(self, keyword: str, start: int) -> Rule:
        self._expect_char("(")
        children = [self.rule()]
        while True:
            self._skip_ws()
            if self._peek() == ")":
                self.pos += 1
                break
            self._expect_char(",")
            children.append(self.rule())
        if len(children) < 2:
            raise self._error(f"{keyword} requires at least 2 rules", start)
        return And(tuple(children)) if keyword == "AND" else Or(tuple(children))

    def _not(self, keyword: str, start: int) -> Rule:
        self._expect_char("(")
        child = self.rule()
        self._expect_char(")")
        return Not(child)

    def _temporal(self, keyword: str, start: int) -> Rule:
        self._expect_char("(")
        child = self.rule()
        self._expect_char(",")
        count = self._integer()
        self._expect_char(")")
        return Consecutive(child, count) if keyword == "CONSECUTIVE" else AnyOf(child, count)

    _RULES: Dict[str, Callable[["_Parser", str, int], Rule]] = {
        "CROSS_ABOVE": _comparison,
        "CROSS_BELOW": _comparison,
        "ABOVE": _comparison,
        "BELOW": _comparison,
        "EQUALS": _comparison,
        "BETWEEN": _between,
        "AND": _logical,
        "OR": _logical,
        "NOT": _not,
        "CONSECUTIVE": _temporal,
        "ANY_OF": _temporal,
    }

    def parse(self) -> Rule:
        rule = self.rule()
        self._skip_ws()
        if self.pos < len(self.text):
            raise self._error(f"unexpected input after rule: '{self.text[self.pos:]}'")
        return rule


def parse_rule(text: str) -> Rule:
    """Parse rule text into a rule tree.

    Args:
        text: Rule text, e.g. ``"AND(ABOVE(close, SMA(200)), BELOW(RSI(14), 30))"``.

    Returns:
        The parsed :data:`~backtester.rules.Rule`.

    Raises:
        RuleParseError: With the offset of the first offending token.
    """
    return _Parser(text).parse()
