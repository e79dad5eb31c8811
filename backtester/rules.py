"""
Rule Backtester -- Rule language AST.

Operands and rules are frozen dataclasses forming a plain tree.  Their
``str()`` is the canonical rule text accepted by
:func:`backtester.parser.parse_rule`, so ``parse_rule(str(rule)) == rule``
for every constructible tree.

Example::

    from backtester.rules import CrossAbove, IndicatorOperand
    from backtester.indicators import IndicatorSpec

    rule = CrossAbove(IndicatorOperand(IndicatorSpec.sma(20)),
                      IndicatorOperand(IndicatorSpec.sma(50)))
    str(rule)  # "CROSS_ABOVE(SMA(20), SMA(50))"
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, List, Tuple, Union

from backtester.indicators import IndicatorField, IndicatorKind, IndicatorSpec

if TYPE_CHECKING:
    from backtester.models import Strategy


# ---------------------------------------------------------------------------
# Operands
# ---------------------------------------------------------------------------

class PriceField(Enum):
    """Bar fields usable as operands (lowercase in rule text)."""
    OPEN = "open"
    HIGH = "high"
    LOW = "low"
    CLOSE = "close"
    VOLUME = "volume"


class _Node:
    def __str__(self) -> str:
        return format_node(self)


@dataclass(frozen=True)
class PriceOperand(_Node):
    field: PriceField


@dataclass(frozen=True)
class ConstantOperand(_Node):
    value: float

    def __post_init__(self) -> None:
        if not math.isfinite(self.value):
            raise ValueError(f"Constant must be finite, got {self.value}")


@dataclass(frozen=True)
class IndicatorOperand(_Node):
    """Reads one field of an indicator series.

    Raises:
        ValueError: If *field* is not produced by *spec*'s indicator kind.
    """
    spec: IndicatorSpec
    field: IndicatorField = IndicatorField.VALUE

    def __post_init__(self) -> None:
        if self.field not in self.spec.fields:
            raise ValueError(f"{self.spec} has no field '{self.field.value}'")


Operand = Union[PriceOperand, ConstantOperand, IndicatorOperand]

OPEN = PriceOperand(PriceField.OPEN)
HIGH = PriceOperand(PriceField.HIGH)
LOW = PriceOperand(PriceField.LOW)
CLOSE = PriceOperand(PriceField.CLOSE)
VOLUME = PriceOperand(PriceField.VOLUME)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CrossAbove(_Node):
    left: Operand
    right: Operand


@dataclass(frozen=True)
class CrossBelow(_Node):
    left: Operand
    right: Operand


@dataclass(frozen=True)
class Above(_Node):
    left: Operand
    right: Operand


@dataclass(frozen=True)
class Below(_Node):
    left: Operand
    right: Operand


@dataclass(frozen=True)
class Equals(_Node):
    left: Operand
    right: Operand


@dataclass(frozen=True)
class Between(_Node):
    """True when ``lower <= operand <= upper``."""
    operand: Operand
    lower: float
    upper: float

    def __post_init__(self) -> None:
        if not (math.isfinite(self.lower) and math.isfinite(self.upper)):
            raise ValueError("BETWEEN bounds must be finite")


@dataclass(frozen=True)
class And(_Node):
    """All children true.  Requires at least two children."""
    rules: Tuple["Rule", ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "rules", tuple(self.rules))
        if len(self.rules) < 2:
            raise ValueError("AND requires at least 2 rules")


@dataclass(frozen=True)
class Or(_Node):
    """Any child true.  Requires at least two children."""
    rules: Tuple["Rule", ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "rules", tuple(self.rules))
        if len(self.rules) < 2:
            raise ValueError("OR requires at least 2 rules")


@dataclass(frozen=True)
class Not(_Node):
    rule: "Rule"


@dataclass(frozen=True)
class Consecutive(_Node):
    """Child rule true on each of the last *count* bars."""
    rule: "Rule"
    count: int

    def __post_init__(self) -> None:
        if self.count < 1:
            raise ValueError("CONSECUTIVE count must be at least 1")


@dataclass(frozen=True)
class AnyOf(_Node):
    """Child rule true on at least one of the last *count* bars."""
    rule: "Rule"
    count: int

    def __post_init__(self) -> None:
        if self.count < 1:
            raise ValueError("ANY_OF count must be at least 1")


Rule = Union[
    CrossAbove, CrossBelow, Above, Below, Equals, Between,
    And, Or, Not, Consecutive, AnyOf,
]

COMPARISON_KEYWORDS = {
    CrossAbove: "CROSS_ABOVE",
    CrossBelow: "CROSS_BELOW",
    Above: "ABOVE",
    Below: "BELOW",
    Equals: "EQUALS",
}


# ---------------------------------------------------------------------------
# Canonical text
# ---------------------------------------------------------------------------

# Operand keyword for each multi-field indicator field.
FIELD_KEYWORDS = {
    (IndicatorKind.MACD, IndicatorField.LINE): "MACD_LINE",
    (IndicatorKind.MACD, IndicatorField.SIGNAL): "MACD_SIGNAL",
    (IndicatorKind.MACD, IndicatorField.HISTOGRAM): "MACD_HISTOGRAM",
    (IndicatorKind.STOCHASTIC, IndicatorField.K): "STOCHASTIC_K",
    (IndicatorKind.STOCHASTIC, IndicatorField.D): "STOCHASTIC_D",
    (IndicatorKind.BOLLINGER, IndicatorField.UPPER): "BOLLINGER_UPPER",
    (IndicatorKind.BOLLINGER, IndicatorField.MIDDLE): "BOLLINGER_MIDDLE",
    (IndicatorKind.BOLLINGER, IndicatorField.LOWER): "BOLLINGER_LOWER",
    (IndicatorKind.PIVOT, IndicatorField.PIVOT): "PIVOT",
    (IndicatorKind.PIVOT, IndicatorField.R1): "PIVOT_R1",
    (IndicatorKind.PIVOT, IndicatorField.R2): "PIVOT_R2",
    (IndicatorKind.PIVOT, IndicatorField.R3): "PIVOT_R3",
    (IndicatorKind.PIVOT, IndicatorField.S1): "PIVOT_S1",
    (IndicatorKind.PIVOT, IndicatorField.S2): "PIVOT_S2",
    (IndicatorKind.PIVOT, IndicatorField.S3): "PIVOT_S3",
}


def format_number(value: float) -> str:
    """Shortest text that parses back to exactly *value*.

    Raises:
        ValueError: For NaN or infinite values, which have no rule text.
    """
    value = float(value)
    if not math.isfinite(value):
        raise ValueError(f"Cannot serialise non-finite number: {value}")
    return repr(value)


def format_operand(operand: Operand) -> str:
    if isinstance(operand, PriceOperand):
        return operand.field.value
    if isinstance(operand, ConstantOperand):
        return format_number(operand.value)
    if isinstance(operand, IndicatorOperand):
        spec = operand.spec
        keyword = FIELD_KEYWORDS.get((spec.kind, operand.field), spec.kind.value)
        if not spec.params:
            return keyword
        return f"{keyword}({','.join(repr(p) for p in spec.params)})"
    raise TypeError(f"Not an operand: {operand!r}")


def format_rule(rule: Rule) -> str:
    """Render *rule* in canonical rule text."""
    keyword = COMPARISON_KEYWORDS.get(type(rule))
    if keyword is not None:
        return f"{keyword}({format_operand(rule.left)}, {format_operand(rule.right)})"
    if isinstance(rule, Between):
        return (
            f"BETWEEN({format_operand(rule.operand)}, "
            f"{format_number(rule.lower)}, {format_number(rule.upper)})"
        )
    if isinstance(rule, And):
        return f"AND({', '.join(format_rule(r) for r in rule.rules)})"
    if isinstance(rule, Or):
        return f"OR({', '.join(format_rule(r) for r in rule.rules)})"
    if isinstance(rule, Not):
        return f"NOT({format_rule(rule.rule)})"
    if isinstance(rule, Consecutive):
        return f"CONSECUTIVE({format_rule(rule.rule)}, {rule.count})"
    if isinstance(rule, AnyOf):
        return f"ANY_OF({format_rule(rule.rule)}, {rule.count})"
    raise TypeError(f"Not a rule: {rule!r}")


def format_node(node: Union[Operand, Rule]) -> str:
    if isinstance(node, (PriceOperand, ConstantOperand, IndicatorOperand)):
        return format_operand(node)
    return format_rule(node)


# ---------------------------------------------------------------------------
# Indicator extraction
# ---------------------------------------------------------------------------

def _operand_specs(operand: Operand, out: List[IndicatorSpec]) -> None:
    if isinstance(operand, IndicatorOperand) and operand.spec not in out:
        out.append(operand.spec)


def _collect(rule: Rule, out: List[IndicatorSpec]) -> None:
    if type(rule) in COMPARISON_KEYWORDS:
        _operand_specs(rule.left, out)
        _operand_specs(rule.right, out)
    elif isinstance(rule, Between):
        _operand_specs(rule.operand, out)
    elif isinstance(rule, (And, Or)):
        for child in rule.rules:
            _collect(child, out)
    elif isinstance(rule, (Not, Consecutive, AnyOf)):
        _collect(rule.rule, out)


def collect_indicators(rule: Rule) -> List[IndicatorSpec]:
    """Distinct indicator specs referenced by *rule*, in first-seen order."""
    out: List[IndicatorSpec] = []
    _collect(rule, out)
    return out


def strategy_indicators(strategy: "Strategy") -> List[IndicatorSpec]:
    """Distinct indicator specs referenced by any of a strategy's rules."""
    out: List[IndicatorSpec] = []
    for rule in (strategy.entry_long, strategy.exit_long,
                 strategy.entry_short, strategy.exit_short):
        if rule is not None:
            _collect(rule, out)
    return out
