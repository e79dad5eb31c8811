"""
Rule Backtester -- Rule evaluator.

Pure function of ``(rule, bars, indicators, index) -> bool``.  Operands
that cannot be read (missing indicator, warmup point, out-of-range
index) resolve to ``nan``, and every comparison against ``nan`` is
false, so an unreadable operand can never trigger a trade.
"""

from __future__ import annotations

import math
from typing import Mapping, Sequence

from backtester.indicators import IndicatorSeries, IndicatorSpec
from backtester.models import PriceBar
from backtester.rules import (
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

EQUALS_EPSILON = 1e-9

IndicatorMap = Mapping[IndicatorSpec, IndicatorSeries]


def resolve_operand(
    operand: Operand,
    bars: Sequence[PriceBar],
    indicators: IndicatorMap,
    index: int,
) -> float:
    """Numeric value of *operand* at bar *index* (``nan`` when unreadable)."""
    if isinstance(operand, ConstantOperand):
        return float(operand.value)
    if isinstance(operand, PriceOperand):
        if index < 0 or index >= len(bars):
            return math.nan
        bar = bars[index]
        field = operand.field
        if field == PriceField.OPEN:
            return bar.open
        if field == PriceField.HIGH:
            return bar.high
        if field == PriceField.LOW:
            return bar.low
        if field == PriceField.CLOSE:
            return bar.close
        return bar.volume
    if isinstance(operand, IndicatorOperand):
        series = indicators.get(operand.spec)
        if series is None:
            return math.nan
        return series.value_at(index, operand.field)
    raise TypeError(f"Not an operand: {operand!r}")


def _cross(rule, bars, indicators, index: int, above: bool) -> bool:
    if index == 0:
        return False
    l_curr = resolve_operand(rule.left, bars, indicators, index)
    r_curr = resolve_operand(rule.right, bars, indicators, index)
    l_prev = resolve_operand(rule.left, bars, indicators, index - 1)
    r_prev = resolve_operand(rule.right, bars, indicators, index - 1)
    if above:
        return l_prev <= r_prev and l_curr > r_curr
    return l_prev >= r_prev and l_curr < r_curr


def evaluate(
    rule: Rule,
    bars: Sequence[PriceBar],
    indicators: IndicatorMap,
    index: int,
) -> bool:
    """Evaluate *rule* at bar *index*.

    Args:
        rule: Rule tree to evaluate.
        bars: One instrument's bars, ordered by date.
        indicators: Precomputed series for that instrument, keyed by spec.
        index: Bar index to evaluate at.

    Returns:
        ``True`` if the rule holds at *index*.
    """
    if isinstance(rule, CrossAbove):
        return _cross(rule, bars, indicators, index, above=True)
    if isinstance(rule, CrossBelow):
        return _cross(rule, bars, indicators, index, above=False)
    if isinstance(rule, Above):
        return (resolve_operand(rule.left, bars, indicators, index)
                > resolve_operand(rule.right, bars, indicators, index))
    if isinstance(rule, Below):
        return (resolve_operand(rule.left, bars, indicators, index)
                < resolve_operand(rule.right, bars, indicators, index))
    if isinstance(rule, Equals):
        diff = (resolve_operand(rule.left, bars, indicators, index)
                - resolve_operand(rule.right, bars, indicators, index))
        return abs(diff) < EQUALS_EPSILON
    if isinstance(rule, Between):
        value = resolve_operand(rule.operand, bars, indicators, index)
        return rule.lower <= value <= rule.upper
    if isinstance(rule, And):
        return all(evaluate(child, bars, indicators, index) for child in rule.rules)
    if isinstance(rule, Or):
        return any(evaluate(child, bars, indicators, index) for child in rule.rules)
    if isinstance(rule, Not):
        return not evaluate(rule.rule, bars, indicators, index)
    if isinstance(rule, Consecutive):
        if index + 1 < rule.count:
            return False
        return all(
            evaluate(rule.rule, bars, indicators, i)
            for i in range(index - rule.count + 1, index + 1)
        )
    if isinstance(rule, AnyOf):
        return any(
            evaluate(rule.rule, bars, indicators, i)
            for i in range(max(0, index - rule.count + 1), index + 1)
        )
    raise TypeError(f"Not a rule: {rule!r}")
