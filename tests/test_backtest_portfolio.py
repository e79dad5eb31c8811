"""
Tests for portfolio state and valuation.
"""

import pytest
from datetime import date

from backtester.errors import InvariantViolation
from backtester.models import Position
from backtester.portfolio import Portfolio


def _make_position(code="BHP", quantity=10, entry=100.0):
    return Position(code, "ASX", quantity, entry, date(2024, 1, 2))


class TestPositions:
    def test_add_get_remove(self):
        portfolio = Portfolio(1_000.0)
        pos = _make_position()
        portfolio.add_position(pos)
        assert portfolio.get_position("BHP") is pos
        assert portfolio.position_count == 1
        assert portfolio.remove_position("BHP") is pos
        assert portfolio.get_position("BHP") is None

    def test_duplicate_position_is_invariant_violation(self):
        portfolio = Portfolio(1_000.0)
        portfolio.add_position(_make_position())
        with pytest.raises(InvariantViolation):
            portfolio.add_position(_make_position())

    def test_remove_missing_is_invariant_violation(self):
        with pytest.raises(InvariantViolation):
            Portfolio(1_000.0).remove_position("BHP")


class TestEquityCurve:
    def test_strictly_increasing_dates(self):
        portfolio = Portfolio(1_000.0)
        portfolio.record_equity(date(2024, 1, 2), 1_000.0)
        with pytest.raises(InvariantViolation):
            portfolio.record_equity(date(2024, 1, 2), 1_001.0)
        with pytest.raises(InvariantViolation):
            portfolio.record_equity(date(2024, 1, 1), 1_001.0)

    def test_final_equity(self):
        portfolio = Portfolio(1_000.0)
        assert portfolio.final_equity == 1_000.0
        portfolio.record_equity(date(2024, 1, 2), 1_050.0)
        assert portfolio.final_equity == 1_050.0


class TestValuation:
    def test_cash_only(self):
        assert Portfolio(1_000.0).total_equity({}) == 1_000.0

    def test_long_marked_to_market(self):
        portfolio = Portfolio(1_000.0)
        portfolio.cash = 0.0
        portfolio.add_position(_make_position(quantity=10, entry=100.0))
        assert portfolio.total_equity({"BHP": 110.0}) == pytest.approx(1_100.0)

    def test_short_marked_to_market(self):
        portfolio = Portfolio(1_000.0)
        portfolio.cash = 0.0
        portfolio.add_position(_make_position(quantity=-10, entry=100.0))
        assert portfolio.total_equity({"BHP": 100.0}) == pytest.approx(1_000.0)
        assert portfolio.total_equity({"BHP": 90.0}) == pytest.approx(1_100.0)
        assert portfolio.total_equity({"BHP": 110.0}) == pytest.approx(900.0)

    def test_unpriced_position_excluded(self):
        portfolio = Portfolio(1_000.0)
        portfolio.cash = 500.0
        portfolio.add_position(_make_position(quantity=5, entry=100.0))
        assert portfolio.total_equity({"CBA": 50.0}) == pytest.approx(500.0)
