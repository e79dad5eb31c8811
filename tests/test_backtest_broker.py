"""
Tests for the execution simulator.
"""

import pytest
from datetime import date

from backtester.broker import (
    SimulatedBroker,
    calculate_commission,
    check_triggers,
    enter_long,
    enter_short,
    exit_position,
    slippage_long_entry,
    slippage_long_exit,
    slippage_short_entry,
    slippage_short_exit,
)
from backtester.models import ExecutionConfig, RejectReason, Strategy
from backtester.parser import parse_rule
from backtester.portfolio import Portfolio


D1 = date(2024, 1, 2)
D2 = date(2024, 1, 3)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config():
    return ExecutionConfig(allow_shorting=True)


@pytest.fixture
def portfolio():
    return Portfolio(100_000.0)


def make_strategy(**kwargs):
    kwargs.setdefault("name", "test")
    kwargs.setdefault("entry_long", parse_rule("ABOVE(close, 0)"))
    kwargs.setdefault("exit_long", parse_rule("BELOW(close, 0)"))
    return Strategy(**kwargs)


# ---------------------------------------------------------------------------
# Costs
# ---------------------------------------------------------------------------

class TestCosts:
    def test_commission_flat_plus_pct(self):
        config = ExecutionConfig(commission_flat=5.0, commission_pct=0.1)
        assert calculate_commission(10_000.0, config) == pytest.approx(15.0)

    def test_slippage_is_adverse(self):
        assert slippage_long_entry(100.0, 0.5) == pytest.approx(100.5)
        assert slippage_short_entry(100.0, 0.5) == pytest.approx(99.5)
        assert slippage_long_exit(100.0, 0.5) == pytest.approx(99.5)
        assert slippage_short_exit(100.0, 0.5) == pytest.approx(100.5)


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------

class TestEntries:
    def test_long_sizing(self, portfolio, config):
        result = enter_long(portfolio, "BHP", "ASX", 110.0, D1, make_strategy(), config)
        assert result.accepted
        assert result.position.quantity == 227
        assert result.cost == pytest.approx(24_970.0)
        assert portfolio.cash == pytest.approx(75_030.0)
        assert portfolio.has_position("BHP")

    def test_short_quantity_negative(self, portfolio, config):
        result = enter_short(portfolio, "BHP", "ASX", 100.0, D1, make_strategy(), config)
        assert result.accepted
        assert result.position.quantity == -250
        assert portfolio.cash == pytest.approx(75_000.0)

    def test_zero_quantity_rejected(self, config):
        portfolio = Portfolio(100.0)
        result = enter_long(portfolio, "BHP", "ASX", 500.0, D1, make_strategy(), config)
        assert not result.accepted
        assert result.reason == RejectReason.ZERO_QUANTITY
        assert portfolio.cash == 100.0

    @pytest.mark.parametrize("price", [0.0, -1.0, float("nan")])
    def test_unusable_price_rejected(self, portfolio, config, price):
        long_result = enter_long(portfolio, "BHP", "ASX", price, D1, make_strategy(), config)
        short_result = enter_short(portfolio, "BHP", "ASX", price, D1, make_strategy(), config)
        assert long_result.reason == RejectReason.ZERO_QUANTITY
        assert short_result.reason == RejectReason.ZERO_QUANTITY
        assert portfolio.cash == 100_000.0
        assert not portfolio.has_position("BHP")

    def test_insufficient_cash_rejected(self):
        portfolio = Portfolio(1_000.0)
        config = ExecutionConfig(commission_flat=1.0)
        result = enter_long(portfolio, "BHP", "ASX", 100.0, D1,
                            make_strategy(position_size=1.0), config)
        assert not result.accepted
        assert result.reason == RejectReason.INSUFFICIENT_CASH
        assert portfolio.cash == 1_000.0
        assert not portfolio.has_position("BHP")

    def test_shorting_disabled(self, portfolio):
        result = enter_short(portfolio, "BHP", "ASX", 100.0, D1, make_strategy(), ExecutionConfig())
        assert not result.accepted
        assert result.reason == RejectReason.SHORTING_DISABLED

    def test_already_open(self, portfolio, config):
        enter_long(portfolio, "BHP", "ASX", 100.0, D1, make_strategy(), config)
        result = enter_long(portfolio, "BHP", "ASX", 100.0, D2, make_strategy(), config)
        assert result.reason == RejectReason.ALREADY_OPEN

    def test_long_stop_and_target_levels(self, portfolio, config):
        strategy = make_strategy(stop_loss_pct=5.0, take_profit_pct=10.0)
        pos = enter_long(portfolio, "BHP", "ASX", 100.0, D1, strategy, config).position
        assert pos.stop_loss == pytest.approx(95.0)
        assert pos.take_profit == pytest.approx(110.0)

    def test_short_stop_and_target_levels(self, portfolio, config):
        strategy = make_strategy(stop_loss_pct=5.0, take_profit_pct=10.0)
        pos = enter_short(portfolio, "BHP", "ASX", 100.0, D1, strategy, config).position
        assert pos.stop_loss == pytest.approx(105.0)
        assert pos.take_profit == pytest.approx(90.0)

    def test_levels_use_fill_price(self, portfolio):
        config = ExecutionConfig(slippage_pct=1.0)
        strategy = make_strategy(stop_loss_pct=10.0)
        pos = enter_long(portfolio, "BHP", "ASX", 100.0, D1, strategy, config).position
        assert pos.entry_price == pytest.approx(101.0)
        assert pos.stop_loss == pytest.approx(90.9)


# ---------------------------------------------------------------------------
# Exits
# ---------------------------------------------------------------------------

class TestExits:
    def test_long_round_trip_same_price_preserves_cash(self, portfolio, config):
        enter_long(portfolio, "BHP", "ASX", 37.13, D1, make_strategy(), config)
        trade = exit_position(portfolio, "BHP", 37.13, D2, config)
        assert trade.pnl == pytest.approx(0.0)
        assert portfolio.cash == pytest.approx(100_000.0)

    def test_short_round_trip_same_price_preserves_cash(self, portfolio, config):
        enter_short(portfolio, "BHP", "ASX", 37.13, D1, make_strategy(), config)
        trade = exit_position(portfolio, "BHP", 37.13, D2, config)
        assert trade.pnl == pytest.approx(0.0)
        assert portfolio.cash == pytest.approx(100_000.0)

    def test_short_profit(self, config):
        portfolio = Portfolio(1_000.0)
        enter_short(portfolio, "BHP", "ASX", 100.0, D1, make_strategy(position_size=1.0), config)
        assert portfolio.cash == pytest.approx(0.0)
        trade = exit_position(portfolio, "BHP", 90.0, D2, config)
        assert trade.pnl == pytest.approx(100.0)
        assert portfolio.cash == pytest.approx(1_100.0)
        assert not trade.is_long

    def test_commissions_charged_both_sides(self):
        portfolio = Portfolio(10_000.0)
        config = ExecutionConfig(commission_flat=10.0)
        enter_long(portfolio, "BHP", "ASX", 100.0, D1, make_strategy(position_size=0.5), config)
        assert portfolio.cash == pytest.approx(4_990.0)
        trade = exit_position(portfolio, "BHP", 110.0, D2, config)
        assert trade.pnl == pytest.approx(480.0)
        assert portfolio.cash == pytest.approx(10_480.0)

    def test_exit_records_trade(self, portfolio, config):
        enter_long(portfolio, "BHP", "ASX", 100.0, D1, make_strategy(), config)
        trade = exit_position(portfolio, "BHP", 105.0, D2, config)
        assert portfolio.closed_trades == [trade]
        assert trade.entry_date == D1
        assert trade.exit_date == D2
        assert not portfolio.has_position("BHP")

    def test_exit_without_position(self, portfolio, config):
        assert exit_position(portfolio, "BHP", 100.0, D1, config) is None


class TestTriggers:
    def test_only_breached_positions_exit(self, portfolio, config):
        strategy = make_strategy(stop_loss_pct=5.0, position_size=0.1)
        enter_long(portfolio, "BHP", "ASX", 100.0, D1, strategy, config)
        enter_long(portfolio, "CBA", "ASX", 100.0, D1, strategy, config)
        closed = check_triggers(portfolio, {"BHP": 94.0, "CBA": 99.0}, D2, config)
        assert closed == 1
        assert not portfolio.has_position("BHP")
        assert portfolio.has_position("CBA")

    def test_unpriced_positions_skipped(self, portfolio, config):
        strategy = make_strategy(stop_loss_pct=5.0)
        enter_long(portfolio, "BHP", "ASX", 100.0, D1, strategy, config)
        assert check_triggers(portfolio, {}, D2, config) == 0
        assert portfolio.has_position("BHP")

    def test_take_profit_on_short(self, portfolio, config):
        strategy = make_strategy(take_profit_pct=10.0)
        enter_short(portfolio, "BHP", "ASX", 100.0, D1, strategy, config)
        assert check_triggers(portfolio, {"BHP": 89.0}, D2, config) == 1
        assert portfolio.closed_trades[0].pnl > 0


class TestSimulatedBroker:
    def test_binds_config(self, portfolio):
        broker = SimulatedBroker(ExecutionConfig(commission_flat=2.0))
        assert broker.commission(1_000.0) == pytest.approx(2.0)
        result = broker.enter_long(portfolio, "BHP", "ASX", 100.0, D1, make_strategy())
        assert result.commission == pytest.approx(2.0)
        trade = broker.exit_position(portfolio, "BHP", 100.0, D2)
        assert trade.pnl == pytest.approx(-4.0)
