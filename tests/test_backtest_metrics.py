"""
Tests for backtester performance metrics.
"""

import math

import numpy as np
import pytest
from datetime import date, timedelta

from backtester.metrics import (
    TRADING_DAYS_PER_YEAR,
    annualized_return,
    compute_drawdown,
    compute_metrics,
    compute_portfolio_metrics,
    daily_returns,
    instrument_breakdown,
    risk_adjusted_ratios,
    trade_stats,
)
from backtester.models import BacktestConfig, BacktestResult, ClosedTrade, EquityPoint, Strategy
from backtester.parser import parse_rule
from backtester.portfolio import Portfolio


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

START = date(2024, 1, 1)


def _make_curve(values):
    return [EquityPoint(START + timedelta(days=i), float(v)) for i, v in enumerate(values)]


def _make_trade(pnl, code="BHP", days=3):
    return ClosedTrade(code, "ASX", 10, 100.0, 100.0 + pnl / 10,
                       START, START + timedelta(days=days), float(pnl))


def _make_result(equity, trades=(), initial=100_000.0):
    portfolio = Portfolio(initial)
    for point in _make_curve(equity):
        portfolio.record_equity(point.date, point.equity)
    portfolio.closed_trades.extend(trades)
    strategy = Strategy("s", parse_rule("ABOVE(close, 1)"), parse_rule("BELOW(close, 1)"))
    return BacktestResult(strategy, BacktestConfig(initial_capital=initial, risk_free_rate=0.0),
                          portfolio, codes=["BHP"], exchange="ASX")


# ---------------------------------------------------------------------------
# Returns
# ---------------------------------------------------------------------------

class TestDailyReturns:
    def test_basic(self):
        returns = daily_returns(_make_curve([100, 110, 99]))
        assert returns.tolist() == pytest.approx([0.1, -0.1])

    def test_empty(self):
        assert len(daily_returns([])) == 0

    def test_single_point(self):
        assert len(daily_returns(_make_curve([100]))) == 0

    def test_zero_previous_equity(self):
        assert daily_returns(_make_curve([0, 50])).tolist() == [0.0]


class TestAnnualizedReturn:
    def test_one_year(self):
        assert annualized_return(0.1, TRADING_DAYS_PER_YEAR + 1) == pytest.approx(0.1)

    def test_too_few_points(self):
        assert annualized_return(0.5, 1) == 0.0

    def test_wiped_out(self):
        assert annualized_return(-1.0, 10) == -1.0


# ---------------------------------------------------------------------------
# Drawdown
# ---------------------------------------------------------------------------

class TestDrawdown:
    def test_no_drawdown(self):
        info = compute_drawdown(_make_curve([100, 110, 120]))
        assert info.max_drawdown == 0.0
        assert info.duration == 0

    def test_simple_drawdown(self):
        info = compute_drawdown(_make_curve([100, 120, 90, 110, 130]))
        assert info.max_drawdown == pytest.approx(0.25)
        assert info.max_drawdown_dollar == pytest.approx(30.0)
        assert info.peak_equity == 120.0
        assert info.trough_equity == 90.0
        assert info.peak_date == START + timedelta(days=1)
        assert info.trough_date == START + timedelta(days=2)
        assert info.duration == 2

    def test_longest_duration(self):
        info = compute_drawdown(_make_curve([100, 90, 100, 80, 85, 99, 101]))
        assert info.max_drawdown == pytest.approx(0.2)
        assert info.duration == 3

    def test_constant_equity(self):
        info = compute_drawdown(_make_curve([100] * 5))
        assert info.max_drawdown == 0.0
        assert info.duration == 0

    def test_empty(self):
        assert compute_drawdown([]).max_drawdown == 0.0


# ---------------------------------------------------------------------------
# Risk-adjusted ratios
# ---------------------------------------------------------------------------

class TestRiskAdjusted:
    def test_sharpe(self):
        returns = np.array([0.01, -0.01, 0.02, 0.0])
        sharpe, _ = risk_adjusted_ratios(returns, 0.0)
        expected = 0.005 / np.std(returns) * math.sqrt(TRADING_DAYS_PER_YEAR)
        assert sharpe == pytest.approx(expected)

    def test_sortino(self):
        returns = np.array([0.01, -0.01, 0.02, 0.0])
        _, sortino = risk_adjusted_ratios(returns, 0.0)
        assert sortino == pytest.approx(math.sqrt(TRADING_DAYS_PER_YEAR))

    def test_zero_std(self):
        sharpe, _ = risk_adjusted_ratios(np.array([0.01, 0.01, 0.01]), 0.0)
        assert sharpe == 0.0

    def test_no_downside(self):
        _, sortino = risk_adjusted_ratios(np.array([0.01, 0.02]), 0.0)
        assert sortino == 0.0

    def test_empty(self):
        assert risk_adjusted_ratios(np.zeros(0), 0.05) == (0.0, 0.0)

    def test_risk_free_rate_lowers_sharpe(self):
        returns = np.array([0.01, -0.005, 0.02, 0.003])
        assert risk_adjusted_ratios(returns, 0.05)[0] < risk_adjusted_ratios(returns, 0.0)[0]


# ---------------------------------------------------------------------------
# Trade statistics
# ---------------------------------------------------------------------------

class TestTradeStats:
    def test_mixed_trades(self):
        stats = trade_stats([_make_trade(100), _make_trade(-50), _make_trade(0), _make_trade(200)])
        assert stats.total_trades == 4
        assert stats.winning_trades == 2
        assert stats.losing_trades == 1
        assert stats.breakeven_trades == 1
        assert stats.win_rate == pytest.approx(0.5)
        assert stats.profit_factor == pytest.approx(6.0)
        assert stats.total_pnl == pytest.approx(250.0)
        assert stats.avg_win == pytest.approx(150.0)
        assert stats.avg_loss == pytest.approx(50.0)
        assert stats.largest_win == pytest.approx(200.0)
        assert stats.largest_loss == pytest.approx(50.0)
        assert stats.avg_trade_duration == pytest.approx(3.0)

    def test_no_losses_infinite_profit_factor(self):
        assert trade_stats([_make_trade(10)]).profit_factor == float("inf")

    def test_no_trades(self):
        stats = trade_stats([])
        assert stats.total_trades == 0
        assert stats.win_rate == 0.0
        assert stats.profit_factor == 0.0

    def test_instrument_breakdown(self):
        breakdown = instrument_breakdown([
            _make_trade(100, code="BHP"), _make_trade(-20, code="CBA"), _make_trade(50, code="BHP"),
        ])
        assert list(breakdown) == ["BHP", "CBA"]
        assert breakdown["BHP"].total_trades == 2
        assert breakdown["BHP"].total_pnl == pytest.approx(150.0)
        assert breakdown["CBA"].exchange == "ASX"


# ---------------------------------------------------------------------------
# Full computation
# ---------------------------------------------------------------------------

class TestComputeMetrics:
    def test_empty_equity_curve(self):
        metrics = compute_metrics(_make_result([]))
        assert metrics.final_equity == 100_000.0
        assert metrics.total_return == 0.0
        assert metrics.annualized_return == 0.0

    def test_returns_and_drawdown(self):
        trades = [_make_trade(-3_405)]
        metrics = compute_metrics(_make_result([100_000, 100_000, 98_865, 96_595], trades))
        assert metrics.total_return == pytest.approx(-0.03405)
        assert metrics.max_drawdown == pytest.approx(0.03405)
        assert metrics.losing_trades == 1
        assert metrics.by_instrument["BHP"].total_pnl == pytest.approx(-3_405.0)

    def test_portfolio_metrics_uses_rate(self):
        portfolio = Portfolio(1_000.0)
        for point in _make_curve([1_000, 1_010, 1_005, 1_020]):
            portfolio.record_equity(point.date, point.equity)
        low = compute_portfolio_metrics(portfolio, 0.0)
        high = compute_portfolio_metrics(portfolio, 0.5)
        assert high.sharpe_ratio < low.sharpe_ratio
