"""
Rule Backtester -- Performance metrics.

Computes standard quantitative trading metrics from a finished portfolio:

  - **Total return** and annualised return (fractions, not percent)
  - **Sharpe ratio** (annualised, 252 trading days, population stddev)
  - **Sortino ratio** (downside deviation below the daily risk-free rate)
  - **Maximum drawdown** (fractional peak-to-trough decline) and its
    longest duration below the running peak
  - **Win rate**, profit factor, average/largest win and loss
  - **Average holding period** in calendar days
  - **Per-instrument breakdowns**

All metrics are computed once, after the backtest loop has finished.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Sequence

import numpy as np

from backtester.models import BacktestResult, ClosedTrade, EquityPoint
from backtester.portfolio import Portfolio


TRADING_DAYS_PER_YEAR = 252


@dataclass
class DrawdownInfo:
    """Maximum drawdown details.

    ``duration`` counts consecutive equity points strictly below the
    running peak.
    """
    max_drawdown: float = 0.0
    max_drawdown_dollar: float = 0.0
    duration: int = 0
    peak_equity: float = 0.0
    trough_equity: float = 0.0
    peak_date: Optional[date] = None
    trough_date: Optional[date] = None


@dataclass
class TradeStats:
    """Win/loss statistics over a set of closed trades."""
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    breakeven_trades: int = 0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    total_pnl: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    avg_trade_duration: float = 0.0


@dataclass
class InstrumentMetrics(TradeStats):
    """Per-instrument performance summary."""
    code: str = ""
    exchange: str = ""


@dataclass
class PerformanceMetrics(TradeStats):
    """Complete performance metrics for a backtest run.

    Inherits trade statistics from :class:`TradeStats`.  Losses
    (``avg_loss``, ``largest_loss``) are reported as positive magnitudes.
    """
    # Capital
    initial_capital: float = 0.0
    final_equity: float = 0.0
    total_return: float = 0.0
    annualized_return: float = 0.0

    # Risk-adjusted
    sharpe_ratio: float = 0.0
    sortino_ratio: float = 0.0

    # Drawdown
    drawdown: DrawdownInfo = field(default_factory=DrawdownInfo)

    # Per-instrument
    by_instrument: Dict[str, InstrumentMetrics] = field(default_factory=dict)

    @property
    def max_drawdown(self) -> float:
        return self.drawdown.max_drawdown


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def daily_returns(equity_curve: Sequence[EquityPoint]) -> np.ndarray:
    """Simple returns between consecutive equity points (0 when prev <= 0)."""
    if len(equity_curve) < 2:
        return np.zeros(0)
    equity = np.array([p.equity for p in equity_curve], dtype=float)
    prev = equity[:-1]
    curr = equity[1:]
    safe_prev = np.where(prev > 0, prev, 1.0)
    return np.where(prev > 0, (curr - prev) / safe_prev, 0.0)


def compute_drawdown(equity_curve: Sequence[EquityPoint]) -> DrawdownInfo:
    """Largest fractional decline from a running peak, plus its longest duration."""
    if not equity_curve:
        return DrawdownInfo()

    peak = equity_curve[0].equity
    peak_date = equity_curve[0].date
    info = DrawdownInfo(
        peak_equity=peak, trough_equity=peak, peak_date=peak_date, trough_date=peak_date,
    )
    run = 0

    for point in equity_curve:
        eq = point.equity
        if eq >= peak:
            if eq > peak:
                peak = eq
                peak_date = point.date
            run = 0
            continue

        run += 1
        info.duration = max(info.duration, run)
        if peak > 0:
            dd = (peak - eq) / peak
            if dd > info.max_drawdown:
                info.max_drawdown = dd
                info.max_drawdown_dollar = peak - eq
                info.peak_equity = peak
                info.peak_date = peak_date
                info.trough_equity = eq
                info.trough_date = point.date

    return info


def risk_adjusted_ratios(
    returns: np.ndarray, risk_free_rate: float,
) -> tuple:
    """Annualised ``(sharpe, sortino)`` from daily returns.

    Sharpe divides the mean excess return by the population stddev of the
    returns.  Sortino divides it by ``sqrt(sum((r - rf)^2 for r < rf) / n)``.
    Either ratio is 0 when its denominator is 0.
    """
    n = len(returns)
    if n == 0:
        return 0.0, 0.0
    daily_rf = risk_free_rate / TRADING_DAYS_PER_YEAR
    mean = float(np.mean(returns))
    excess = mean - daily_rf
    annualiser = math.sqrt(TRADING_DAYS_PER_YEAR)

    std = float(np.std(returns))
    sharpe = excess / std * annualiser if std > 0 else 0.0

    below = returns[returns < daily_rf]
    downside = math.sqrt(float(np.sum((below - daily_rf) ** 2)) / n) if below.size else 0.0
    sortino = excess / downside * annualiser if downside > 0 else 0.0
    return sharpe, sortino


def annualized_return(total_return: float, points: int) -> float:
    """``(1 + total_return) ** (252 / (points - 1)) - 1``.

    0 with fewer than two equity points; -1 when equity was wiped out.
    """
    if points < 2:
        return 0.0
    growth = 1.0 + total_return
    if growth <= 0:
        return -1.0
    return growth ** (TRADING_DAYS_PER_YEAR / (points - 1)) - 1.0


def trade_stats(trades: Sequence[ClosedTrade], into: Optional[TradeStats] = None) -> TradeStats:
    """Fill a :class:`TradeStats` (or subclass instance) from *trades*."""
    stats = into if into is not None else TradeStats()
    wins = [t.pnl for t in trades if t.pnl > 0]
    losses = [-t.pnl for t in trades if t.pnl < 0]
    gross_profit = sum(wins)
    gross_loss = sum(losses)

    stats.total_trades = len(trades)
    stats.winning_trades = len(wins)
    stats.losing_trades = len(losses)
    stats.breakeven_trades = len(trades) - len(wins) - len(losses)
    stats.win_rate = len(wins) / len(trades) if trades else 0.0
    if gross_loss > 0:
        stats.profit_factor = gross_profit / gross_loss
    elif gross_profit > 0:
        stats.profit_factor = float("inf")
    else:
        stats.profit_factor = 0.0
    stats.total_pnl = sum(t.pnl for t in trades)
    stats.avg_win = gross_profit / len(wins) if wins else 0.0
    stats.avg_loss = gross_loss / len(losses) if losses else 0.0
    stats.largest_win = max(wins) if wins else 0.0
    stats.largest_loss = max(losses) if losses else 0.0
    stats.avg_trade_duration = (
        sum(t.holding_days for t in trades) / len(trades) if trades else 0.0
    )
    return stats


def instrument_breakdown(trades: Sequence[ClosedTrade]) -> Dict[str, InstrumentMetrics]:
    """Trade statistics per instrument code, in first-traded order."""
    buckets: Dict[str, List[ClosedTrade]] = {}
    for t in trades:
        buckets.setdefault(t.code, []).append(t)
    return {
        code: trade_stats(code_trades, InstrumentMetrics(code=code, exchange=code_trades[0].exchange))
        for code, code_trades in buckets.items()
    }


# ---------------------------------------------------------------------------
# Main entry points
# ---------------------------------------------------------------------------

def compute_portfolio_metrics(portfolio: Portfolio, risk_free_rate: float = 0.0) -> PerformanceMetrics:
    """Compute every metric from a finished portfolio.

    Args:
        portfolio: Portfolio after the backtest loop completed.
        risk_free_rate: Annual risk-free rate (e.g. ``0.05``).

    Returns:
        A :class:`PerformanceMetrics` with all computed values.
    """
    curve = portfolio.equity_curve
    initial = portfolio.initial_capital
    final_equity = portfolio.final_equity
    total_return = final_equity / initial - 1.0 if initial > 0 else 0.0
    sharpe, sortino = risk_adjusted_ratios(daily_returns(curve), risk_free_rate)

    metrics = PerformanceMetrics(
        initial_capital=initial,
        final_equity=final_equity,
        total_return=total_return,
        annualized_return=annualized_return(total_return, len(curve)),
        sharpe_ratio=sharpe,
        sortino_ratio=sortino,
        drawdown=compute_drawdown(curve),
        by_instrument=instrument_breakdown(portfolio.closed_trades),
    )
    return trade_stats(portfolio.closed_trades, metrics)


def compute_metrics(result: BacktestResult) -> PerformanceMetrics:
    """Compute all performance metrics from a backtest result."""
    return compute_portfolio_metrics(result.portfolio, result.config.risk_free_rate)
