"""
Rule Backtester -- Report generation.

Produces a human-readable text report from backtest results and metrics.
Designed for terminal output; :class:`TextReportSink` writes it to a file.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from backtester.metrics import PerformanceMetrics, compute_metrics
from backtester.models import BacktestResult, ClosedTrade, EquityPoint
from backtester.portfolio import Portfolio

logger = logging.getLogger(__name__)


def _pf(value: float) -> str:
    return f"{value:.2f}" if value != float("inf") else "inf"


def generate_report(
    result: BacktestResult,
    metrics: Optional[PerformanceMetrics] = None,
) -> str:
    """Generate a text summary report from backtest results.

    Args:
        result: Completed :class:`BacktestResult`.
        metrics: Pre-computed metrics.  If ``None``, they are computed
            automatically from *result*.

    Returns:
        A formatted multi-line string.
    """
    if metrics is None:
        metrics = compute_metrics(result)

    lines: List[str] = []
    w = 60  # column width for the divider

    lines.append("=" * w)
    lines.append("RULE BACKTESTER -- BACKTEST REPORT")
    lines.append("=" * w)

    lines.append(f"Strategy:         {result.strategy.name}")
    if result.strategy.description:
        lines.append(f"Description:      {result.strategy.description}")
    if result.codes:
        lines.append(f"Instruments:      {', '.join(result.codes)} ({result.exchange})")
    if result.start_date and result.end_date:
        lines.append(f"Period:           {result.start_date:%Y-%m-%d} to {result.end_date:%Y-%m-%d}")
    lines.append(f"Trading days:     {len(result.equity_curve):>14,}")
    for skip in result.skipped:
        lines.append(f"Skipped:          {skip.describe()}")
    lines.append("")

    # Capital & returns
    lines.append("-" * w)
    lines.append("RETURNS")
    lines.append("-" * w)
    lines.append(f"Initial capital:  ${metrics.initial_capital:>14,.2f}")
    lines.append(f"Final equity:     ${metrics.final_equity:>14,.2f}")
    lines.append(f"Realised P&L:     ${metrics.total_pnl:>14,.2f}")
    lines.append(f"Total return:     {metrics.total_return * 100:>14.2f}%")
    lines.append(f"Annualised return:{metrics.annualized_return * 100:>14.2f}%")
    lines.append("")

    # Risk metrics
    lines.append("-" * w)
    lines.append("RISK METRICS")
    lines.append("-" * w)
    lines.append(f"Sharpe ratio:     {metrics.sharpe_ratio:>14.3f}")
    lines.append(f"Sortino ratio:    {metrics.sortino_ratio:>14.3f}")
    lines.append(f"Max drawdown:     {metrics.drawdown.max_drawdown * 100:>13.2f}%")
    lines.append(f"Max drawdown $:   ${metrics.drawdown.max_drawdown_dollar:>14,.2f}")
    lines.append(f"Drawdown days:    {metrics.drawdown.duration:>14}")
    if metrics.drawdown.max_drawdown > 0:
        lines.append(f"  Peak:           {metrics.drawdown.peak_date}")
        lines.append(f"  Trough:         {metrics.drawdown.trough_date}")
    lines.append("")

    # Trade statistics
    lines.append("-" * w)
    lines.append("TRADE STATISTICS")
    lines.append("-" * w)
    lines.append(f"Total trades:     {metrics.total_trades:>14}")
    lines.append(f"Winning trades:   {metrics.winning_trades:>14}")
    lines.append(f"Losing trades:    {metrics.losing_trades:>14}")
    lines.append(f"Breakeven trades: {metrics.breakeven_trades:>14}")
    lines.append(f"Win rate:         {metrics.win_rate * 100:>13.1f}%")
    lines.append(f"Profit factor:    {_pf(metrics.profit_factor):>14}")
    lines.append("")
    lines.append(f"Avg win:          ${metrics.avg_win:>14,.2f}")
    lines.append(f"Avg loss:         ${metrics.avg_loss:>14,.2f}")
    lines.append(f"Largest win:      ${metrics.largest_win:>14,.2f}")
    lines.append(f"Largest loss:     ${metrics.largest_loss:>14,.2f}")
    lines.append(f"Avg holding days: {metrics.avg_trade_duration:>14.1f}")
    lines.append("")

    # Open positions at end
    if result.open_positions:
        lines.append("-" * w)
        lines.append(f"OPEN POSITIONS AT END ({len(result.open_positions)})")
        lines.append("-" * w)
        for pos in result.open_positions:
            side = "long" if pos.is_long else "short"
            lines.append(
                f"  {pos.code:<8} {side:<5} qty={pos.quantity:g} "
                f"entry=${pos.entry_price:.2f} since={pos.entry_date}"
            )
        lines.append("")

    # Trade log
    if result.trades:
        lines.append("-" * w)
        lines.append("TRADE LOG")
        lines.append("-" * w)
        for t in result.trades:
            side = "long" if t.is_long else "short"
            lines.append(
                f"  {t.code:<8} {side:<5} {t.entry_date} -> {t.exit_date} "
                f"{t.entry_price:>9.2f} -> {t.exit_price:>9.2f}  P&L ${t.pnl:>11,.2f}"
            )
        lines.append("")

    # Per-instrument breakdown
    if result.is_multi_instrument and metrics.by_instrument:
        lines.append("-" * w)
        lines.append("PER-INSTRUMENT BREAKDOWN")
        lines.append("-" * w)
        for code, im in sorted(metrics.by_instrument.items()):
            lines.append(f"  {code}")
            lines.append(f"    Trades:       {im.total_trades:>8}")
            lines.append(f"    Win rate:     {im.win_rate * 100:>7.1f}%")
            lines.append(f"    Total P&L:    ${im.total_pnl:>10,.2f}")
            lines.append(f"    Profit factor:{_pf(im.profit_factor):>10}")
            lines.append("")

    lines.append("=" * w)
    lines.append("END OF REPORT")
    lines.append("=" * w)

    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------

class ReportSink(ABC):
    """Destination for a finished backtest."""

    @abstractmethod
    def write(
        self,
        result: BacktestResult,
        metrics: Optional[PerformanceMetrics],
        path: Union[str, Path],
    ) -> None:
        """Render *result* and write it to *path*."""


class TextReportSink(ReportSink):
    """Writes :func:`generate_report` output as a UTF-8 text file."""

    def write(
        self,
        result: BacktestResult,
        metrics: Optional[PerformanceMetrics],
        path: Union[str, Path],
    ) -> None:
        path = Path(path)
        path.write_text(generate_report(result, metrics) + "\n", encoding="utf-8")
        logger.info("Wrote report to %s", path)


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

def merge_results(results: Sequence[BacktestResult]) -> BacktestResult:
    """Combine independently-run results into one portfolio view.

    Cash and initial capital are summed.  Equity is summed per date over
    the union of dates; a run without a point on some date contributes
    its last recorded equity (its initial capital before its first point).
    Trades are concatenated and sorted by exit date.  Strategy and
    config come from the first result.

    Raises:
        ValueError: If *results* is empty or two runs hold the same open
            instrument.
    """
    if not results:
        raise ValueError("merge_results() needs at least one result")

    merged = Portfolio(sum(r.portfolio.initial_capital for r in results))
    merged.cash = sum(r.portfolio.cash for r in results)

    for r in results:
        for code, pos in r.portfolio.positions.items():
            if code in merged.positions:
                raise ValueError(f"Instrument {code} is open in more than one result")
            merged.positions[code] = pos

    trades: List[ClosedTrade] = [t for r in results for t in r.trades]
    merged.closed_trades = sorted(trades, key=lambda t: t.exit_date)

    curves: List[Dict] = [{p.date: p.equity for p in r.equity_curve} for r in results]
    last = [r.portfolio.initial_capital for r in results]
    for day in sorted(set().union(*curves)):
        for i, curve in enumerate(curves):
            if day in curve:
                last[i] = curve[day]
        merged.equity_curve.append(EquityPoint(day, sum(last)))

    codes: List[str] = []
    skipped: List = []
    for r in results:
        codes.extend(c for c in r.codes if c not in codes)
        skipped.extend(r.skipped)

    first = results[0]
    return BacktestResult(
        strategy=first.strategy,
        config=first.config,
        portfolio=merged,
        codes=codes,
        exchange=first.exchange,
        skipped=skipped,
    )
