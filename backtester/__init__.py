"""
Rule Backtester -- Daily-bar strategy backtesting.

Replays historical daily bars through strategies written in a small rule
language and reports risk-adjusted performance.

Supports:
  - Technical indicators (SMA, EMA, WMA, RSI, ROC, ATR, STDDEV, OBV, VWAP,
    MACD, Stochastic, Bollinger Bands, Pivot Points)
  - Rule text such as ``AND(CROSS_ABOVE(SMA(20), SMA(50)), BELOW(RSI(14), 70))``
  - Long and short positions with slippage, commission, stop-loss and
    take-profit
  - Multi-instrument runs on a unified trading calendar
  - Performance metrics (Sharpe, Sortino, drawdown, win rate, etc.)
  - CSV and Yahoo Finance bar sources

Quick start::

    from backtester import Engine, Strategy, load_bars_csv, parse_rule, generate_report

    bars = load_bars_csv("BHP_ASX.csv", code="BHP", exchange="ASX")
    strategy = Strategy(
        name="RSI dip",
        entry_long=parse_rule("CROSS_BELOW(RSI(14), 30)"),
        exit_long=parse_rule("CROSS_ABOVE(RSI(14), 70)"),
    )
    result = Engine(initial_capital=100_000).run_bars(bars, strategy)
    print(generate_report(result))
"""

from backtester.errors import (
    BacktestError,
    RuleParseError,
    ConfigError,
    DataError,
    AllInstrumentsFailedError,
)
from backtester.models import (
    PriceBar,
    Position,
    ClosedTrade,
    EquityPoint,
    EntryResult,
    RejectReason,
    Strategy,
    BacktestConfig,
    BacktestResult,
)
from backtester.indicators import IndicatorSpec, IndicatorSeries, compute_indicator
from backtester.parser import parse_rule
from backtester.evaluator import evaluate
from backtester.portfolio import Portfolio
from backtester.broker import SimulatedBroker
from backtester.data import BarSource, CsvBarSource, load_bars_csv, bars_from_dicts
from backtester.universe import validate_universe, MIN_BARS
from backtester.engine import Engine, InstrumentData, run_universe
from backtester.metrics import compute_metrics, PerformanceMetrics
from backtester.report import generate_report, merge_results

__all__ = [
    "BacktestError",
    "RuleParseError",
    "ConfigError",
    "DataError",
    "AllInstrumentsFailedError",
    "PriceBar",
    "Position",
    "ClosedTrade",
    "EquityPoint",
    "EntryResult",
    "RejectReason",
    "Strategy",
    "BacktestConfig",
    "BacktestResult",
    "IndicatorSpec",
    "IndicatorSeries",
    "compute_indicator",
    "parse_rule",
    "evaluate",
    "Portfolio",
    "SimulatedBroker",
    "BarSource",
    "CsvBarSource",
    "load_bars_csv",
    "bars_from_dicts",
    "validate_universe",
    "MIN_BARS",
    "Engine",
    "InstrumentData",
    "run_universe",
    "compute_metrics",
    "PerformanceMetrics",
    "generate_report",
    "merge_results",
]
