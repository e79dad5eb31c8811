"""
Rule Backtester -- Command-line front end.

Usage::

    backtester backtest --config run.ini --data-dir data/
    backtester backtest --config run.ini --yahoo --code BHP,CBA --exchange ASX
    backtester validate --strategy strategy.ini
    backtester list-symbols --exchange ASX --data-dir data/

Errors are printed as ``error: ...`` on stderr and the process exits with
the error's ``exit_code``.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from backtester.config import (
    ConfigSource,
    IniConfigSource,
    load_backtest_config,
    load_exchange,
    load_strategy,
    resolve_codes,
)
from backtester.data import BarSource, CsvBarSource
from backtester.engine import run_universe
from backtester.errors import BacktestError, ConfigMissingError, RuleParseError
from backtester.metrics import compute_metrics
from backtester.models import Strategy
from backtester.report import TextReportSink, generate_report
from backtester.rules import strategy_indicators
from backtester.universe import validate_universe
from backtester.yahoo_fetch import YahooBarSource


def _setup_cli_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_strategy(source: ConfigSource) -> Strategy:
    """:func:`load_strategy`, echoing the offending rule text on a parse error."""
    try:
        return load_strategy(source)
    except RuleParseError as e:
        text = source.get_string("strategy", e.key) if e.key else None
        if text is not None:
            print(e.display_with_context(text), file=sys.stderr)
        raise


def _bar_source(args: argparse.Namespace, config: ConfigSource) -> BarSource:
    if args.yahoo:
        return YahooBarSource()
    data_dir = args.data_dir or config.get_string("data", "dir")
    if not data_dir:
        raise ConfigMissingError("data", "dir")
    return CsvBarSource(data_dir)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_backtest(args: argparse.Namespace) -> int:
    config_source = IniConfigSource.from_file(args.config)
    strategy_source = IniConfigSource.from_file(args.strategy) if args.strategy else config_source

    config = load_backtest_config(config_source)
    strategy = _load_strategy(strategy_source)
    codes = resolve_codes(config_source, args.code)
    exchange = args.exchange.upper() if args.exchange else load_exchange(config_source)
    source = _bar_source(args, config_source)

    if args.dry_run:
        validation = validate_universe(source, codes, exchange, config.start_date, config.end_date)
        print(f"Strategy:    {strategy.name}")
        print(f"Period:      {config.start_date} to {config.end_date}")
        print(f"Instruments: {', '.join(validation.codes)} ({exchange})")
        for skip in validation.skipped:
            print(f"Skipped:     {skip.describe()}")
        print("Configuration OK")
        return 0

    result = run_universe(source, strategy, config, codes, exchange)
    metrics = compute_metrics(result)
    if args.output:
        TextReportSink().write(result, metrics, args.output)
    else:
        print(generate_report(result, metrics))
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    strategy = _load_strategy(IniConfigSource.from_file(args.strategy))
    print(f"Strategy:    {strategy.name}")
    print(f"entry_long:  {strategy.entry_long}")
    print(f"exit_long:   {strategy.exit_long}")
    if strategy.entry_short is not None:
        print(f"entry_short: {strategy.entry_short}")
    if strategy.exit_short is not None:
        print(f"exit_short:  {strategy.exit_short}")
    indicators = ", ".join(str(spec) for spec in strategy_indicators(strategy))
    print(f"Indicators:  {indicators or '(none)'}")
    print("Strategy OK")
    return 0


def cmd_list_symbols(args: argparse.Namespace) -> int:
    for code in CsvBarSource(args.data_dir).list_symbols(args.exchange.upper()):
        print(code)
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="backtester",
        description="Backtest rule-based trading strategies on daily bars.",
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = ap.add_subparsers(dest="command", required=True)

    bt = sub.add_parser("backtest", parents=[common], help="Run a backtest")
    bt.add_argument("--config", required=True, help="INI file with [backtest] settings")
    bt.add_argument("--strategy", help="INI file with [strategy] (defaults to --config)")
    src = bt.add_mutually_exclusive_group()
    src.add_argument("--data-dir", help="Directory of {CODE}_{EXCHANGE}.csv files")
    src.add_argument("--yahoo", action="store_true", help="Fetch bars from Yahoo Finance")
    bt.add_argument("--code", help="Comma-separated codes, overriding the config")
    bt.add_argument("--exchange", help="Exchange, overriding the config")
    bt.add_argument("--output", "-o", help="Write the report to this file")
    bt.add_argument("--dry-run", action="store_true", help="Validate inputs without running")
    bt.set_defaults(func=cmd_backtest)

    val = sub.add_parser("validate", parents=[common], help="Parse and check a strategy file")
    val.add_argument("--strategy", required=True, help="INI file with [strategy]")
    val.set_defaults(func=cmd_validate)

    ls = sub.add_parser("list-symbols", parents=[common], help="List codes available in a data directory")
    ls.add_argument("--exchange", required=True)
    ls.add_argument("--data-dir", required=True)
    ls.set_defaults(func=cmd_list_symbols)

    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    _setup_cli_logging(args.verbose)
    try:
        return args.func(args)
    except BacktestError as e:
        print(f"error: {e}", file=sys.stderr)
        return e.exit_code


if __name__ == "__main__":
    sys.exit(main())
