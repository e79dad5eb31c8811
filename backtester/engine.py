"""
Rule Backtester -- Backtest engine.

Replays one or more instruments' daily bars through a rule-based
strategy on a unified trading calendar.

Usage::

    from backtester import Engine, InstrumentData, parse_rule, Strategy

    strategy = Strategy(
        name="Golden cross",
        entry_long=parse_rule("CROSS_ABOVE(SMA(50), SMA(200))"),
        exit_long=parse_rule("CROSS_BELOW(SMA(50), SMA(200))"),
    )
    data = InstrumentData.from_bars("BHP", "ASX", bars, strategy)
    result = Engine(initial_capital=100_000).run([data], strategy)

For every date of the calendar (the sorted union of all bar dates) the
engine:

  1. Builds the day's closing-price map from instruments with a bar that day.
  2. Exits every position whose stop-loss or take-profit was breached.
  3. Walks instruments in input order.  A held position whose exit rule
     is true is closed at the close; a flat instrument whose entry rule
     is true is opened at the close while fewer than ``max_positions``
     positions are open.
  4. Records total equity for the date.

Instruments without a bar on a date are neither evaluated nor marked.
All bars and indicator series are in memory before the loop starts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence

from backtester.broker import SimulatedBroker
from backtester.data import BarSource
from backtester.evaluator import evaluate
from backtester.indicators import IndicatorCache, IndicatorSeries, IndicatorSpec
from backtester.models import BacktestConfig, BacktestResult, PriceBar, Strategy
from backtester.portfolio import Portfolio
from backtester.rules import strategy_indicators
from backtester.universe import validate_universe

logger = logging.getLogger(__name__)


@dataclass
class InstrumentData:
    """One instrument's bars plus its precomputed indicator series.

    Attributes:
        code: Instrument code.
        exchange: Exchange identifier.
        bars: Bars sorted by date.
        indicators: Series keyed by spec, each aligned with *bars*.
        date_index: Date to bar index, built on construction.
    """
    code: str
    exchange: str
    bars: List[PriceBar]
    indicators: Dict[IndicatorSpec, IndicatorSeries] = field(default_factory=dict)
    date_index: Dict[date, int] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        self.date_index = {bar.date: i for i, bar in enumerate(self.bars)}

    @classmethod
    def from_bars(
        cls,
        code: str,
        exchange: str,
        bars: Sequence[PriceBar],
        strategy: Optional[Strategy] = None,
        specs: Iterable[IndicatorSpec] = (),
    ) -> "InstrumentData":
        """Sort *bars* and compute every indicator *strategy* and *specs* need."""
        ordered = sorted(bars, key=lambda b: b.date)
        cache = IndicatorCache(ordered)
        wanted = list(specs)
        if strategy is not None:
            wanted.extend(strategy_indicators(strategy))
        for spec in wanted:
            cache.get(spec)
        return cls(code, exchange, ordered, cache.as_dict())

    def index_of(self, day: date) -> Optional[int]:
        return self.date_index.get(day)


def build_calendar(instruments: Iterable[InstrumentData]) -> List[date]:
    """Sorted union of every distinct bar date across *instruments*."""
    dates = set()
    for inst in instruments:
        dates.update(inst.date_index)
    return sorted(dates)


class Engine:
    """Main backtesting engine.

    Args:
        initial_capital: Starting cash (default $100,000).
        commission_per_trade: Flat fee per fill.
        commission_pct: Percentage fee per fill.
        slippage_pct: Simulated slippage percentage.
        allow_shorting: Whether ``entry_short`` rules may open positions.
        risk_free_rate: Annual risk-free rate carried into the result.
        config: Provide a :class:`BacktestConfig` directly (overrides
            the individual keyword arguments above).
    """

    def __init__(
        self,
        initial_capital: float = 100_000.0,
        commission_per_trade: float = 0.0,
        commission_pct: float = 0.0,
        slippage_pct: float = 0.0,
        allow_shorting: bool = False,
        risk_free_rate: float = 0.05,
        config: Optional[BacktestConfig] = None,
    ) -> None:
        if config is not None:
            self.config = config
        else:
            self.config = BacktestConfig(
                initial_capital=initial_capital,
                commission_per_trade=commission_per_trade,
                commission_pct=commission_pct,
                slippage_pct=slippage_pct,
                allow_shorting=allow_shorting,
                risk_free_rate=risk_free_rate,
            )

    def run(
        self,
        instruments: Sequence[InstrumentData],
        strategy: Strategy,
        calendar: Optional[Sequence[date]] = None,
    ) -> BacktestResult:
        """Execute the backtest.

        Args:
            instruments: Instruments in evaluation order.  The order decides
                which instrument wins when ``max_positions`` is contended.
            strategy: Strategy to run.
            calendar: Dates to simulate.  Defaults to
                :func:`build_calendar` over *instruments*; pass a truncated
                calendar to stop a run early.

        Returns:
            A :class:`BacktestResult` wrapping the final portfolio.

        Raises:
            ValueError: If two instruments share a code.
        """
        codes = [inst.code for inst in instruments]
        if len(set(codes)) != len(codes):
            raise ValueError(f"Duplicate instrument codes: {codes}")

        if calendar is None:
            calendar = build_calendar(instruments)
        portfolio = Portfolio(self.config.initial_capital)
        broker = SimulatedBroker(self.config.execution)

        logger.info(
            "Running backtest '%s': %d instrument(s), %d dates",
            strategy.name, len(instruments), len(calendar),
        )

        for day in calendar:
            # 1. Closing prices for instruments trading today
            today: List[tuple] = []
            price_map: Dict[str, float] = {}
            for inst in instruments:
                idx = inst.index_of(day)
                if idx is None:
                    continue
                today.append((inst, idx))
                price_map[inst.code] = inst.bars[idx].close

            # 2. Stop-loss / take-profit
            broker.check_triggers(portfolio, price_map, day)

            # 3. Rule evaluation
            for inst, idx in today:
                self._process_instrument(broker, portfolio, strategy, inst, idx, day)

            # 4. Equity at the close
            portfolio.record_equity(day, portfolio.total_equity(price_map))

        logger.info(
            "Backtest '%s' finished: %d trades, %d open, final equity %.2f",
            strategy.name, len(portfolio.closed_trades),
            portfolio.position_count, portfolio.final_equity,
        )

        return BacktestResult(
            strategy=strategy,
            config=self.config,
            portfolio=portfolio,
            codes=codes,
            exchange=instruments[0].exchange if instruments else "",
        )

    def run_bars(
        self,
        bars: Sequence[PriceBar],
        strategy: Strategy,
        code: str = "",
        exchange: str = "",
    ) -> BacktestResult:
        """Single-instrument convenience wrapper around :meth:`run`."""
        if bars:
            code = code or bars[0].code
            exchange = exchange or bars[0].exchange
        data = InstrumentData.from_bars(code, exchange, bars, strategy)
        return self.run([data], strategy)

    # ------------------------------------------------------------------
    # Per-instrument step
    # ------------------------------------------------------------------

    def _process_instrument(
        self,
        broker: SimulatedBroker,
        portfolio: Portfolio,
        strategy: Strategy,
        inst: InstrumentData,
        idx: int,
        day: date,
    ) -> None:
        bars = inst.bars
        close = bars[idx].close

        position = portfolio.get_position(inst.code)
        if position is not None:
            should_exit = False
            if position.is_long:
                should_exit = evaluate(strategy.exit_long, bars, inst.indicators, idx)
            elif strategy.exit_short is not None:
                should_exit = evaluate(strategy.exit_short, bars, inst.indicators, idx)
            if should_exit:
                broker.exit_position(portfolio, inst.code, close, day)

        if portfolio.has_position(inst.code):
            return
        if portfolio.position_count >= strategy.max_positions:
            return

        if evaluate(strategy.entry_long, bars, inst.indicators, idx):
            broker.enter_long(portfolio, inst.code, inst.exchange, close, day, strategy)
        elif (self.config.allow_shorting and strategy.entry_short is not None
              and evaluate(strategy.entry_short, bars, inst.indicators, idx)):
            broker.enter_short(portfolio, inst.code, inst.exchange, close, day, strategy)


def run_universe(
    source: BarSource,
    strategy: Strategy,
    config: BacktestConfig,
    codes: Sequence[str],
    exchange: str,
) -> BacktestResult:
    """Validate a universe against a bar source and backtest the survivors.

    Instruments that fail validation are carried on
    :attr:`BacktestResult.skipped`.

    Raises:
        AllInstrumentsFailedError: If every code was skipped.
    """
    validation = validate_universe(source, codes, exchange, config.start_date, config.end_date)
    instruments = [
        InstrumentData.from_bars(code, exchange, bars, strategy)
        for code, bars in validation.bars.items()
    ]
    result = Engine(config=config).run(instruments, strategy)
    result.skipped = list(validation.skipped)
    return result
