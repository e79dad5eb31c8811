"""
Rule Backtester -- Execution simulator.

Stateless fill functions that transform a :class:`Portfolio` given a
fill request.  :class:`SimulatedBroker` binds them to one
:class:`ExecutionConfig` for convenience.

Fill model
----------

  - **Commission**: ``flat + value * pct / 100`` on every fill.
  - **Slippage** (``s = slippage_pct / 100``) always moves the fill
    against the trader:

      =============  =====================
      long entry     ``price * (1 + s)``
      short entry    ``price * (1 - s)``
      long exit      ``price * (1 - s)``
      short exit     ``price * (1 + s)``
      =============  =====================

  - **Sizing**: ``quantity = floor(cash * position_size / fill_price)``.
    Entries are rejected, never partially filled, when the quantity is
    zero or cost plus commission exceeds cash.
  - **Shorts**: entry moves ``cost + commission`` out of cash into escrow;
    exit returns the escrowed notional plus the short profit (entry
    notional minus buy-to-cover cost) less the exit commission.
  - **Stop-loss / take-profit**: trigger prices are fixed at entry from
    the fill price.  :func:`check_triggers` collects every breached
    position first and only then exits them.
"""

from __future__ import annotations

import logging
import math
from datetime import date
from typing import List, Mapping, Optional

from backtester.models import (
    ClosedTrade,
    EntryResult,
    ExecutionConfig,
    Position,
    RejectReason,
    Strategy,
)
from backtester.portfolio import Portfolio

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Costs
# ---------------------------------------------------------------------------

def calculate_commission(trade_value: float, config: ExecutionConfig) -> float:
    """Flat commission plus a percentage of *trade_value*."""
    return config.commission_flat + trade_value * config.commission_pct / 100.0


def slippage_long_entry(price: float, slippage_pct: float) -> float:
    return price * (1.0 + slippage_pct / 100.0)


def slippage_short_entry(price: float, slippage_pct: float) -> float:
    return price * (1.0 - slippage_pct / 100.0)


def slippage_long_exit(price: float, slippage_pct: float) -> float:
    return price * (1.0 - slippage_pct / 100.0)


def slippage_short_exit(price: float, slippage_pct: float) -> float:
    return price * (1.0 + slippage_pct / 100.0)


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------

def _enter(
    portfolio: Portfolio,
    code: str,
    exchange: str,
    exec_price: float,
    day: date,
    strategy: Strategy,
    config: ExecutionConfig,
    short: bool,
) -> EntryResult:
    if portfolio.has_position(code):
        return EntryResult(False, reason=RejectReason.ALREADY_OPEN)

    # A price at or below zero cannot size a position.
    if not exec_price > 0:
        return EntryResult(False, reason=RejectReason.ZERO_QUANTITY)

    quantity = math.floor(portfolio.cash * strategy.position_size / exec_price)
    if quantity <= 0:
        return EntryResult(False, reason=RejectReason.ZERO_QUANTITY)

    cost = quantity * exec_price
    commission = calculate_commission(cost, config)
    if cost + commission > portfolio.cash:
        logger.warning(
            "Entry rejected for %s: cost %.2f + commission %.2f exceeds cash %.2f",
            code, cost, commission, portfolio.cash,
        )
        return EntryResult(False, reason=RejectReason.INSUFFICIENT_CASH)

    portfolio.cash -= cost + commission

    # Long: stop below, target above.  Short: the reverse.
    sign = -1.0 if short else 1.0
    stop_loss = 0.0
    take_profit = 0.0
    if strategy.stop_loss_pct > 0:
        stop_loss = exec_price * (1.0 - sign * strategy.stop_loss_pct / 100.0)
    if strategy.take_profit_pct > 0:
        take_profit = exec_price * (1.0 + sign * strategy.take_profit_pct / 100.0)

    position = Position(
        code=code,
        exchange=exchange,
        quantity=-quantity if short else quantity,
        entry_price=exec_price,
        entry_date=day,
        stop_loss=stop_loss,
        take_profit=take_profit,
        entry_commission=commission,
    )
    portfolio.add_position(position)

    logger.debug(
        "Entry filled: %s %s %d @ %.4f on %s (cash=%.2f)",
        "short" if short else "long", code, quantity, exec_price, day, portfolio.cash,
    )
    return EntryResult(True, position=position, cost=cost, commission=commission)


def enter_long(
    portfolio: Portfolio,
    code: str,
    exchange: str,
    price: float,
    day: date,
    strategy: Strategy,
    config: ExecutionConfig,
) -> EntryResult:
    """Open a long position at *price* (before slippage).

    Returns:
        An :class:`EntryResult`; rejected entries leave *portfolio* untouched.
    """
    exec_price = slippage_long_entry(price, config.slippage_pct)
    return _enter(portfolio, code, exchange, exec_price, day, strategy, config, short=False)


def enter_short(
    portfolio: Portfolio,
    code: str,
    exchange: str,
    price: float,
    day: date,
    strategy: Strategy,
    config: ExecutionConfig,
) -> EntryResult:
    """Open a short position at *price* (before slippage).

    Rejected with :attr:`RejectReason.SHORTING_DISABLED` unless the
    config allows shorting.
    """
    if not config.allow_shorting:
        return EntryResult(False, reason=RejectReason.SHORTING_DISABLED)
    exec_price = slippage_short_entry(price, config.slippage_pct)
    return _enter(portfolio, code, exchange, exec_price, day, strategy, config, short=True)


# ---------------------------------------------------------------------------
# Exits
# ---------------------------------------------------------------------------

def exit_position(
    portfolio: Portfolio,
    code: str,
    price: float,
    day: date,
    config: ExecutionConfig,
) -> Optional[ClosedTrade]:
    """Close the open position in *code* at *price* (before slippage).

    Returns:
        The recorded :class:`ClosedTrade`, or ``None`` if nothing was open.
    """
    if not portfolio.has_position(code):
        return None
    position = portfolio.remove_position(code)

    if position.is_long:
        exit_price = slippage_long_exit(price, config.slippage_pct)
    else:
        exit_price = slippage_short_exit(price, config.slippage_pct)

    qty_abs = abs(position.quantity)
    exit_value = qty_abs * exit_price
    exit_commission = calculate_commission(exit_value, config)
    pnl = (position.quantity * (exit_price - position.entry_price)
           - position.entry_commission - exit_commission)

    if position.is_long:
        portfolio.cash += exit_value - exit_commission
    else:
        entry_notional = qty_abs * position.entry_price
        portfolio.cash += entry_notional + (entry_notional - exit_value) - exit_commission

    trade = ClosedTrade(
        code=position.code,
        exchange=position.exchange,
        quantity=position.quantity,
        entry_price=position.entry_price,
        exit_price=exit_price,
        entry_date=position.entry_date,
        exit_date=day,
        pnl=pnl,
    )
    portfolio.record_trade(trade)

    logger.debug(
        "Exit filled: %s %d @ %.4f on %s (pnl=%.2f, cash=%.2f)",
        code, position.quantity, exit_price, day, pnl, portfolio.cash,
    )
    return trade


def check_triggers(
    portfolio: Portfolio,
    price_map: Mapping[str, float],
    day: date,
    config: ExecutionConfig,
) -> int:
    """Exit every position whose stop-loss or take-profit was breached.

    Positions without a price in *price_map* are not checked.

    Returns:
        Number of positions closed.
    """
    triggered: List[str] = []
    for code, position in portfolio.positions.items():
        price = price_map.get(code)
        if price is None:
            continue
        if position.should_stop_loss(price) or position.should_take_profit(price):
            triggered.append(code)

    for code in triggered:
        exit_position(portfolio, code, price_map[code], day, config)
    return len(triggered)


class SimulatedBroker:
    """Execution functions bound to one :class:`ExecutionConfig`.

    Holds no portfolio state of its own; every call operates on the
    portfolio it is given.
    """

    def __init__(self, config: ExecutionConfig) -> None:
        self.config = config

    def commission(self, trade_value: float) -> float:
        return calculate_commission(trade_value, self.config)

    def enter_long(
        self, portfolio: Portfolio, code: str, exchange: str,
        price: float, day: date, strategy: Strategy,
    ) -> EntryResult:
        return enter_long(portfolio, code, exchange, price, day, strategy, self.config)

    def enter_short(
        self, portfolio: Portfolio, code: str, exchange: str,
        price: float, day: date, strategy: Strategy,
    ) -> EntryResult:
        return enter_short(portfolio, code, exchange, price, day, strategy, self.config)

    def exit_position(
        self, portfolio: Portfolio, code: str, price: float, day: date,
    ) -> Optional[ClosedTrade]:
        return exit_position(portfolio, code, price, day, self.config)

    def check_triggers(
        self, portfolio: Portfolio, price_map: Mapping[str, float], day: date,
    ) -> int:
        return check_triggers(portfolio, price_map, day, self.config)
