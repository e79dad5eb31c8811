"""
Rule Backtester -- Portfolio state.

Cash, open positions (at most one per instrument), the append-only list
of closed trades and the append-only equity curve.  A portfolio is owned
by a single backtest run; the execution simulator in
:mod:`backtester.broker` is the only thing that moves cash.
"""

from __future__ import annotations

from datetime import date
from typing import Dict, List, Mapping, Optional

from backtester.errors import InvariantViolation
from backtester.models import ClosedTrade, EquityPoint, Position


class Portfolio:
    """Cash plus open positions for one backtest run.

    Args:
        initial_capital: Starting cash balance.
    """

    def __init__(self, initial_capital: float) -> None:
        self.initial_capital = initial_capital
        self.cash: float = initial_capital
        self.positions: Dict[str, Position] = {}
        self.closed_trades: List[ClosedTrade] = []
        self.equity_curve: List[EquityPoint] = []

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def add_position(self, position: Position) -> None:
        if position.code in self.positions:
            raise InvariantViolation(f"position already open for {position.code}")
        self.positions[position.code] = position

    def get_position(self, code: str) -> Optional[Position]:
        return self.positions.get(code)

    def has_position(self, code: str) -> bool:
        return code in self.positions

    def remove_position(self, code: str) -> Position:
        try:
            return self.positions.pop(code)
        except KeyError:
            raise InvariantViolation(f"no open position for {code}") from None

    @property
    def position_count(self) -> int:
        return len(self.positions)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def record_trade(self, trade: ClosedTrade) -> None:
        self.closed_trades.append(trade)

    def record_equity(self, day: date, equity: float) -> None:
        """Append an equity point.  Dates must be strictly increasing."""
        if self.equity_curve and day <= self.equity_curve[-1].date:
            raise InvariantViolation(
                f"equity date {day} not after {self.equity_curve[-1].date}"
            )
        self.equity_curve.append(EquityPoint(day, equity))

    # ------------------------------------------------------------------
    # Valuation
    # ------------------------------------------------------------------

    def total_equity(self, price_map: Mapping[str, float]) -> float:
        """Cash plus the value of every position priced in *price_map*.

        Longs are worth ``quantity * price``.  A short is worth its escrowed
        entry notional adjusted by the price move, ``|q| * entry + q * (price - entry)``.
        Positions without a price on this date contribute nothing.
        """
        total = self.cash
        for code, pos in self.positions.items():
            price = price_map.get(code)
            if price is None:
                continue
            total += abs(pos.quantity) * pos.entry_price + pos.unrealized_pnl(price)
        return total

    @property
    def final_equity(self) -> float:
        """Last recorded equity, or initial capital before any record."""
        if not self.equity_curve:
            return self.initial_capital
        return self.equity_curve[-1].equity
