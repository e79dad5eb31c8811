"""
Rule Backtester -- Data models.

Immutable or semi-mutable dataclasses shared by the indicator engine,
execution simulator, backtest loop and metrics.  Rule trees live in
:mod:`backtester.rules`; the portfolio itself lives in
:mod:`backtester.portfolio`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from backtester.portfolio import Portfolio
    from backtester.rules import Rule


# ---------------------------------------------------------------------------
# Market data
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PriceBar:
    """One trading day of OHLCV data for one instrument.

    Attributes:
        code: Instrument code (e.g. ``"BHP"``).
        exchange: Exchange identifier (e.g. ``"ASX"``).
        date: Trading date.
        open: Opening price.
        high: High price.
        low: Low price.
        close: Closing price.
        volume: Traded volume.
    """
    code: str
    exchange: str
    date: date
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    def typical_price(self) -> float:
        """Return ``(high + low + close) / 3``."""
        return (self.high + self.low + self.close) / 3.0

    def true_range(self, prev_close: Optional[float]) -> float:
        """True range against the previous close (plain range when there is none)."""
        hl = self.high - self.low
        if prev_close is None:
            return hl
        return max(hl, abs(self.high - prev_close), abs(self.low - prev_close))


# ---------------------------------------------------------------------------
# Positions & trades
# ---------------------------------------------------------------------------

@dataclass
class Position:
    """An open position held by the portfolio.

    Attributes:
        code: Instrument code.
        exchange: Exchange identifier.
        quantity: Signed share count (positive = long, negative = short).
        entry_price: Execution price at entry (after slippage).
        entry_date: Date the position was opened.
        stop_loss: Stop-loss trigger price (0 = disabled).
        take_profit: Take-profit trigger price (0 = disabled).
        entry_commission: Commission paid on entry, charged against P&L at exit.
    """
    code: str
    exchange: str
    quantity: int
    entry_price: float
    entry_date: date
    stop_loss: float = 0.0
    take_profit: float = 0.0
    entry_commission: float = 0.0

    @property
    def is_long(self) -> bool:
        return self.quantity > 0

    @property
    def is_short(self) -> bool:
        return self.quantity < 0

    def market_value(self, price: float) -> float:
        """Signed notional value at *price*."""
        return self.quantity * price

    def unrealized_pnl(self, price: float) -> float:
        """Gross P&L if the position were closed at *price*."""
        return self.quantity * (price - self.entry_price)

    def should_stop_loss(self, price: float) -> bool:
        if self.stop_loss <= 0:
            return False
        if self.is_long:
            return price <= self.stop_loss
        return price >= self.stop_loss

    def should_take_profit(self, price: float) -> bool:
        if self.take_profit <= 0:
            return False
        if self.is_long:
            return price >= self.take_profit
        return price <= self.take_profit


@dataclass(frozen=True)
class ClosedTrade:
    """A completed round trip, written once when a position is closed.

    ``pnl`` is net of both entry and exit commissions.
    """
    code: str
    exchange: str
    quantity: int
    entry_price: float
    exit_price: float
    entry_date: date
    exit_date: date
    pnl: float

    @property
    def is_long(self) -> bool:
        return self.quantity > 0

    @property
    def holding_days(self) -> int:
        return (self.exit_date - self.entry_date).days


@dataclass(frozen=True)
class EquityPoint:
    """Mark-to-market total equity at the close of one calendar date."""
    date: date
    equity: float


class RejectReason(Enum):
    """Why the execution simulator declined an entry."""
    ZERO_QUANTITY = "zero_quantity"
    INSUFFICIENT_CASH = "insufficient_cash"
    SHORTING_DISABLED = "shorting_disabled"
    ALREADY_OPEN = "already_open"


@dataclass(frozen=True)
class EntryResult:
    """Outcome of an entry attempt.

    Rejection is a normal outcome and never raises.
    """
    accepted: bool
    position: Optional[Position] = None
    reason: Optional[RejectReason] = None
    cost: float = 0.0
    commission: float = 0.0


# ---------------------------------------------------------------------------
# Strategy & configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Strategy:
    """A rule-based trading strategy.

    Attributes:
        name: Display name.
        description: Free-form description.
        entry_long: Rule that opens a long position.
        exit_long: Rule that closes a long position.
        entry_short: Optional rule that opens a short position.
        exit_short: Optional rule that closes a short position.
        position_size: Fraction of available cash committed per entry (0, 1].
        stop_loss_pct: Stop-loss distance in percent of entry price (0 = off).
        take_profit_pct: Take-profit distance in percent of entry price (0 = off).
        max_positions: Maximum concurrent open positions.
    """
    name: str
    entry_long: "Rule"
    exit_long: "Rule"
    description: str = ""
    entry_short: Optional["Rule"] = None
    exit_short: Optional["Rule"] = None
    position_size: float = 0.25
    stop_loss_pct: float = 0.0
    take_profit_pct: float = 0.0
    max_positions: int = 1


@dataclass(frozen=True)
class ExecutionConfig:
    """Fill-time costs and permissions used by the execution simulator.

    Attributes:
        commission_flat: Flat commission charged per fill.
        commission_pct: Commission as a percentage of fill value.
        slippage_pct: Adverse price movement applied at fill, in percent.
        allow_shorting: Whether short entries are permitted.
    """
    commission_flat: float = 0.0
    commission_pct: float = 0.0
    slippage_pct: float = 0.0
    allow_shorting: bool = False


@dataclass
class BacktestConfig:
    """Settings for a backtest run.

    Attributes:
        start_date: First date requested from the bar source.
        end_date: Last date requested from the bar source.
        initial_capital: Starting cash balance.
        commission_per_trade: Flat commission charged per fill.
        commission_pct: Percentage commission charged per fill.
        slippage_pct: Slippage percentage, applied adversely.
        allow_shorting: Whether ``entry_short`` rules may open positions.
        risk_free_rate: Annual risk-free rate used by Sharpe/Sortino.
    """
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    initial_capital: float = 100_000.0
    commission_per_trade: float = 0.0
    commission_pct: float = 0.0
    slippage_pct: float = 0.0
    allow_shorting: bool = False
    risk_free_rate: float = 0.05

    @property
    def execution(self) -> ExecutionConfig:
        return ExecutionConfig(
            commission_flat=self.commission_per_trade,
            commission_pct=self.commission_pct,
            slippage_pct=self.slippage_pct,
            allow_shorting=self.allow_shorting,
        )


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class BacktestResult:
    """Output of a completed backtest run.

    Wraps the final portfolio together with the strategy and configuration
    that produced it.  A run over more than one instrument code is a
    multi-instrument run and gets a per-instrument breakdown in reports.
    """
    strategy: Strategy
    config: BacktestConfig
    portfolio: "Portfolio"
    codes: List[str] = field(default_factory=list)
    exchange: str = ""
    skipped: List = field(default_factory=list)

    @property
    def trades(self) -> List[ClosedTrade]:
        return self.portfolio.closed_trades

    @property
    def equity_curve(self) -> List[EquityPoint]:
        return self.portfolio.equity_curve

    @property
    def open_positions(self) -> List[Position]:
        return list(self.portfolio.positions.values())

    @property
    def is_multi_instrument(self) -> bool:
        return len(self.codes) > 1

    @property
    def start_date(self) -> Optional[date]:
        curve = self.portfolio.equity_curve
        return curve[0].date if curve else None

    @property
    def end_date(self) -> Optional[date]:
        curve = self.portfolio.equity_curve
        return curve[-1].date if curve else None
