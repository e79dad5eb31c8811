"""
Rule Backtester -- Instrument universe validation.

Parses comma-separated code lists and admits an instrument to a run only
when its bar source returns at least :data:`MIN_BARS` bars.  Instruments
that fail are reported as skipped with a reason; the run aborts only
when nothing survives.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Dict, List, Optional, Sequence

from backtester.data import BarSource
from backtester.errors import (
    AllInstrumentsFetchFailedError,
    AllInstrumentsInsufficientError,
    DataError,
    InsufficientDataError,
    NoDataError,
    UniverseError,
)
from backtester.models import PriceBar

logger = logging.getLogger(__name__)

MIN_BARS = 30


class SkipReason(Enum):
    """Why an instrument was left out of a run."""
    NO_DATA = "no_data"
    INSUFFICIENT_BARS = "insufficient_bars"
    FETCH_ERROR = "fetch_error"


@dataclass(frozen=True)
class SkippedInstrument:
    code: str
    reason: SkipReason
    bars: int = 0
    detail: str = ""
    minimum: int = MIN_BARS

    def describe(self) -> str:
        if self.reason == SkipReason.INSUFFICIENT_BARS:
            return f"{self.code}: only {self.bars} bars (minimum {self.minimum})"
        if self.reason == SkipReason.NO_DATA:
            return f"{self.code}: no data"
        return f"{self.code}: fetch error ({self.detail})"


@dataclass
class UniverseValidation:
    """Outcome of :func:`validate_universe`.

    Attributes:
        exchange: Exchange the codes were looked up on.
        bars: Fetched bars for each admitted code, in request order.
        skipped: Codes left out, in request order.
    """
    exchange: str
    bars: Dict[str, List[PriceBar]] = field(default_factory=dict)
    skipped: List[SkippedInstrument] = field(default_factory=list)

    @property
    def codes(self) -> List[str]:
        return list(self.bars)


def parse_codes(text: str) -> List[str]:
    """Split a comma-separated code list, upper-casing each code.

    Raises:
        UniverseError: On an empty token or a duplicate code.
    """
    codes: List[str] = []
    for token in text.split(","):
        code = token.strip().upper()
        if not code:
            raise UniverseError("empty token in code list")
        if code in codes:
            raise UniverseError(f"duplicate code: {code}")
        codes.append(code)
    return codes


def require_history(code: str, bars: Sequence[PriceBar], min_bars: int = MIN_BARS) -> None:
    """Raise :class:`InsufficientDataError` unless *bars* holds *min_bars* or more."""
    if len(bars) < min_bars:
        raise InsufficientDataError(code, len(bars), min_bars)


def validate_universe(
    source: BarSource,
    codes: Sequence[str],
    exchange: str,
    start: Optional[date],
    end: Optional[date],
    min_bars: int = MIN_BARS,
) -> UniverseValidation:
    """Fetch every code and keep those with at least *min_bars* bars.

    Args:
        source: Bar source to fetch from.
        codes: Instrument codes, in evaluation order.
        exchange: Exchange identifier.
        start: First date to fetch.
        end: Last date to fetch.
        min_bars: Minimum bar count for admission.

    Returns:
        A :class:`UniverseValidation` holding the admitted bars.

    Raises:
        UniverseError: If *codes* is empty.
        AllInstrumentsFetchFailedError: If every code failed at the source.
        AllInstrumentsInsufficientError: If every code was skipped and at
            least one lacked data rather than erroring.
    """
    if not codes:
        raise UniverseError("no instrument codes given")
    if start is None or end is None:
        raise UniverseError("start and end dates are required")

    result = UniverseValidation(exchange=exchange)
    for code in codes:
        try:
            bars = source.fetch(code, exchange, start, end)
        except NoDataError:
            bars = []
        except DataError as e:
            logger.warning("Skipping %s.%s (%s)", code, exchange, e)
            result.skipped.append(SkippedInstrument(code, SkipReason.FETCH_ERROR, detail=str(e)))
            continue

        if not bars:
            logger.warning("Skipping %s.%s (no data found)", code, exchange)
            result.skipped.append(SkippedInstrument(code, SkipReason.NO_DATA))
            continue
        try:
            require_history(code, bars, min_bars)
        except InsufficientDataError as e:
            logger.warning("Skipping %s.%s (%s)", code, exchange, e)
            result.skipped.append(
                SkippedInstrument(code, SkipReason.INSUFFICIENT_BARS, bars=e.bars, minimum=e.minimum)
            )
            continue
        result.bars[code] = bars

    if not result.bars:
        if all(s.reason == SkipReason.FETCH_ERROR for s in result.skipped):
            raise AllInstrumentsFetchFailedError(
                f"all {len(codes)} instrument(s) on {exchange} failed to fetch",
                result.skipped,
            )
        raise AllInstrumentsInsufficientError(
            f"insufficient data: no instrument on {exchange} has {min_bars} or more bars",
            result.skipped,
        )

    if result.skipped:
        logger.info(
            "Backtesting %d of %d codes on %s",
            len(result.bars), len(codes), exchange,
        )
    return result
