"""
Rule Backtester -- Historical bar sources.

Defines the :class:`BarSource` interface consumed by universe validation
and the engine, plus a flat-file implementation.

Expected CSV format
-------------------

One file per instrument, named ``{CODE}_{EXCHANGE}.csv``::

    date,open,high,low,close,volume
    2024-01-02,150.00,151.25,149.80,150.50,1234567

  - ``date`` is parsed flexibly (ISO-8601 date or datetime, or US format).
  - ``volume`` defaults to 0 when the column is absent.

Two failure outcomes are kept distinct: :class:`NoDataError` (the source
has nothing for the instrument) and :class:`BarSourceError` (the source
could not be read).
"""

from __future__ import annotations

import csv
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

from backtester.errors import BarSourceError, NoDataError
from backtester.models import PriceBar

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Date parsing
# ---------------------------------------------------------------------------

_DATE_FORMATS = [
    "%Y-%m-%d",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%SZ",
    "%m/%d/%Y",
]


def parse_date(value: Union[str, date, datetime]) -> date:
    """Convert a date string or object to a :class:`date`."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    value = value.strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Cannot parse date: '{value}'")


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class BarSource(ABC):
    """Where daily bars come from."""

    @abstractmethod
    def fetch(self, code: str, exchange: str, start: date, end: date) -> List[PriceBar]:
        """Return bars for *code* between *start* and *end* inclusive, sorted by date.

        Raises:
            NoDataError: If the source has no bars for the instrument.
            BarSourceError: If the source could not be read.
        """

    @abstractmethod
    def list_symbols(self, exchange: str) -> List[str]:
        """Return every instrument code available on *exchange*, sorted."""


# ---------------------------------------------------------------------------
# CSV loading
# ---------------------------------------------------------------------------

def _row_to_bar(row: Dict[str, str], code: str, exchange: str) -> PriceBar:
    volume = row.get("volume")
    return PriceBar(
        code=code,
        exchange=exchange,
        date=parse_date(row["date"]),
        open=float(row["open"]),
        high=float(row["high"]),
        low=float(row["low"]),
        close=float(row["close"]),
        volume=float(volume) if volume not in (None, "") else 0.0,
    )


def load_bars_csv(
    path: Union[str, Path],
    code: str = "",
    exchange: str = "",
) -> List[PriceBar]:
    """Load bars from a CSV file.

    Args:
        path: Path to the CSV file.
        code: Instrument code stamped on every bar.
        exchange: Exchange stamped on every bar.

    Returns:
        A list of :class:`PriceBar` sorted by date (ascending).

    Raises:
        FileNotFoundError: If *path* does not exist.
        ValueError: On malformed rows.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Bars CSV not found: {path}")

    bars: List[PriceBar] = []
    with open(path, "r", newline="") as f:
        reader = csv.DictReader(f)
        for row_num, row in enumerate(reader, start=2):
            try:
                bars.append(_row_to_bar(row, code, exchange))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                raise ValueError(f"Error on row {row_num}: {e}") from e

    bars.sort(key=lambda b: b.date)
    return bars


def bars_from_dicts(records: List[Dict], code: str = "", exchange: str = "") -> List[PriceBar]:
    """Build :class:`PriceBar` objects from a list of dicts (useful for tests).

    Each dict should have keys ``date``, ``open``, ``high``, ``low``,
    ``close`` and optionally ``volume``, ``code`` and ``exchange``.  The
    ``date`` may be a :class:`date` or a string.
    """
    bars: List[PriceBar] = []
    for rec in records:
        bars.append(PriceBar(
            code=rec.get("code", code),
            exchange=rec.get("exchange", exchange),
            date=parse_date(rec["date"]),
            open=float(rec["open"]),
            high=float(rec["high"]),
            low=float(rec["low"]),
            close=float(rec["close"]),
            volume=float(rec.get("volume", 0)),
        ))
    bars.sort(key=lambda b: b.date)
    return bars


class CsvBarSource(BarSource):
    """Reads ``{CODE}_{EXCHANGE}.csv`` files from one directory.

    Args:
        base_path: Directory holding the CSV files.
    """

    def __init__(self, base_path: Union[str, Path]) -> None:
        self.base_path = Path(base_path)

    def csv_path(self, code: str, exchange: str) -> Path:
        return self.base_path / f"{code}_{exchange}.csv"

    def fetch(self, code: str, exchange: str, start: date, end: date) -> List[PriceBar]:
        path = self.csv_path(code, exchange)
        if not path.exists():
            raise NoDataError(code, exchange)
        try:
            bars = load_bars_csv(path, code=code, exchange=exchange)
        except (OSError, ValueError) as e:
            raise BarSourceError(f"failed to read {path}: {e}") from e

        bars = [b for b in bars if start <= b.date <= end]
        if not bars:
            raise NoDataError(code, exchange)
        logger.info("Loaded %d bars for %s.%s from %s", len(bars), code, exchange, path)
        return bars

    def list_symbols(self, exchange: str) -> List[str]:
        suffix = f"_{exchange}.csv"
        try:
            names = [p.name for p in self.base_path.iterdir() if p.is_file()]
        except OSError as e:
            raise BarSourceError(f"failed to read directory {self.base_path}: {e}") from e
        return sorted(name[:-len(suffix)] for name in names
                      if name.endswith(suffix) and len(name) > len(suffix))

    def date_range(self, code: str, exchange: str) -> Optional[tuple]:
        """``(first, last, count)`` for an instrument's file, or ``None`` if absent."""
        path = self.csv_path(code, exchange)
        if not path.exists():
            return None
        try:
            bars = load_bars_csv(path, code=code, exchange=exchange)
        except (OSError, ValueError) as e:
            raise BarSourceError(f"failed to read {path}: {e}") from e
        if not bars:
            return None
        return bars[0].date, bars[-1].date, len(bars)
