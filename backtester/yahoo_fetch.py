"""
Rule Backtester -- Yahoo Finance daily bar source.

Downloads daily OHLCV bars from Yahoo Finance's chart API using the
cookie/crumb authentication flow, and exposes them through the
:class:`~backtester.data.BarSource` interface.

Instrument codes are mapped to Yahoo tickers by exchange suffix, e.g.
``BHP`` on ``ASX`` becomes ``BHP.AX``.

Usage::

    from backtester.yahoo_fetch import YahooBarSource, fetch_bars

    bars = fetch_bars("BHP.AX", start="2024-01-01", end="2024-06-30")
    source = YahooBarSource()
    bars = source.fetch("BHP", "ASX", date(2024, 1, 1), date(2024, 6, 30))
"""

from __future__ import annotations

import time
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Mapping, Optional, Union

import requests

from backtester.data import BarSource
from backtester.errors import BarSourceError, NoDataError
from backtester.models import PriceBar

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)

VALID_INTERVALS = {"1d", "5d", "1wk", "1mo", "3mo"}

EXCHANGE_SUFFIXES: Dict[str, str] = {
    "ASX": ".AX",
    "US": "",
    "NYSE": "",
    "NASDAQ": "",
    "LSE": ".L",
    "TSX": ".TO",
}


class YahooFetchError(BarSourceError):
    """Raised when historical data cannot be fetched."""


class _ChartClient:
    """Lightweight Yahoo Finance chart API client with cookie/crumb auth."""

    def __init__(self, retry_count: int = 3, backoff_base: int = 2):
        self._session = requests.Session()
        self._session.headers.update({"User-Agent": USER_AGENT})
        self._crumb: Optional[str] = None
        self._retry_count = retry_count
        self._backoff_base = backoff_base

    def _refresh_credentials(self) -> None:
        """Fetch a fresh cookie + crumb pair."""
        self._session.cookies.clear()
        self._session.get("https://fc.yahoo.com", allow_redirects=True, timeout=15)

        for url in [
            "https://query1.finance.yahoo.com/v1/test/getcrumb",
            "https://query2.finance.yahoo.com/v1/test/getcrumb",
        ]:
            r = self._session.get(url, allow_redirects=True, timeout=15)
            txt = (r.text or "").strip()
            if r.status_code == 200 and txt and "Too Many" not in txt and "Invalid" not in txt:
                self._crumb = txt
                return

        raise YahooFetchError("Could not obtain Yahoo crumb for chart API.")

    def get_chart(self, ticker: str, params: dict) -> dict:
        """Fetch chart data with retries, crumb refresh, and backoff."""
        if not self._crumb:
            self._refresh_credentials()

        params = dict(params)
        params["crumb"] = self._crumb

        url = f"https://query1.finance.yahoo.com/v8/finance/chart/{ticker}"

        last_status = None
        for attempt in range(self._retry_count):
            try:
                r = self._session.get(url, params=params, timeout=20)
            except requests.RequestException as e:
                raise YahooFetchError(f"Yahoo chart request for {ticker} failed: {e}") from e
            last_status = r.status_code

            if r.status_code == 401:
                self._refresh_credentials()
                params["crumb"] = self._crumb
                continue

            if r.status_code == 404:
                return {"chart": {"result": None, "error": {"code": "Not Found"}}}

            if r.status_code in (429, 500, 502, 503, 504):
                wait = self._backoff_base ** attempt
                logger.warning(
                    "Yahoo chart API %d, backing off %ds (attempt %d)",
                    r.status_code, wait, attempt,
                )
                time.sleep(wait)
                continue

            try:
                r.raise_for_status()
                return r.json()
            except (requests.RequestException, ValueError) as e:
                raise YahooFetchError(f"Yahoo chart request for {ticker} failed: {e}") from e

        raise YahooFetchError(
            f"Yahoo chart request failed after {self._retry_count} retries "
            f"(last status={last_status})"
        )


# Module-level client, reused across calls
_client: Optional[_ChartClient] = None


def _get_client() -> _ChartClient:
    global _client
    if _client is None:
        _client = _ChartClient()
    return _client


def _parse_date(value: Union[str, date, datetime]) -> date:
    """Convert a date string or object to a :class:`date`."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    for fmt in ("%Y-%m-%d", "%m/%d/%Y", "%Y-%m-%dT%H:%M:%S"):
        try:
            return datetime.strptime(value.strip(), fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Cannot parse date: '{value}'")


def _epoch(day: date) -> int:
    return int(datetime(day.year, day.month, day.day, tzinfo=timezone.utc).timestamp())


def yahoo_ticker(code: str, exchange: str, suffixes: Mapping[str, str] = EXCHANGE_SUFFIXES) -> str:
    """Map an instrument code and exchange to a Yahoo ticker.

    Raises:
        BarSourceError: If *exchange* has no known suffix.
    """
    key = exchange.strip().upper()
    if key not in suffixes:
        raise BarSourceError(f"unsupported exchange for Yahoo: {exchange}")
    return f"{code.strip().upper()}{suffixes[key]}"


def fetch_bars(
    ticker: str,
    start: Union[str, date, datetime],
    end: Union[str, date, datetime, None] = None,
    interval: str = "1d",
    code: str = "",
    exchange: str = "",
) -> List[PriceBar]:
    """Fetch historical OHLCV bars from Yahoo Finance.

    Args:
        ticker: Yahoo symbol (e.g. ``"BHP.AX"``).
        start: Start date (inclusive).
        end: End date (inclusive).  Defaults to today.
        interval: Bar interval.  One of ``1d``, ``5d``, ``1wk``, ``1mo``, ``3mo``.
        code: Code stamped on each bar (defaults to *ticker*).
        exchange: Exchange stamped on each bar.

    Returns:
        List of :class:`PriceBar` sorted by date, one per date.

    Raises:
        ValueError: If *interval* is not valid or dates are malformed.
        NoDataError: If Yahoo returns no bars for the range.
        YahooFetchError: If the data cannot be fetched from Yahoo.
    """
    ticker = ticker.strip().upper()
    if not ticker:
        raise ValueError("Ticker must not be empty.")

    if interval not in VALID_INTERVALS:
        raise ValueError(
            f"Invalid interval '{interval}'. Must be one of: {sorted(VALID_INTERVALS)}"
        )

    start_d = _parse_date(start)
    end_d = _parse_date(end) if end else date.today()

    if start_d > end_d:
        raise ValueError(f"Start date ({start_d}) must be before end date ({end_d}).")

    code = code or ticker
    client = _get_client()
    data = client.get_chart(ticker, {
        "period1": _epoch(start_d),
        "period2": _epoch(end_d + timedelta(days=1)),
        "interval": interval,
        "includePrePost": "false",
        "events": "",
    })

    chart = data.get("chart", {})
    error = chart.get("error")
    if error:
        if isinstance(error, dict) and error.get("code") == "Not Found":
            raise NoDataError(code, exchange)
        raise YahooFetchError(f"Yahoo chart error: {error}")

    results = chart.get("result")
    if not results:
        raise NoDataError(code, exchange)

    result = results[0]
    gmtoffset = int((result.get("meta") or {}).get("gmtoffset") or 0)
    timestamps = result.get("timestamp") or []
    indicators = result.get("indicators", {})
    quotes = (indicators.get("quote") or [{}])[0]

    opens = quotes.get("open") or []
    highs = quotes.get("high") or []
    lows = quotes.get("low") or []
    closes = quotes.get("close") or []
    volumes = quotes.get("volume") or []

    by_date: Dict[date, PriceBar] = {}
    for i, ts in enumerate(timestamps):
        # Skip bars with None values (market holidays / gaps)
        o = opens[i] if i < len(opens) else None
        h = highs[i] if i < len(highs) else None
        lo = lows[i] if i < len(lows) else None
        c = closes[i] if i < len(closes) else None
        v = volumes[i] if i < len(volumes) else None

        if any(x is None for x in (o, h, lo, c)):
            continue

        # Exchange-local trading date
        day = datetime.fromtimestamp(ts + gmtoffset, tz=timezone.utc).date()
        if not start_d <= day <= end_d:
            continue
        by_date[day] = PriceBar(
            code=code,
            exchange=exchange,
            date=day,
            open=float(o),
            high=float(h),
            low=float(lo),
            close=float(c),
            volume=float(v or 0),
        )

    if not by_date:
        raise NoDataError(code, exchange)

    bars = [by_date[d] for d in sorted(by_date)]
    logger.info(
        "Fetched %d bars for %s (%s to %s, interval=%s)",
        len(bars), ticker, start_d, end_d, interval,
    )
    return bars


class YahooBarSource(BarSource):
    """:class:`BarSource` backed by the Yahoo Finance chart API.

    Args:
        suffixes: Exchange to ticker-suffix map.  Defaults to
            :data:`EXCHANGE_SUFFIXES`.
    """

    def __init__(self, suffixes: Optional[Mapping[str, str]] = None) -> None:
        self.suffixes = dict(EXCHANGE_SUFFIXES if suffixes is None else suffixes)

    def fetch(self, code: str, exchange: str, start: date, end: date) -> List[PriceBar]:
        ticker = yahoo_ticker(code, exchange, self.suffixes)
        try:
            return fetch_bars(ticker, start, end, code=code, exchange=exchange)
        except ValueError as e:
            raise BarSourceError(str(e)) from e

    def list_symbols(self, exchange: str) -> List[str]:
        raise BarSourceError("Yahoo Finance does not support listing symbols")
