"""
Tests for instrument universe parsing and validation.
"""

import pytest
from datetime import date, timedelta

from backtester.data import BarSource, bars_from_dicts
from backtester.errors import (
    AllInstrumentsFetchFailedError,
    AllInstrumentsInsufficientError,
    BarSourceError,
    InsufficientDataError,
    NoDataError,
    UniverseError,
)
from backtester.universe import (
    MIN_BARS,
    SkipReason,
    SkippedInstrument,
    parse_codes,
    require_history,
    validate_universe,
)


START = date(2024, 1, 1)
END = date(2024, 12, 31)


def _make_bars(count, code):
    return bars_from_dicts([
        {"date": START + timedelta(days=i), "open": 10, "high": 11, "low": 9, "close": 10}
        for i in range(count)
    ], code=code, exchange="ASX")


class StubSource(BarSource):
    """Returns bar counts per code; ``None`` raises NoDataError, ``"error"`` a BarSourceError."""

    def __init__(self, counts):
        self.counts = counts
        self.requested = []

    def fetch(self, code, exchange, start, end):
        self.requested.append(code)
        count = self.counts.get(code)
        if count is None:
            raise NoDataError(code, exchange)
        if count == "error":
            raise BarSourceError("connection refused")
        return _make_bars(count, code)

    def list_symbols(self, exchange):
        return sorted(self.counts)


class TestParseCodes:
    def test_split_and_uppercase(self):
        assert parse_codes("bhp, CBA ,wes") == ["BHP", "CBA", "WES"]

    def test_single(self):
        assert parse_codes("BHP") == ["BHP"]

    def test_empty_token(self):
        with pytest.raises(UniverseError, match="empty"):
            parse_codes("BHP,,CBA")

    def test_duplicate(self):
        with pytest.raises(UniverseError, match="duplicate code: BHP"):
            parse_codes("BHP,cba,bhp")


class TestValidateUniverse:
    def test_admits_sufficient_history(self):
        source = StubSource({"BHP": MIN_BARS, "CBA": 100})
        validation = validate_universe(source, ["BHP", "CBA"], "ASX", START, END)
        assert validation.codes == ["BHP", "CBA"]
        assert validation.skipped == []
        assert len(validation.bars["CBA"]) == 100

    def test_skip_reasons(self):
        source = StubSource({"BHP": 50, "CBA": MIN_BARS - 1, "WES": "error"})
        validation = validate_universe(source, ["BHP", "CBA", "WES", "NAB"], "ASX", START, END)
        assert validation.codes == ["BHP"]
        assert [(s.code, s.reason) for s in validation.skipped] == [
            ("CBA", SkipReason.INSUFFICIENT_BARS),
            ("WES", SkipReason.FETCH_ERROR),
            ("NAB", SkipReason.NO_DATA),
        ]
        assert validation.skipped[0].bars == MIN_BARS - 1

    def test_preserves_request_order(self):
        source = StubSource({"ZZZ": 40, "AAA": 40})
        validation = validate_universe(source, ["ZZZ", "AAA"], "ASX", START, END)
        assert validation.codes == ["ZZZ", "AAA"]
        assert source.requested == ["ZZZ", "AAA"]

    def test_all_insufficient(self):
        source = StubSource({"BHP": 10, "CBA": None})
        with pytest.raises(AllInstrumentsInsufficientError) as exc:
            validate_universe(source, ["BHP", "CBA"], "ASX", START, END)
        assert len(exc.value.skipped) == 2
        assert exc.value.exit_code == 5

    def test_all_fetch_failed(self):
        source = StubSource({"BHP": "error", "CBA": "error"})
        with pytest.raises(AllInstrumentsFetchFailedError) as exc:
            validate_universe(source, ["BHP", "CBA"], "ASX", START, END)
        assert exc.value.exit_code == 3

    def test_empty_codes(self):
        with pytest.raises(UniverseError):
            validate_universe(StubSource({}), [], "ASX", START, END)

    def test_custom_minimum(self):
        validation = validate_universe(StubSource({"BHP": 5}), ["BHP"], "ASX", START, END, min_bars=5)
        assert validation.codes == ["BHP"]

    def test_skip_records_custom_minimum(self):
        source = StubSource({"BHP": 4, "CBA": 40})
        validation = validate_universe(source, ["BHP", "CBA"], "ASX", START, END, min_bars=5)
        assert validation.skipped[0].describe() == "BHP: only 4 bars (minimum 5)"


class TestRequireHistory:
    def test_enough_bars(self):
        require_history("BHP", _make_bars(MIN_BARS, "BHP"))

    def test_too_few_bars(self):
        with pytest.raises(InsufficientDataError, match=r"insufficient data for BHP: 29 bars \(minimum 30\)") as exc:
            require_history("BHP", _make_bars(29, "BHP"))
        assert exc.value.bars == 29
        assert exc.value.minimum == MIN_BARS
        assert exc.value.exit_code == 5

    def test_custom_minimum(self):
        require_history("BHP", _make_bars(3, "BHP"), min_bars=3)
        with pytest.raises(InsufficientDataError):
            require_history("BHP", [], min_bars=1)


class TestSkippedInstrument:
    def test_describe(self):
        assert "only 12 bars" in SkippedInstrument("BHP", SkipReason.INSUFFICIENT_BARS, bars=12).describe()
        assert SkippedInstrument("BHP", SkipReason.NO_DATA).describe() == "BHP: no data"
        assert "timeout" in SkippedInstrument("BHP", SkipReason.FETCH_ERROR, detail="timeout").describe()
