"""
Rule Backtester -- Technical indicator engine.

Computes indicator series from an ordered list of :class:`PriceBar`.
Every series has exactly one point per input bar; points inside the
warmup span are flagged invalid rather than omitted, so series can be
indexed by the same bar index as the bars themselves.

Supported indicators
--------------------

Scalar (one value per bar):

  - ``SMA(n)``    simple moving average of closes, valid from ``i = n-1``
  - ``EMA(n)``    exponential moving average seeded with ``SMA(n)``
  - ``WMA(n)``    linearly weighted moving average (O(1) update)
  - ``RSI(n)``    Wilder RSI, valid from ``i = n``
  - ``ROC(n)``    percentage rate of change, valid from ``i = n``
  - ``ATR(n)``    Wilder-smoothed true range, valid from ``i = n-1``
  - ``STDDEV(n)`` population standard deviation of closes
  - ``OBV``       on-balance volume, always valid
  - ``VWAP``      cumulative typical-price VWAP, always valid

Multi-field:

  - ``MACD(fast,slow,signal)``  line / signal / histogram
  - ``STOCHASTIC(k,d)``         %K / %D
  - ``BOLLINGER(n,mult)``       upper / middle / lower
  - ``PIVOT``                   classic floor pivots from the previous bar

Series are memoised per run with :class:`IndicatorCache`.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from backtester.models import PriceBar


# ---------------------------------------------------------------------------
# Descriptors
# ---------------------------------------------------------------------------

class IndicatorKind(Enum):
    """Indicator families understood by the engine."""
    SMA = "SMA"
    EMA = "EMA"
    WMA = "WMA"
    RSI = "RSI"
    ROC = "ROC"
    ATR = "ATR"
    STDDEV = "STDDEV"
    OBV = "OBV"
    VWAP = "VWAP"
    MACD = "MACD"
    STOCHASTIC = "STOCHASTIC"
    BOLLINGER = "BOLLINGER"
    PIVOT = "PIVOT"


class IndicatorField(Enum):
    """Named field of an indicator value.  The value is the attribute name."""
    VALUE = "value"
    LINE = "line"
    SIGNAL = "signal"
    HISTOGRAM = "histogram"
    K = "k"
    D = "d"
    UPPER = "upper"
    MIDDLE = "middle"
    LOWER = "lower"
    PIVOT = "pivot"
    R1 = "r1"
    R2 = "r2"
    R3 = "r3"
    S1 = "s1"
    S2 = "s2"
    S3 = "s3"


PERIOD_KINDS = frozenset({
    IndicatorKind.SMA,
    IndicatorKind.EMA,
    IndicatorKind.WMA,
    IndicatorKind.RSI,
    IndicatorKind.ROC,
    IndicatorKind.ATR,
    IndicatorKind.STDDEV,
})

_ARITY = {
    IndicatorKind.OBV: 0,
    IndicatorKind.VWAP: 0,
    IndicatorKind.PIVOT: 0,
    IndicatorKind.MACD: 3,
    IndicatorKind.STOCHASTIC: 2,
    IndicatorKind.BOLLINGER: 2,
}

KIND_FIELDS: Dict[IndicatorKind, Tuple[IndicatorField, ...]] = {
    IndicatorKind.MACD: (IndicatorField.LINE, IndicatorField.SIGNAL, IndicatorField.HISTOGRAM),
    IndicatorKind.STOCHASTIC: (IndicatorField.K, IndicatorField.D),
    IndicatorKind.BOLLINGER: (IndicatorField.UPPER, IndicatorField.MIDDLE, IndicatorField.LOWER),
    IndicatorKind.PIVOT: (
        IndicatorField.PIVOT,
        IndicatorField.R1, IndicatorField.R2, IndicatorField.R3,
        IndicatorField.S1, IndicatorField.S2, IndicatorField.S3,
    ),
}


@dataclass(frozen=True)
class IndicatorSpec:
    """Indicator identity plus parameters.  Hashable; used as a cache key.

    Integer parameters (periods) are stored as ``int``; the Bollinger
    band multiplier is stored as ``float``.

    Raises:
        ValueError: On wrong parameter count or a non-positive period.
    """
    kind: IndicatorKind
    params: Tuple[Union[int, float], ...] = ()

    def __post_init__(self) -> None:
        expected = _ARITY.get(self.kind, 1)
        if len(self.params) != expected:
            raise ValueError(
                f"{self.kind.value} takes {expected} parameter(s), got {len(self.params)}"
            )
        periods = self.params[:1] if self.kind == IndicatorKind.BOLLINGER else self.params
        for p in periods:
            if int(p) != p or p < 1:
                raise ValueError(f"{self.kind.value} period must be a positive integer, got {p}")
        if self.kind == IndicatorKind.BOLLINGER:
            mult = float(self.params[1])
            if not math.isfinite(mult) or mult < 0:
                raise ValueError(f"BOLLINGER multiplier must be finite and >= 0, got {mult}")
            object.__setattr__(self, "params", (int(self.params[0]), mult))
        else:
            object.__setattr__(self, "params", tuple(int(p) for p in self.params))

    # Constructors -----------------------------------------------------

    @classmethod
    def sma(cls, period: int) -> "IndicatorSpec":
        return cls(IndicatorKind.SMA, (period,))

    @classmethod
    def ema(cls, period: int) -> "IndicatorSpec":
        return cls(IndicatorKind.EMA, (period,))

    @classmethod
    def wma(cls, period: int) -> "IndicatorSpec":
        return cls(IndicatorKind.WMA, (period,))

    @classmethod
    def rsi(cls, period: int) -> "IndicatorSpec":
        return cls(IndicatorKind.RSI, (period,))

    @classmethod
    def roc(cls, period: int) -> "IndicatorSpec":
        return cls(IndicatorKind.ROC, (period,))

    @classmethod
    def atr(cls, period: int) -> "IndicatorSpec":
        return cls(IndicatorKind.ATR, (period,))

    @classmethod
    def stddev(cls, period: int) -> "IndicatorSpec":
        return cls(IndicatorKind.STDDEV, (period,))

    @classmethod
    def obv(cls) -> "IndicatorSpec":
        return cls(IndicatorKind.OBV)

    @classmethod
    def vwap(cls) -> "IndicatorSpec":
        return cls(IndicatorKind.VWAP)

    @classmethod
    def macd(cls, fast: int, slow: int, signal: int) -> "IndicatorSpec":
        return cls(IndicatorKind.MACD, (fast, slow, signal))

    @classmethod
    def stochastic(cls, k_period: int, d_period: int) -> "IndicatorSpec":
        return cls(IndicatorKind.STOCHASTIC, (k_period, d_period))

    @classmethod
    def bollinger(cls, period: int, multiplier: float) -> "IndicatorSpec":
        return cls(IndicatorKind.BOLLINGER, (period, multiplier))

    @classmethod
    def pivot(cls) -> "IndicatorSpec":
        return cls(IndicatorKind.PIVOT)

    # Introspection ----------------------------------------------------

    @property
    def fields(self) -> Tuple[IndicatorField, ...]:
        """Fields readable from this indicator's values."""
        return KIND_FIELDS.get(self.kind, (IndicatorField.VALUE,))

    def __str__(self) -> str:
        if not self.params:
            return self.kind.value
        return f"{self.kind.value}({','.join(repr(p) for p in self.params)})"


# ---------------------------------------------------------------------------
# Values & series
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MacdValue:
    line: float
    signal: float
    histogram: float


@dataclass(frozen=True)
class StochasticValue:
    k: float
    d: float


@dataclass(frozen=True)
class BollingerValue:
    upper: float
    middle: float
    lower: float


@dataclass(frozen=True)
class PivotValue:
    pivot: float
    r1: float
    r2: float
    r3: float
    s1: float
    s2: float
    s3: float


IndicatorValue = Union[float, MacdValue, StochasticValue, BollingerValue, PivotValue]


@dataclass(frozen=True)
class IndicatorPoint:
    """One indicator reading, aligned with one input bar."""
    date: date
    valid: bool
    value: IndicatorValue


@dataclass
class IndicatorSeries:
    """An indicator's full history, one point per bar."""
    spec: IndicatorSpec
    points: List[IndicatorPoint]

    def __len__(self) -> int:
        return len(self.points)

    def value_at(self, index: int, field: IndicatorField = IndicatorField.VALUE) -> float:
        """Read *field* at bar *index*.

        Returns ``nan`` when the index is out of range, the point is still
        warming up, or the field does not belong to this indicator.
        """
        if index < 0 or index >= len(self.points):
            return math.nan
        point = self.points[index]
        if not point.valid:
            return math.nan
        value = point.value
        if isinstance(value, (int, float)):
            return float(value) if field == IndicatorField.VALUE else math.nan
        return float(getattr(value, field.value, math.nan))

    def first_valid_index(self) -> Optional[int]:
        for i, point in enumerate(self.points):
            if point.valid:
                return i
        return None


# ---------------------------------------------------------------------------
# Scalar indicators
# ---------------------------------------------------------------------------

def _scalar_series(
    spec: IndicatorSpec, bars: Sequence[PriceBar], values: List[float], first_valid: int,
) -> IndicatorSeries:
    points = [
        IndicatorPoint(bar.date, i >= first_valid, values[i])
        for i, bar in enumerate(bars)
    ]
    return IndicatorSeries(spec, points)


def compute_sma(bars: Sequence[PriceBar], period: int) -> IndicatorSeries:
    values: List[float] = []
    total = 0.0
    for i, bar in enumerate(bars):
        total += bar.close
        if i >= period:
            total -= bars[i - period].close
        values.append(total / period if i >= period - 1 else 0.0)
    return _scalar_series(IndicatorSpec.sma(period), bars, values, period - 1)


def _ema_values(closes: Sequence[float], period: int) -> List[float]:
    """EMA seeded with the SMA at ``period - 1``; zero during warmup."""
    k = 2.0 / (period + 1)
    values: List[float] = []
    seed_sum = 0.0
    ema = 0.0
    for i, close in enumerate(closes):
        if i < period - 1:
            seed_sum += close
            values.append(0.0)
        elif i == period - 1:
            seed_sum += close
            ema = seed_sum / period
            values.append(ema)
        else:
            ema = close * k + ema * (1.0 - k)
            values.append(ema)
    return values


def compute_ema(bars: Sequence[PriceBar], period: int) -> IndicatorSeries:
    values = _ema_values([b.close for b in bars], period)
    return _scalar_series(IndicatorSpec.ema(period), bars, values, period - 1)


def compute_wma(bars: Sequence[PriceBar], period: int) -> IndicatorSeries:
    divisor = period * (period + 1) / 2.0
    weighted = 0.0
    total = 0.0
    values: List[float] = []
    for i, bar in enumerate(bars):
        close = bar.close
        if i < period:
            weighted += (i + 1) * close
            total += close
        else:
            # Shift every weight down by one and add the new bar at full weight.
            weighted += period * close - total
            total += close - bars[i - period].close
        values.append(weighted / divisor if i >= period - 1 else 0.0)
    return _scalar_series(IndicatorSpec.wma(period), bars, values, period - 1)


def compute_rsi(bars: Sequence[PriceBar], period: int) -> IndicatorSeries:
    values: List[float] = [0.0] * len(bars)
    sum_gain = 0.0
    sum_loss = 0.0
    avg_gain = 0.0
    avg_loss = 0.0
    for i in range(1, len(bars)):
        change = bars[i].close - bars[i - 1].close
        gain = change if change > 0 else 0.0
        loss = -change if change < 0 else 0.0
        if i <= period:
            sum_gain += gain
            sum_loss += loss
            if i < period:
                continue
            avg_gain = sum_gain / period
            avg_loss = sum_loss / period
        else:
            avg_gain = (avg_gain * (period - 1) + gain) / period
            avg_loss = (avg_loss * (period - 1) + loss) / period
        if avg_loss == 0:
            values[i] = 100.0
        else:
            values[i] = 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)
    return _scalar_series(IndicatorSpec.rsi(period), bars, values, period)


def compute_roc(bars: Sequence[PriceBar], period: int) -> IndicatorSeries:
    values: List[float] = []
    for i, bar in enumerate(bars):
        if i < period:
            values.append(0.0)
            continue
        prev = bars[i - period].close
        values.append((bar.close - prev) / prev * 100.0 if prev != 0 else 0.0)
    return _scalar_series(IndicatorSpec.roc(period), bars, values, period)


def compute_atr(bars: Sequence[PriceBar], period: int) -> IndicatorSeries:
    values: List[float] = []
    tr_sum = 0.0
    atr = 0.0
    for i, bar in enumerate(bars):
        tr = bar.true_range(bars[i - 1].close if i > 0 else None)
        if i < period - 1:
            tr_sum += tr
            values.append(0.0)
        elif i == period - 1:
            tr_sum += tr
            atr = tr_sum / period
            values.append(atr)
        else:
            atr = (atr * (period - 1) + tr) / period
            values.append(atr)
    return _scalar_series(IndicatorSpec.atr(period), bars, values, period - 1)


def _population_stats(window: Sequence[float]) -> Tuple[float, float]:
    """Return ``(mean, population stddev)`` of *window*."""
    n = len(window)
    mean = math.fsum(window) / n
    variance = math.fsum((x - mean) ** 2 for x in window) / n
    return mean, math.sqrt(variance)


def compute_stddev(bars: Sequence[PriceBar], period: int) -> IndicatorSeries:
    closes = [b.close for b in bars]
    values: List[float] = []
    for i in range(len(closes)):
        if i < period - 1:
            values.append(0.0)
            continue
        _, sd = _population_stats(closes[i - period + 1:i + 1])
        values.append(sd)
    return _scalar_series(IndicatorSpec.stddev(period), bars, values, period - 1)


def compute_obv(bars: Sequence[PriceBar]) -> IndicatorSeries:
    values: List[float] = []
    obv = 0.0
    for i, bar in enumerate(bars):
        if i == 0:
            obv = float(bar.volume)
        elif bar.close > bars[i - 1].close:
            obv += bar.volume
        elif bar.close < bars[i - 1].close:
            obv -= bar.volume
        values.append(obv)
    return _scalar_series(IndicatorSpec.obv(), bars, values, 0)


def compute_vwap(bars: Sequence[PriceBar]) -> IndicatorSeries:
    """Cumulative VWAP using the typical price.

    Falls back to the bar's typical price while cumulative volume is zero.
    """
    values: List[float] = []
    cum_pv = 0.0
    cum_volume = 0.0
    for bar in bars:
        typical = bar.typical_price()
        cum_pv += typical * bar.volume
        cum_volume += bar.volume
        values.append(cum_pv / cum_volume if cum_volume > 0 else typical)
    return _scalar_series(IndicatorSpec.vwap(), bars, values, 0)


# ---------------------------------------------------------------------------
# Multi-field indicators
# ---------------------------------------------------------------------------

def compute_macd(
    bars: Sequence[PriceBar], fast: int, slow: int, signal: int,
) -> IndicatorSeries:
    """MACD line, signal and histogram.

    The signal EMA is seeded with the simple mean of the first *signal*
    line values once the line is defined (from ``max(fast, slow) - 1``).
    """
    spec = IndicatorSpec.macd(fast, slow, signal)
    closes = [b.close for b in bars]
    fast_ema = _ema_values(closes, fast)
    slow_ema = _ema_values(closes, slow)
    line_start = max(fast, slow) - 1
    first_valid = line_start + signal - 1
    k = 2.0 / (signal + 1)

    points: List[IndicatorPoint] = []
    seed_sum = 0.0
    sig = 0.0
    for i, bar in enumerate(bars):
        line = fast_ema[i] - slow_ema[i] if i >= line_start else 0.0
        if i < line_start:
            points.append(IndicatorPoint(bar.date, False, MacdValue(0.0, 0.0, 0.0)))
            continue
        if i < first_valid:
            seed_sum += line
            points.append(IndicatorPoint(bar.date, False, MacdValue(line, 0.0, 0.0)))
            continue
        if i == first_valid:
            seed_sum += line
            sig = seed_sum / signal
        else:
            sig = line * k + sig * (1.0 - k)
        points.append(IndicatorPoint(bar.date, True, MacdValue(line, sig, line - sig)))
    return IndicatorSeries(spec, points)


def compute_stochastic(
    bars: Sequence[PriceBar], k_period: int, d_period: int,
) -> IndicatorSeries:
    spec = IndicatorSpec.stochastic(k_period, d_period)
    first_valid = k_period - 1 + d_period - 1
    k_values: List[float] = []
    points: List[IndicatorPoint] = []
    for i, bar in enumerate(bars):
        if i < k_period - 1:
            points.append(IndicatorPoint(bar.date, False, StochasticValue(0.0, 0.0)))
            continue
        window = bars[i - k_period + 1:i + 1]
        highest = max(b.high for b in window)
        lowest = min(b.low for b in window)
        span = highest - lowest
        k = 50.0 if span == 0 else 100.0 * (bar.close - lowest) / span
        k_values.append(k)
        recent = k_values[-d_period:]
        d = sum(recent) / len(recent)
        points.append(IndicatorPoint(bar.date, i >= first_valid, StochasticValue(k, d)))
    return IndicatorSeries(spec, points)


def compute_bollinger(
    bars: Sequence[PriceBar], period: int, multiplier: float,
) -> IndicatorSeries:
    spec = IndicatorSpec.bollinger(period, multiplier)
    closes = [b.close for b in bars]
    points: List[IndicatorPoint] = []
    for i, bar in enumerate(bars):
        if i < period - 1:
            points.append(IndicatorPoint(bar.date, False, BollingerValue(0.0, 0.0, 0.0)))
            continue
        middle, sd = _population_stats(closes[i - period + 1:i + 1])
        band = spec.params[1] * sd
        points.append(IndicatorPoint(
            bar.date, True, BollingerValue(middle + band, middle, middle - band),
        ))
    return IndicatorSeries(spec, points)


def compute_pivot(bars: Sequence[PriceBar]) -> IndicatorSeries:
    """Classic floor pivots computed from the previous bar."""
    points: List[IndicatorPoint] = []
    for i, bar in enumerate(bars):
        if i == 0:
            points.append(IndicatorPoint(
                bar.date, False, PivotValue(0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0),
            ))
            continue
        prev = bars[i - 1]
        h, l, c = prev.high, prev.low, prev.close
        p = (h + l + c) / 3.0
        points.append(IndicatorPoint(bar.date, True, PivotValue(
            pivot=p,
            r1=2.0 * p - l,
            r2=p + (h - l),
            r3=h + 2.0 * (p - l),
            s1=2.0 * p - h,
            s2=p - (h - l),
            s3=l - 2.0 * (h - p),
        )))
    return IndicatorSeries(IndicatorSpec.pivot(), points)


# ---------------------------------------------------------------------------
# Dispatch & caching
# ---------------------------------------------------------------------------

def compute_indicator(bars: Sequence[PriceBar], spec: IndicatorSpec) -> IndicatorSeries:
    """Compute the series described by *spec* over *bars*."""
    kind = spec.kind
    p = spec.params
    if kind == IndicatorKind.SMA:
        return compute_sma(bars, p[0])
    if kind == IndicatorKind.EMA:
        return compute_ema(bars, p[0])
    if kind == IndicatorKind.WMA:
        return compute_wma(bars, p[0])
    if kind == IndicatorKind.RSI:
        return compute_rsi(bars, p[0])
    if kind == IndicatorKind.ROC:
        return compute_roc(bars, p[0])
    if kind == IndicatorKind.ATR:
        return compute_atr(bars, p[0])
    if kind == IndicatorKind.STDDEV:
        return compute_stddev(bars, p[0])
    if kind == IndicatorKind.OBV:
        return compute_obv(bars)
    if kind == IndicatorKind.VWAP:
        return compute_vwap(bars)
    if kind == IndicatorKind.MACD:
        return compute_macd(bars, p[0], p[1], p[2])
    if kind == IndicatorKind.STOCHASTIC:
        return compute_stochastic(bars, p[0], p[1])
    if kind == IndicatorKind.BOLLINGER:
        return compute_bollinger(bars, p[0], p[1])
    if kind == IndicatorKind.PIVOT:
        return compute_pivot(bars)
    raise ValueError(f"Unsupported indicator kind: {kind}")


def compute_indicators(
    bars: Sequence[PriceBar], specs: Iterable[IndicatorSpec],
) -> Dict[IndicatorSpec, IndicatorSeries]:
    """Compute every distinct spec once and return them keyed by spec."""
    cache = IndicatorCache(bars)
    for spec in specs:
        cache.get(spec)
    return cache.as_dict()


class IndicatorCache:
    """Per-run memo of indicator series for one instrument's bars.

    A series is computed on first request and reused afterwards.  Create
    a new cache per run so parameter sweeps never share state.
    """

    def __init__(self, bars: Sequence[PriceBar]) -> None:
        self._bars = bars
        self._series: Dict[IndicatorSpec, IndicatorSeries] = {}

    def get(self, spec: IndicatorSpec) -> IndicatorSeries:
        series = self._series.get(spec)
        if series is None:
            series = compute_indicator(self._bars, spec)
            self._series[spec] = series
        return series

    def __contains__(self, spec: object) -> bool:
        return spec in self._series

    def __len__(self) -> int:
        return len(self._series)

    def as_dict(self) -> Dict[IndicatorSpec, IndicatorSeries]:
        return dict(self._series)
