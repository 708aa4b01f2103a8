"""
Indicator math for practice charts.

Everything here is a pure function of the bar prefix it is given: no caches,
no module state. Output lists are aligned 1:1 with the input bars so a renderer
can zip them with bar times directly.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import pytz

from replay.types import Bar

EMA_RIBBON_PERIODS: Tuple[int, ...] = (8, 10, 12, 14, 16, 18, 20, 21)

TrendState = str  # "bullish" | "bearish" | "neutral"


def _closes(src: Union[Sequence[Bar], Sequence[float]]) -> List[float]:
    out: List[float] = []
    for x in src:
        out.append(float(x.close) if isinstance(x, Bar) else float(x))
    return out


def ema(values: Sequence[float], period: int) -> List[float]:
    """
    Exponential moving average, same length as `values`.

    The first min(period, n) outputs are the running simple average of the values
    seen so far (no leading gaps). From index `period` on:
        ema[i] = (v[i] - ema[i-1]) * k + ema[i-1],  k = 2 / (period + 1)
    """
    p = int(period)
    if p < 1:
        raise ValueError("period must be >= 1")
    n = len(values)
    if n == 0:
        return []
    k = 2.0 / (p + 1.0)
    out: List[float] = []
    total = 0.0
    for i in range(min(p, n)):
        total += float(values[i])
        out.append(total / (i + 1))
    for i in range(p, n):
        # Same recurrence as (v - prev) * k + prev; this form is exact for period 1.
        out.append(float(values[i]) * k + out[i - 1] * (1.0 - k))
    return out


def sma(values: Sequence[float], period: int) -> List[float]:
    """Simple moving average; running average until `period` values are available."""
    p = int(period)
    if p < 1:
        raise ValueError("period must be >= 1")
    out: List[float] = []
    window_sum = 0.0
    for i, v in enumerate(values):
        window_sum += float(v)
        if i >= p:
            window_sum -= float(values[i - p])
        out.append(window_sum / min(i + 1, p))
    return out


@dataclass(frozen=True)
class VWAPBands:
    vwap: List[float]
    upper1: List[float]
    lower1: List[float]
    upper2: List[float]
    lower2: List[float]
    std: List[float]


def _session_key(t_ms: int, tz) -> Tuple[int, int, int]:
    dt = datetime.fromtimestamp(int(t_ms) / 1000.0, tz=timezone.utc)
    if tz is not None:
        dt = dt.astimezone(tz)
    return (dt.year, dt.month, dt.day)


def vwap_bands(bars: Sequence[Bar], *, session_tz: str = "UTC") -> VWAPBands:
    """
    Session VWAP with ±1σ / ±2σ bands.

    Cumulative sums reset whenever the calendar date of the bar (in `session_tz`,
    UTC by default) changes. With zero cumulative volume the VWAP is the bar's
    typical price. σ is the root mean square of (typical - vwap) over the bars
    of the current session so far, i.e. dispersion around the VWAP itself.
    """
    tz = None if session_tz.upper() == "UTC" else pytz.timezone(session_tz)
    vw: List[float] = []
    sd: List[float] = []
    cum_pv = 0.0
    cum_v = 0.0
    dev_n = 0
    dev_sq = 0.0
    prev_key: Optional[Tuple[int, int, int]] = None

    for b in bars:
        key = _session_key(b.timestamp, tz)
        if prev_key is not None and key != prev_key:
            cum_pv = 0.0
            cum_v = 0.0
            dev_n = 0
            dev_sq = 0.0
        prev_key = key

        tp = b.typical_price
        vol = max(0.0, float(b.volume or 0.0))
        cum_pv += tp * vol
        cum_v += vol
        v = (cum_pv / cum_v) if cum_v > 0 else tp

        d = tp - v
        dev_n += 1
        dev_sq += d * d
        std = math.sqrt(dev_sq / dev_n)

        vw.append(v)
        sd.append(std)

    return VWAPBands(
        vwap=vw,
        upper1=[v + s for v, s in zip(vw, sd)],
        lower1=[v - s for v, s in zip(vw, sd)],
        upper2=[v + 2.0 * s for v, s in zip(vw, sd)],
        lower2=[v - 2.0 * s for v, s in zip(vw, sd)],
        std=sd,
    )


def vwap(bars: Sequence[Bar], *, session_tz: str = "UTC") -> List[float]:
    return vwap_bands(bars, session_tz=session_tz).vwap


@dataclass(frozen=True)
class TrendPoint:
    state: TrendState
    fast: float
    slow: float
    top: float
    bottom: float


def classify_trend(fast_value: float, slow_value: float) -> TrendState:
    if fast_value > slow_value:
        return "bullish"
    if fast_value < slow_value:
        return "bearish"
    return "neutral"


def trend_states(
    src: Union[Sequence[Bar], Sequence[float]],
    *,
    fast: int = 9,
    slow: int = 21,
) -> List[TrendPoint]:
    """Fast vs slow EMA classification per bar, with the top/bottom pair for cloud shading."""
    closes = _closes(src)
    f = ema(closes, fast)
    s = ema(closes, slow)
    return [
        TrendPoint(state=classify_trend(a, b), fast=a, slow=b, top=max(a, b), bottom=min(a, b))
        for a, b in zip(f, s)
    ]


@dataclass(frozen=True)
class RibbonState:
    color: TrendState
    strength: float  # 0-100, from EMA separation
    top: float
    bottom: float
    expanding: bool
    contracting: bool


@dataclass(frozen=True)
class RibbonData:
    periods: Tuple[int, ...]
    emas: List[List[float]]
    states: List[RibbonState]


def ema_ribbon(
    src: Union[Sequence[Bar], Sequence[float]],
    periods: Sequence[int] = EMA_RIBBON_PERIODS,
) -> RibbonData:
    """
    Multi-EMA ribbon. A bar is bullish when at least 70% of adjacent EMA pairs are
    stacked shortest-above-longest, bearish for the mirror case, neutral otherwise.
    """
    closes = _closes(src)
    periods = tuple(int(p) for p in periods)
    emas = [ema(closes, p) for p in periods]
    states: List[RibbonState] = []
    prev_sep: Optional[float] = None

    for i, price in enumerate(closes):
        values = [e[i] for e in emas]
        if len(values) < 2:
            only = values[0] if values else price
            states.append(RibbonState("neutral", 0.0, only, only, False, False))
            prev_sep = 0.0
            continue

        bull = sum(1 for a, b in zip(values, values[1:]) if a > b)
        bear = sum(1 for a, b in zip(values, values[1:]) if a < b)
        pairs = len(values) - 1
        if bull >= pairs * 0.7:
            color = "bullish"
        elif bear >= pairs * 0.7:
            color = "bearish"
        else:
            color = "neutral"

        top = max(values)
        bottom = min(values)
        sep = ((top - bottom) / price * 100.0) if price else 0.0
        expanding = prev_sep is not None and i > 0 and sep > prev_sep * 1.05
        contracting = prev_sep is not None and i > 0 and sep < prev_sep * 0.95
        states.append(
            RibbonState(
                color=color,
                strength=min(100.0, sep * 25.0),
                top=top,
                bottom=bottom,
                expanding=bool(expanding),
                contracting=bool(contracting),
            )
        )
        prev_sep = sep

    return RibbonData(periods=periods, emas=emas, states=states)


@dataclass(frozen=True)
class VolumeProfile:
    edges: List[float]
    volumes: List[float]
    poc_price: Optional[float]
    value_area_high: Optional[float]
    value_area_low: Optional[float]
    high_volume_nodes: List[float]
    low_volume_nodes: List[float]

    @property
    def centers(self) -> List[float]:
        return [(a + b) / 2.0 for a, b in zip(self.edges, self.edges[1:])]


def volume_profile(
    bars: Sequence[Bar],
    *,
    bins: int = 24,
    value_area: float = 0.70,
    start: int = 0,
    end: Optional[int] = None,
) -> VolumeProfile:
    """
    Volume-by-price histogram over bars[start:end], each bar's volume placed at its
    typical price. Point of control is the fullest bucket; the value area grows
    outward from it until `value_area` of total volume is covered. High-volume
    nodes are buckets above the mean non-empty bucket volume, low-volume nodes
    are non-empty buckets below half of it.
    """
    window = list(bars[start:end])
    if not window or bins < 1:
        return VolumeProfile([], [], None, None, None, [], [])

    tp = np.array([b.typical_price for b in window], dtype=np.float64)
    vol = np.array([max(0.0, float(b.volume or 0.0)) for b in window], dtype=np.float64)
    lo = float(min(b.low for b in window))
    hi = float(max(b.high for b in window))
    hist, edges = np.histogram(tp, bins=int(bins), range=(lo, hi), weights=vol)
    centers = (edges[:-1] + edges[1:]) / 2.0

    total = float(hist.sum())
    if total <= 0:
        return VolumeProfile(edges.tolist(), hist.tolist(), None, None, None, [], [])

    poc = int(np.argmax(hist))
    lo_i = hi_i = poc
    covered = float(hist[poc])
    while covered < total * value_area and (lo_i > 0 or hi_i < len(hist) - 1):
        below = float(hist[lo_i - 1]) if lo_i > 0 else -1.0
        above = float(hist[hi_i + 1]) if hi_i < len(hist) - 1 else -1.0
        if above >= below:
            hi_i += 1
            covered += above
        else:
            lo_i -= 1
            covered += below

    nonzero = hist[hist > 0]
    mean_v = float(nonzero.mean()) if nonzero.size else 0.0
    hvn = [float(c) for c, v in zip(centers, hist) if v > mean_v]
    lvn = [float(c) for c, v in zip(centers, hist) if 0 < v < mean_v * 0.5]

    return VolumeProfile(
        edges=edges.tolist(),
        volumes=hist.tolist(),
        poc_price=float(centers[poc]),
        value_area_high=float(edges[hi_i + 1]),
        value_area_low=float(edges[lo_i]),
        high_volume_nodes=hvn,
        low_volume_nodes=lvn,
    )


def compute_indicators(
    bars: Sequence[Bar],
    *,
    fast: int = 9,
    slow: int = 21,
    session_tz: str = "UTC",
) -> Dict[str, List]:
    """
    Renderer-facing indicator series for the visible bar prefix.
    Keys: ema9, ema21, vwap, vwapUpper1, vwapLower1, vwapUpper2, vwapLower2, trendState.
    """
    closes = _closes(bars)
    fast_line = ema(closes, fast)
    slow_line = ema(closes, slow)
    bands = vwap_bands(bars, session_tz=session_tz)
    return {
        "ema9": fast_line,
        "ema21": slow_line,
        "vwap": bands.vwap,
        "vwapUpper1": bands.upper1,
        "vwapLower1": bands.lower1,
        "vwapUpper2": bands.upper2,
        "vwapLower2": bands.lower2,
        "trendState": [classify_trend(a, b) for a, b in zip(fast_line, slow_line)],
    }


def indicator_frame(bars: Sequence[Bar], **kwargs) -> pd.DataFrame:
    """compute_indicators() as a DataFrame indexed by bar time (UTC)."""
    data = compute_indicators(bars, **kwargs)
    idx = pd.to_datetime([int(b.timestamp) for b in bars], unit="ms", utc=True)
    return pd.DataFrame(data, index=idx)
