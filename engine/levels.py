"""
Key price levels for practice scenarios (PDH/PDL, opening range, weekly range,
VWAP bands, round numbers, gaps, SMA 200).

Levels are reference data: computed from bars, returned as immutable KeyLevel
values, never mutated afterwards.
"""

from __future__ import annotations

import math
from typing import List, Optional, Sequence, Tuple

from engine.indicators import vwap_bands
from replay.types import Bar, KeyLevel


def previous_day_levels(daily_bars: Sequence[Bar]) -> List[KeyLevel]:
    if len(daily_bars) < 2:
        return []
    y = daily_bars[-2]
    return [
        KeyLevel(type="pdh", price=float(y.high), strength=85, label="PDH", timeframe="daily"),
        KeyLevel(type="pdl", price=float(y.low), strength=85, label="PDL", timeframe="daily"),
    ]


def opening_range_levels(intraday_bars: Sequence[Bar], orb_minutes: int = 15) -> List[KeyLevel]:
    """High/low of bars within the first `orb_minutes` after the first bar (inclusive)."""
    if not intraday_bars:
        return []
    cutoff = int(intraday_bars[0].timestamp) + int(orb_minutes) * 60_000
    orb = [b for b in intraday_bars if int(b.timestamp) <= cutoff]
    return [
        KeyLevel(type="orb_high", price=max(float(b.high) for b in orb), strength=80, label="ORB High"),
        KeyLevel(type="orb_low", price=min(float(b.low) for b in orb), strength=80, label="ORB Low"),
    ]


def weekly_levels(daily_bars: Sequence[Bar]) -> List[KeyLevel]:
    if len(daily_bars) < 5:
        return []
    week = daily_bars[-5:]
    return [
        KeyLevel(type="weekly_high", price=max(float(b.high) for b in week), strength=75, label="Week High", timeframe="weekly"),
        KeyLevel(type="weekly_low", price=min(float(b.low) for b in week), strength=75, label="Week Low", timeframe="weekly"),
    ]


def vwap_levels(intraday_bars: Sequence[Bar], *, session_tz: str = "UTC") -> List[KeyLevel]:
    """Latest session VWAP and its ±1σ band as levels."""
    if not intraday_bars:
        return []
    bands = vwap_bands(intraday_bars, session_tz=session_tz)
    return [
        KeyLevel(type="vwap", price=bands.vwap[-1], strength=90, label="VWAP"),
        KeyLevel(type="vwap_upper", price=bands.upper1[-1], strength=60, label="VWAP +1σ"),
        KeyLevel(type="vwap_lower", price=bands.lower1[-1], strength=60, label="VWAP -1σ"),
    ]


def round_number_interval(price: float) -> float:
    if price > 500:
        return 50.0
    if price > 100:
        return 10.0
    if price > 50:
        return 5.0
    if price > 10:
        return 1.0
    return 0.5


def round_number_levels(current_price: float, count: int = 2) -> List[KeyLevel]:
    interval = round_number_interval(current_price)
    nearest = round(current_price / interval) * interval
    out: List[KeyLevel] = []
    for i in range(-count, count + 1):
        if i == 0:
            continue
        price = nearest + i * interval
        if price > 0:
            out.append(KeyLevel(type="round_number", price=price, strength=50, label=f"${price:g}", timeframe="daily"))
    return out


def gap_levels(
    yesterday_close: float,
    today_open: float,
    premarket_high: Optional[float] = None,
    premarket_low: Optional[float] = None,
) -> List[KeyLevel]:
    out: List[KeyLevel] = []
    if today_open > yesterday_close:
        out.append(KeyLevel(type="gap_low", price=yesterday_close, strength=85, label="Gap Fill (PDC)"))
        out.append(KeyLevel(type="gap_high", price=today_open, strength=70, label="Gap High"))
    elif today_open < yesterday_close:
        out.append(KeyLevel(type="gap_high", price=yesterday_close, strength=85, label="Gap Fill (PDC)"))
        out.append(KeyLevel(type="gap_low", price=today_open, strength=70, label="Gap Low"))
    if premarket_high and premarket_low:
        out.append(KeyLevel(type="premarket_high", price=premarket_high, strength=75, label="PM High"))
        out.append(KeyLevel(type="premarket_low", price=premarket_low, strength=75, label="PM Low"))
    return out


def sma200_level(daily_bars: Sequence[Bar]) -> Optional[KeyLevel]:
    if len(daily_bars) < 200:
        return None
    avg = sum(float(b.close) for b in daily_bars[-200:]) / 200.0
    return KeyLevel(type="sma_200", price=avg, strength=95, label="SMA 200", timeframe="daily")


def calculate_all_levels(
    *,
    daily_bars: Sequence[Bar],
    intraday_bars: Sequence[Bar],
    current_price: float,
    premarket: Optional[Tuple[float, float]] = None,
    session_tz: str = "UTC",
) -> List[KeyLevel]:
    """
    Every level family, nearest to `current_price` first, with levels within 0.1%
    of an already-kept level dropped.
    """
    levels: List[KeyLevel] = []
    levels.extend(previous_day_levels(daily_bars))
    levels.extend(opening_range_levels(intraday_bars))
    levels.extend(weekly_levels(daily_bars))
    levels.extend(vwap_levels(intraday_bars, session_tz=session_tz))
    levels.extend(round_number_levels(current_price))
    s200 = sma200_level(daily_bars)
    if s200 is not None:
        levels.append(s200)
    if len(daily_bars) >= 2 and intraday_bars:
        pm_high, pm_low = premarket if premarket else (None, None)
        levels.extend(gap_levels(float(daily_bars[-2].close), float(intraday_bars[0].open), pm_high, pm_low))

    levels.sort(key=lambda lv: abs(lv.price - current_price))
    unique: List[KeyLevel] = []
    for lv in levels:
        if lv.price <= 0:
            continue
        if any(abs(u.price - lv.price) / lv.price < 0.001 for u in unique):
            continue
        unique.append(lv)
    return unique


def top_levels(levels: Sequence[KeyLevel], current_price: float, count: int = 6) -> List[KeyLevel]:
    """Highest scoring levels: 60% proximity, 40% strength."""

    def score(lv: KeyLevel) -> float:
        distance = abs(lv.price - current_price) / current_price
        return max(0.0, 100.0 - distance * 1000.0) * 0.6 + float(lv.strength) * 0.4

    # sorted() is stable, so equal scores keep input order
    return sorted(levels, key=score, reverse=True)[:count]


def is_at_key_level(
    current_price: float,
    levels: Sequence[KeyLevel],
    threshold_pct: float = 0.3,
) -> Tuple[bool, Optional[KeyLevel], float]:
    """(at_level, level, distance_pct) for the first level within `threshold_pct` percent."""
    for lv in levels:
        if lv.price <= 0:
            continue
        distance = abs(current_price - lv.price) / lv.price * 100.0
        if distance <= threshold_pct:
            return True, lv, distance
    return False, None, math.inf
