from __future__ import annotations

import math
import unittest
from datetime import datetime, timedelta, timezone

import numpy as np

from engine.indicators import (
    compute_indicators,
    ema,
    ema_ribbon,
    indicator_frame,
    sma,
    trend_states,
    volume_profile,
    vwap_bands,
)
from replay.types import Bar


def _bar(dt: datetime, *, high: float, low: float, close: float, volume: float = 1_000.0) -> Bar:
    return Bar(
        timestamp=int(dt.timestamp() * 1000),
        open=close,
        high=max(high, close),
        low=min(low, close),
        close=close,
        volume=volume,
    )


def _linear_bars(n: int, start: float = 100.0, step: float = 0.1):
    t0 = datetime(2025, 1, 2, 14, 30, tzinfo=timezone.utc)
    out = []
    for i in range(n):
        c = start + step * i
        out.append(_bar(t0 + timedelta(minutes=i), high=c + 0.05, low=c - 0.05, close=c))
    return out


class EmaTests(unittest.TestCase):
    def test_length_matches_input(self):
        values = list(np.linspace(10.0, 20.0, 37))
        for p in (1, 3, 9, 21, 50):
            self.assertEqual(len(ema(values, p)), len(values))
        self.assertEqual(ema([], 9), [])

    def test_period_one_is_identity(self):
        values = [3.0, 1.5, 7.25, 2.0, 2.0, 9.125]
        self.assertEqual(ema(values, 1), values)

    def test_seed_is_running_average(self):
        out = ema([1.0, 2.0, 3.0, 4.0, 5.0], 3)
        self.assertAlmostEqual(out[0], 1.0, places=12)
        self.assertAlmostEqual(out[1], 1.5, places=12)
        self.assertAlmostEqual(out[2], 2.0, places=12)
        # k = 0.5
        self.assertAlmostEqual(out[3], 3.0, places=12)
        self.assertAlmostEqual(out[4], 4.0, places=12)

    def test_invalid_period(self):
        with self.assertRaises(ValueError):
            ema([1.0], 0)

    def test_prefix_stability(self):
        values = list(np.linspace(1.0, 5.0, 30))
        full = ema(values, 9)
        self.assertEqual(ema(values[:12], 9), full[:12])

    def test_sma(self):
        self.assertEqual(sma([2.0, 4.0, 6.0, 8.0], 2), [2.0, 3.0, 5.0, 7.0])


class VwapTests(unittest.TestCase):
    def test_resets_on_new_day(self):
        d1 = datetime(2025, 1, 2, 15, 0, tzinfo=timezone.utc)
        d2 = datetime(2025, 1, 3, 15, 0, tzinfo=timezone.utc)
        bars = [
            _bar(d1, high=10.0, low=10.0, close=10.0, volume=100.0),
            _bar(d1 + timedelta(minutes=1), high=12.0, low=12.0, close=12.0, volume=100.0),
            _bar(d2, high=20.0, low=20.0, close=20.0, volume=100.0),
        ]
        b = vwap_bands(bars)
        self.assertAlmostEqual(b.vwap[1], 11.0, places=12)
        self.assertAlmostEqual(b.vwap[2], 20.0, places=12)
        self.assertEqual(b.std[2], 0.0)

    def test_zero_volume_uses_typical_price(self):
        t = datetime(2025, 1, 2, 15, 0, tzinfo=timezone.utc)
        bars = [_bar(t, high=11.0, low=8.0, close=10.0, volume=0.0)]
        self.assertAlmostEqual(vwap_bands(bars).vwap[0], (11.0 + 8.0 + 10.0) / 3.0, places=12)

    def test_bands_are_rms_distance_from_vwap(self):
        t = datetime(2025, 1, 2, 15, 0, tzinfo=timezone.utc)
        bars = [
            _bar(t, high=10.0, low=10.0, close=10.0, volume=1.0),
            _bar(t + timedelta(minutes=1), high=20.0, low=20.0, close=20.0, volume=1.0),
        ]
        b = vwap_bands(bars)
        self.assertEqual(b.std[0], 0.0)
        self.assertAlmostEqual(b.vwap[1], 15.0, places=12)
        # deviations from vwap: 0 and 5 -> sqrt((0 + 25) / 2)
        sigma = math.sqrt(12.5)
        self.assertAlmostEqual(b.std[1], sigma, places=12)
        self.assertAlmostEqual(b.upper1[1], 15.0 + sigma, places=12)
        self.assertAlmostEqual(b.lower2[1], 15.0 - 2.0 * sigma, places=12)

    def test_bands_keep_width_when_price_holds_above_vwap(self):
        t = datetime(2025, 1, 2, 15, 0, tzinfo=timezone.utc)
        bars = [_bar(t, high=10.0, low=10.0, close=10.0, volume=100.0)]
        # Later bars trade 2 above a VWAP they carry no weight in.
        for i in range(1, 6):
            bars.append(_bar(t + timedelta(minutes=i), high=12.0, low=12.0, close=12.0, volume=0.0))
        b = vwap_bands(bars)
        self.assertAlmostEqual(b.vwap[-1], 10.0, places=12)
        self.assertAlmostEqual(b.std[-1], math.sqrt(5 * 4.0 / 6), places=12)
        self.assertGreater(b.upper1[-1] - b.lower1[-1], 0.0)

    def test_session_timezone(self):
        # 23:30 and 00:30 UTC are the same New York calendar day.
        t = datetime(2025, 1, 2, 23, 30, tzinfo=timezone.utc)
        bars = [
            _bar(t, high=10.0, low=10.0, close=10.0, volume=1.0),
            _bar(t + timedelta(hours=1), high=20.0, low=20.0, close=20.0, volume=1.0),
        ]
        self.assertAlmostEqual(vwap_bands(bars).vwap[1], 20.0, places=12)
        self.assertAlmostEqual(vwap_bands(bars, session_tz="America/New_York").vwap[1], 15.0, places=12)


class TrendAndRibbonTests(unittest.TestCase):
    def test_rising_series_is_bullish(self):
        pts = trend_states(_linear_bars(40))
        self.assertEqual(pts[-1].state, "bullish")
        self.assertEqual(pts[0].state, "neutral")
        self.assertEqual(pts[-1].top, pts[-1].fast)

    def test_falling_series_is_bearish(self):
        pts = trend_states(_linear_bars(40, step=-0.1))
        self.assertEqual(pts[-1].state, "bearish")

    def test_ribbon(self):
        data = ema_ribbon(_linear_bars(60))
        self.assertEqual(len(data.emas), 8)
        self.assertEqual(len(data.states), 60)
        self.assertEqual(data.states[-1].color, "bullish")
        self.assertGreater(data.states[-1].strength, 0.0)
        self.assertLessEqual(data.states[-1].strength, 100.0)


class VolumeProfileTests(unittest.TestCase):
    def test_point_of_control_follows_volume(self):
        t = datetime(2025, 1, 2, 15, 0, tzinfo=timezone.utc)
        bars = [
            _bar(t, high=100.0, low=100.0, close=100.0, volume=100.0),
            _bar(t + timedelta(minutes=1), high=105.0, low=105.0, close=105.0, volume=5_000.0),
            _bar(t + timedelta(minutes=2), high=110.0, low=110.0, close=110.0, volume=100.0),
        ]
        vp = volume_profile(bars, bins=10)
        self.assertEqual(len(vp.volumes), 10)
        self.assertAlmostEqual(sum(vp.volumes), 5_200.0, places=6)
        self.assertTrue(104.0 <= vp.poc_price <= 106.0)
        self.assertLessEqual(vp.value_area_low, vp.poc_price)
        self.assertGreaterEqual(vp.value_area_high, vp.poc_price)
        self.assertEqual(len(vp.high_volume_nodes), 1)

    def test_empty(self):
        vp = volume_profile([])
        self.assertIsNone(vp.poc_price)


class ComputeIndicatorsTests(unittest.TestCase):
    def test_keys_and_alignment(self):
        bars = _linear_bars(30)
        out = compute_indicators(bars)
        self.assertEqual(
            sorted(out),
            sorted(["ema9", "ema21", "vwap", "vwapUpper1", "vwapLower1", "vwapUpper2", "vwapLower2", "trendState"]),
        )
        for v in out.values():
            self.assertEqual(len(v), 30)

    def test_empty_prefix(self):
        out = compute_indicators([])
        self.assertTrue(all(v == [] for v in out.values()))

    def test_frame(self):
        df = indicator_frame(_linear_bars(5))
        self.assertEqual(len(df), 5)
        self.assertIn("vwapUpper1", df.columns)
        self.assertEqual(str(df.index.tz), "UTC")


if __name__ == "__main__":
    unittest.main()
