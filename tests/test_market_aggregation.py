import unittest
from datetime import datetime, timedelta, timezone

import pandas as pd

from replay.market import (
    MarketFeed,
    aggregate_bars,
    bars_from_frame,
    bars_to_frame,
    check_bars,
    timeframe_to_ms,
    validate_bars,
)
from replay.types import Bar, InvalidBarSequence

START = datetime(2025, 1, 2, 14, 30, tzinfo=timezone.utc)


def _minute_bars(n, start=START):
    out = []
    for i in range(n):
        c = 100.0 + i
        out.append(
            Bar(
                timestamp=int((start + timedelta(minutes=i)).timestamp() * 1000),
                open=c - 0.5,
                high=c + 1.0,
                low=c - 1.0,
                close=c,
                volume=10.0 * (i + 1),
            )
        )
    return out


class TimeframeTests(unittest.TestCase):
    def test_labels(self):
        self.assertEqual(timeframe_to_ms("1m"), 60_000)
        self.assertEqual(timeframe_to_ms("5m"), 300_000)
        self.assertEqual(timeframe_to_ms("15Min"), 900_000)
        self.assertEqual(timeframe_to_ms("1Hour"), 3_600_000)
        self.assertEqual(timeframe_to_ms("1d"), 86_400_000)
        self.assertEqual(timeframe_to_ms(120_000), 120_000)

    def test_invalid(self):
        for bad in ("", "5", "m5", "5 fortnights", "0m", 0, -1, True):
            with self.assertRaises(ValueError, msg=repr(bad)):
                timeframe_to_ms(bad)


class AggregateTests(unittest.TestCase):
    def test_five_minute_buckets(self):
        bars = _minute_bars(10)
        out = aggregate_bars(bars, "5m")
        self.assertEqual(len(out), 2)
        first = out[0]
        self.assertEqual(first.timestamp, bars[0].timestamp)
        self.assertEqual(first.open, bars[0].open)
        self.assertEqual(first.close, bars[4].close)
        self.assertEqual(first.high, max(b.high for b in bars[:5]))
        self.assertEqual(first.low, min(b.low for b in bars[:5]))

    def test_volume_is_preserved(self):
        bars = _minute_bars(23)
        for tf in ("1m", "2m", "5m", "15m", "1h"):
            out = aggregate_bars(bars, tf)
            self.assertAlmostEqual(sum(b.volume for b in out), sum(b.volume for b in bars), places=9)

    def test_trailing_partial_bucket(self):
        bars = _minute_bars(7)
        out = aggregate_bars(bars, "5m")
        self.assertEqual(len(out), 2)
        self.assertEqual(out[-1].close, bars[-1].close)
        self.assertAlmostEqual(out[-1].volume, bars[5].volume + bars[6].volume, places=9)

    def test_bucket_keys_are_floored(self):
        bars = _minute_bars(3, start=START + timedelta(minutes=2))
        out = aggregate_bars(bars, "5m")
        self.assertEqual(len(out), 1)
        self.assertEqual(out[0].timestamp, int(START.timestamp() * 1000))

    def test_empty(self):
        self.assertEqual(aggregate_bars([], "5m"), [])


class ValidationTests(unittest.TestCase):
    def test_valid(self):
        self.assertIsNone(check_bars(_minute_bars(5)))

    def test_non_increasing_timestamps(self):
        bars = _minute_bars(3)
        bad = [bars[0], bars[0], bars[2]]
        err = check_bars(bad)
        self.assertIsInstance(err, InvalidBarSequence)
        self.assertEqual(err.details["index"], 1)
        with self.assertRaises(ValueError):
            validate_bars(bad)

    def test_malformed_ohlc(self):
        b = Bar(timestamp=0, open=10.0, high=9.0, low=8.0, close=9.5, volume=1.0)
        self.assertIsNotNone(check_bars([b]))

    def test_negative_volume(self):
        b = Bar(timestamp=0, open=10.0, high=11.0, low=9.0, close=10.0, volume=-1.0)
        self.assertEqual(check_bars([b]).message, "negative volume")


class FeedTests(unittest.TestCase):
    def test_from_frame_uses_index_time(self):
        bars = _minute_bars(4)
        df = bars_to_frame(bars)
        feed = MarketFeed.from_frame(symbol="SPY", df=df)
        self.assertEqual(len(feed), 4)
        self.assertEqual(feed.bars[2].timestamp, bars[2].timestamp)

    def test_from_frame_nan_volume(self):
        df = pd.DataFrame(
            {"timestamp": [0, 60_000], "open": [1.0, 1.0], "high": [1.0, 1.0], "low": [1.0, 1.0], "close": [1.0, 1.0], "volume": [float("nan"), 3.0]}
        )
        bars = bars_from_frame(df)
        self.assertEqual(bars[0].volume, 0.0)
        self.assertEqual(bars[1].volume, 3.0)

    def test_missing_columns(self):
        with self.assertRaises(ValueError):
            bars_from_frame(pd.DataFrame({"open": [1.0]}))

    def test_prefix_and_lookup(self):
        feed = MarketFeed(symbol="SPY", bars=_minute_bars(10))
        self.assertEqual(len(feed.prefix(3)), 4)
        self.assertEqual(feed.prefix(-1), [])
        t = feed.bars[6].timestamp
        self.assertEqual(feed.index_for_time(t), 6)
        self.assertEqual(feed.index_for_time(t + 30_000), 6)
        self.assertIsNone(feed.index_for_time(feed.bars[0].timestamp - 1))
        self.assertEqual(feed.range_indices(start_ms=feed.bars[2].timestamp, end_ms_exclusive=feed.bars[5].timestamp), (2, 5))

    def test_aggregated_prefix_has_no_lookahead(self):
        feed = MarketFeed(symbol="SPY", bars=_minute_bars(10))
        out = feed.aggregated("5m", end_index=6)
        self.assertEqual(out[-1].close, feed.bars[6].close)
        self.assertEqual(feed.describe()["n_bars"], 10)


if __name__ == "__main__":
    unittest.main()
