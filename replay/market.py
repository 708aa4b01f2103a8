from __future__ import annotations

import bisect
import logging
import re
from dataclasses import dataclass, field
from datetime import timezone
from typing import Dict, List, Optional, Sequence, Union

import pandas as pd

from replay.types import Bar, InvalidBarSequence

logger = logging.getLogger(__name__)

REQUIRED_BAR_COLUMNS = ("open", "high", "low", "close", "volume")

_UNIT_MS: Dict[str, int] = {
    "s": 1_000,
    "sec": 1_000,
    "m": 60_000,
    "min": 60_000,
    "h": 3_600_000,
    "hour": 3_600_000,
    "d": 86_400_000,
    "day": 86_400_000,
}

_TF_RE = re.compile(r"^\s*(\d+)\s*([a-zA-Z]+)\s*$")


def timeframe_to_ms(timeframe: Union[int, str]) -> int:
    """
    Resolve a timeframe to a bucket width in milliseconds.

    Accepts an int (already ms) or labels like "1m", "5m", "15m", "1h", "1d",
    and the Alpaca-style "1Min"/"5Min"/"1Hour"/"1Day" spellings.
    """
    if isinstance(timeframe, bool):
        raise ValueError(f"invalid timeframe: {timeframe!r}")
    if isinstance(timeframe, int):
        if timeframe <= 0:
            raise ValueError("timeframe must be > 0 ms")
        return timeframe
    m = _TF_RE.match(str(timeframe))
    if not m:
        raise ValueError(f"invalid timeframe: {timeframe!r}")
    n = int(m.group(1))
    unit = m.group(2).lower()
    if unit not in _UNIT_MS or n <= 0:
        raise ValueError(f"invalid timeframe: {timeframe!r}")
    return n * _UNIT_MS[unit]


def check_bars(bars: Sequence[Bar]) -> Optional[InvalidBarSequence]:
    """Return the first contract violation in `bars` as an error value, or None."""
    prev_t: Optional[int] = None
    for i, b in enumerate(bars):
        if prev_t is not None and int(b.timestamp) <= prev_t:
            return InvalidBarSequence(
                "bar timestamps must be strictly increasing",
                index=i,
                timestamp=int(b.timestamp),
                previous=prev_t,
            )
        prev_t = int(b.timestamp)
        if b.high < max(b.open, b.close) or b.low > min(b.open, b.close) or b.low > b.high:
            return InvalidBarSequence("malformed OHLC", index=i, timestamp=int(b.timestamp))
        if b.volume < 0:
            return InvalidBarSequence("negative volume", index=i, timestamp=int(b.timestamp))
    return None


def validate_bars(bars: Sequence[Bar]) -> None:
    """Raise InvalidBarSequence if `bars` violates the bar contract."""
    err = check_bars(bars)
    if err is not None:
        raise err


def aggregate_bars(bars: Sequence[Bar], target_timeframe: Union[int, str]) -> List[Bar]:
    """
    Group base-resolution bars into `target_timeframe` buckets.

    Bucket key is floor(timestamp / bucket_ms) * bucket_ms. A trailing partial
    bucket is emitted as-is, so a replay prefix never pulls in future bars.
    """
    step = timeframe_to_ms(target_timeframe)
    out: List[Bar] = []
    cur_key: Optional[int] = None
    o = h = l = c = v = 0.0
    for b in bars:
        k = (int(b.timestamp) // step) * step
        if k != cur_key:
            if cur_key is not None:
                out.append(Bar(timestamp=cur_key, open=o, high=h, low=l, close=c, volume=v))
            cur_key = k
            o = float(b.open)
            h = float(b.high)
            l = float(b.low)
            c = float(b.close)
            v = float(b.volume or 0.0)
        else:
            h = max(h, float(b.high))
            l = min(l, float(b.low))
            c = float(b.close)
            v += float(b.volume or 0.0)
    if cur_key is not None:
        out.append(Bar(timestamp=cur_key, open=o, high=h, low=l, close=c, volume=v))
    return out


def bars_from_frame(df: pd.DataFrame) -> List[Bar]:
    """
    Build Bars from an OHLCV DataFrame.
    Time comes from a `timestamp` (epoch ms) column, a `ts` column, or the index.
    """
    if df is None or df.empty:
        return []
    missing = [c for c in REQUIRED_BAR_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"bars frame missing required columns: {missing}")

    if "timestamp" in df.columns:
        t_ms = [int(x) for x in df["timestamp"].tolist()]
    else:
        src = df["ts"] if "ts" in df.columns else df.index
        ts = pd.to_datetime(src, utc=True)
        t_ms = [int(pd.Timestamp(x).value // 1_000_000) for x in ts]

    bars: List[Bar] = []
    for i, (o, h, l, c, v) in enumerate(
        zip(df["open"].tolist(), df["high"].tolist(), df["low"].tolist(), df["close"].tolist(), df["volume"].tolist())
    ):
        vol = 0.0 if v is None or v != v else float(v)  # NaN volume counts as 0
        bars.append(Bar(timestamp=t_ms[i], open=float(o), high=float(h), low=float(l), close=float(c), volume=vol))
    return bars


def bars_to_frame(bars: Sequence[Bar]) -> pd.DataFrame:
    """OHLCV DataFrame indexed by UTC bar time."""
    idx = pd.to_datetime([int(b.timestamp) for b in bars], unit="ms", utc=True)
    return pd.DataFrame(
        {
            "open": [float(b.open) for b in bars],
            "high": [float(b.high) for b in bars],
            "low": [float(b.low) for b in bars],
            "close": [float(b.close) for b in bars],
            "volume": [float(b.volume) for b in bars],
        },
        index=idx,
    )


@dataclass
class MarketFeed:
    """
    Preloaded bar series for deterministic replay.
    """

    symbol: str
    bars: List[Bar]
    # Timestamps (epoch ms) kept alongside for bisect lookups.
    _t_ms: List[int] = field(default_factory=list, repr=False)

    def __post_init__(self):
        self.bars = list(self.bars)
        self._t_ms = [int(b.timestamp) for b in self.bars]

    @classmethod
    def from_frame(cls, *, symbol: str, df: pd.DataFrame) -> "MarketFeed":
        bars = bars_from_frame(df)
        validate_bars(bars)
        logger.debug("feed %s: %d bars from frame", symbol, len(bars))
        return cls(symbol=symbol, bars=bars)

    def __len__(self) -> int:
        return len(self.bars)

    def prefix(self, end_index: int) -> List[Bar]:
        """Bars [0, end_index] inclusive: what is visible with the cursor at end_index."""
        if end_index < 0:
            return []
        return self.bars[: end_index + 1]

    def index_for_time(self, t_ms: int) -> Optional[int]:
        """Index of the last bar at or before `t_ms`; None if every bar is later."""
        i = bisect.bisect_right(self._t_ms, int(t_ms)) - 1
        return i if i >= 0 else None

    def range_indices(self, *, start_ms: int, end_ms_exclusive: int) -> tuple[int, int]:
        """(start_idx, end_idx) for bars whose timestamps are in [start_ms, end_ms_exclusive)."""
        i0 = bisect.bisect_left(self._t_ms, int(start_ms))
        i1 = bisect.bisect_left(self._t_ms, int(end_ms_exclusive))
        return (i0, max(i0, i1))

    def aggregated(self, target_timeframe: Union[int, str], *, end_index: Optional[int] = None) -> List[Bar]:
        src = self.bars if end_index is None else self.prefix(end_index)
        return aggregate_bars(src, target_timeframe)

    def describe(self) -> Dict[str, object]:
        if not self.bars:
            return {"symbol": self.symbol, "n_bars": 0}
        first = self.bars[0].ts.astimezone(timezone.utc)
        last = self.bars[-1].ts.astimezone(timezone.utc)
        return {
            "symbol": self.symbol,
            "n_bars": len(self.bars),
            "start": first.isoformat().replace("+00:00", "Z"),
            "end": last.isoformat().replace("+00:00", "Z"),
        }
