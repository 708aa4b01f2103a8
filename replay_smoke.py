#!/usr/bin/env python
"""
Smoke test for the replay (practice-field) engine.

This does NOT start any UI. It:
- Loads 1-minute OHLCV bars from a CSV (or builds a seeded random walk)
- Creates a replay controller on virtual time (FakeScheduler)
- Opens one risk-sized paper position
- Plays to the decision point, answers it, plays out the rest
- Prints account stats and event counts
"""

from __future__ import annotations

import argparse
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from replay.broker import PaperTradingAccount, calculate_position_size
from replay.clock import FakeScheduler
from replay.market import bars_from_frame
from replay.session import ReplayController, ReplaySessionConfig
from replay.types import Bar, DecisionPoint, Scenario


def _random_walk_bars(n: int, *, seed: int, start_price: float = 100.0) -> List[Bar]:
    rng = np.random.default_rng(seed)
    t0 = datetime(2025, 1, 2, 14, 30, tzinfo=timezone.utc)
    closes = start_price + np.cumsum(rng.normal(0.0, 0.15, size=n))
    bars: List[Bar] = []
    prev = float(closes[0])
    for i, c in enumerate(closes):
        c = float(c)
        wick = float(abs(rng.normal(0.0, 0.05)))
        bars.append(
            Bar(
                timestamp=int((t0 + timedelta(minutes=i)).timestamp() * 1000),
                open=prev,
                high=max(prev, c) + wick,
                low=min(prev, c) - wick,
                close=c,
                volume=float(rng.integers(500, 5_000)),
            )
        )
        prev = c
    return bars


def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Headless replay smoke run")
    ap.add_argument("--csv", help="OHLCV CSV with timestamp (epoch ms) or ts column")
    ap.add_argument("--symbol", default="SPY")
    ap.add_argument("--bars", type=int, default=120)
    ap.add_argument("--seed", type=int, default=1)
    ap.add_argument("--decision-ratio", type=float, default=0.6)
    ap.add_argument("-v", "--verbose", action="store_true")
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    if args.csv:
        bars = bars_from_frame(pd.read_csv(args.csv))
    else:
        bars = _random_walk_bars(args.bars, seed=args.seed)
    if len(bars) < 3:
        print("Need at least 3 bars.")
        return 2

    decision_idx = int(len(bars) * args.decision_ratio)
    later = float(bars[-1].close)
    correct = "long" if later > float(bars[decision_idx].close) else "short"
    scenario = Scenario(
        symbol=args.symbol.upper(),
        bars=bars,
        decision_point=DecisionPoint(correct_action=correct, index=decision_idx),
    )

    sched = FakeScheduler()
    account = PaperTradingAccount(clock=lambda: int(sched.now_ms))
    ctl = ReplayController.create(
        scenario,
        cfg=ReplaySessionConfig(start_index=min(20, len(bars) - 1)),
        scheduler=sched,
        account=account,
    )
    print(f"Created session: {ctl.session_id} symbol={scenario.symbol} bars={len(bars)} decision={ctl.decision_index}")

    with ctl:
        entry = ctl.current_price()
        stop = entry * 0.995
        size = calculate_position_size(account.account.balance, 1.0, entry, stop)
        res = account.open_position(
            symbol=scenario.symbol,
            side="long",
            quantity=max(1, size.shares),
            price=entry,
            stop_loss=stop,
            take_profit=entry * 1.01,
        )
        print(f"Opened: ok={res.ok} shares={max(1, size.shares)} entry={entry:.2f} stop={stop:.2f}")

        ctl.play()
        ticks = sched.run_all()
        print(f"Ticks to decision: {ticks} state={ctl.state} index={ctl.current_index}")

        answer = ctl.submit_decision("long")
        print(f"Decision long: correct={answer.evaluation.is_correct} (expected {correct})")

        ctl.play()
        sched.run_all()
        account.close_all({scenario.symbol: ctl.current_price()})
        print(f"Final state: {ctl.state} index={ctl.current_index}")

    st = account.stats()
    print(
        f"Trades={st.total_trades} pnl={st.total_pnl:.2f} win_rate={st.win_rate:.1f}% "
        f"balance={account.account.balance:.2f}"
    )
    print(f"Events: {ctl.logger.counts()}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
