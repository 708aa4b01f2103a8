from __future__ import annotations

import math
from typing import Sequence

from replay.types import DEFAULT_STARTING_BALANCE, AccountStats, Trade


def calculate_account_stats(trades: Sequence[Trade], starting_balance: float = DEFAULT_STARTING_BALANCE) -> AccountStats:
    """
    Performance summary recomputed from the trade log.

    - profit_factor: gross gains / |gross losses|; inf when there are gains and
      no losses, 0 when there are neither.
    - average_loss is reported as a positive magnitude.
    - max_drawdown: largest peak-to-trough decline (%) of the equity curve that
      starts at `starting_balance` and applies trades in close-time order.
    - current_streak / best_streak count consecutive winning trades; any
      non-winning trade resets the run.
    """
    if not trades:
        return AccountStats()

    ordered = sorted(trades, key=lambda t: t.closed_at)  # stable for equal close times
    pnls = [float(t.realized_pnl) for t in ordered]

    wins = [p for p in pnls if p > 0]
    losses = [p for p in pnls if p < 0]
    gross_win = sum(wins)
    gross_loss = abs(sum(losses))

    if gross_loss > 0:
        profit_factor = gross_win / gross_loss
    elif gross_win > 0:
        profit_factor = math.inf
    else:
        profit_factor = 0.0

    rr = [float(t.risk_reward_ratio) for t in ordered if t.risk_reward_ratio > 0]

    peak = float(starting_balance)
    running = float(starting_balance)
    max_dd = 0.0
    for p in pnls:
        running += p
        if running > peak:
            peak = running
        if peak > 0:
            max_dd = max(max_dd, (peak - running) / peak * 100.0)

    best = 0
    run = 0
    for p in pnls:
        if p > 0:
            run += 1
            best = max(best, run)
        else:
            run = 0

    return AccountStats(
        total_trades=len(pnls),
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=len(wins) / len(pnls) * 100.0,
        total_pnl=sum(pnls),
        average_win=(gross_win / len(wins)) if wins else 0.0,
        average_loss=(gross_loss / len(losses)) if losses else 0.0,
        largest_win=max(wins) if wins else 0.0,
        largest_loss=min(losses) if losses else 0.0,
        profit_factor=profit_factor,
        average_rr=(sum(rr) / len(rr)) if rr else 0.0,
        average_holding_time_ms=sum(float(t.holding_time_ms) for t in ordered) / len(ordered),
        max_drawdown=max_dd,
        current_streak=run,
        best_streak=best,
    )
