"""
Replay (practice-field) engine.

Design goals:
- Deterministic bar-by-bar replay of a fixed scenario
- Injected scheduler so playback can be driven by virtual time
- Append-only, in-memory event log per session
- Paper account whose math is a set of pure functions

This package is intentionally headless: it exposes pure-Python session objects
that a chart or UI layer can wrap. The controller lives in `replay.session`.
"""

from replay.broker import AccountConfig, PaperTradingAccount, calculate_position_size
from replay.clock import CancelToken, FakeScheduler, ThreadingScheduler
from replay.scoring import PracticeScorecard, evaluate
from replay.stats import calculate_account_stats
from replay.types import (
    Bar,
    DecisionPoint,
    KeyLevel,
    PracticeError,
    Scenario,
)

__all__ = [
    "PaperTradingAccount",
    "AccountConfig",
    "calculate_position_size",
    "calculate_account_stats",
    "PracticeScorecard",
    "evaluate",
    "CancelToken",
    "FakeScheduler",
    "ThreadingScheduler",
    "Bar",
    "DecisionPoint",
    "KeyLevel",
    "PracticeError",
    "Scenario",
]
