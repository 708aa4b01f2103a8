from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Optional, Tuple


Side = Literal["long", "short"]
Action = Literal["long", "short", "wait"]
ExitReason = Literal["manual", "stop_loss", "take_profit"]

ACTIONS: Tuple[str, ...] = ("long", "short", "wait")
SIDES: Tuple[str, ...] = ("long", "short")

DEFAULT_STARTING_BALANCE = 25_000.0


class PracticeError(Exception):
    """Base class for error values returned by the practice core."""

    code = "practice_error"

    def __init__(self, message: str = "", **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        out = {"code": self.code, "message": self.message}
        if self.details:
            out.update(self.details)
        return out


class InvalidBarSequence(PracticeError, ValueError):
    code = "invalid_bar_sequence"


class InsufficientBuyingPower(PracticeError):
    code = "insufficient_buying_power"


class InvalidOrder(PracticeError):
    code = "invalid_order"


class PositionNotFound(PracticeError):
    code = "position_not_found"


class InvalidTransition(PracticeError):
    code = "invalid_transition"


class InvalidDecision(PracticeError, ValueError):
    code = "invalid_decision"


@dataclass(frozen=True)
class Bar:
    """
    One OHLCV bar. `timestamp` is epoch milliseconds (UTC).
    """

    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @property
    def ts(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp / 1000.0, tz=timezone.utc)

    @property
    def typical_price(self) -> float:
        return (float(self.high) + float(self.low) + float(self.close)) / 3.0


@dataclass(frozen=True)
class KeyLevel:
    type: str
    price: float
    strength: float  # 0-100
    label: str
    timeframe: Literal["daily", "intraday", "weekly"] = "intraday"


@dataclass(frozen=True)
class DecisionPoint:
    correct_action: Action
    index: Optional[int] = None
    time: Optional[int] = None  # epoch ms; used when index is absent
    context: Optional[str] = None


@dataclass(frozen=True)
class Scenario:
    """
    Read-only practice scenario. Owned by the caller; the core never mutates it.
    """

    symbol: str
    bars: Tuple[Bar, ...]
    key_levels: Tuple[KeyLevel, ...] = ()
    decision_point: Optional[DecisionPoint] = None
    chart_timeframe: str = "5m"
    scenario_id: Optional[str] = None
    difficulty: Optional[str] = None

    def __post_init__(self):
        # Callers commonly pass lists; freeze them so the scenario stays immutable.
        object.__setattr__(self, "bars", tuple(self.bars))
        object.__setattr__(self, "key_levels", tuple(self.key_levels))


@dataclass
class Position:
    id: str
    symbol: str
    side: Side
    quantity: int
    entry_price: float
    current_price: float
    opened_at: int
    updated_at: int
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    unrealized_pnl: float = 0.0
    unrealized_pnl_percent: float = 0.0

    @property
    def notional(self) -> float:
        return float(self.entry_price) * int(self.quantity)


@dataclass(frozen=True)
class Trade:
    id: str
    position_id: str
    symbol: str
    side: Side
    quantity: int
    entry_price: float
    exit_price: float
    realized_pnl: float
    realized_pnl_percent: float
    risk_reward_ratio: float
    holding_time_ms: int
    opened_at: int
    closed_at: int
    exit_reason: ExitReason = "manual"


@dataclass(frozen=True)
class Account:
    balance: float
    equity: float
    buying_power: float
    starting_balance: float = DEFAULT_STARTING_BALANCE


@dataclass(frozen=True)
class AccountStats:
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    profit_factor: float = 0.0
    average_rr: float = 0.0
    average_holding_time_ms: float = 0.0
    max_drawdown: float = 0.0
    current_streak: int = 0
    best_streak: int = 0


@dataclass(frozen=True)
class ExitCheck:
    should_exit: bool
    reason: Optional[ExitReason] = None


@dataclass(frozen=True)
class PositionSize:
    shares: int
    risk_amount: float
    position_value: float


@dataclass(frozen=True)
class OrderResult:
    account: Account
    position: Optional[Position] = None
    error: Optional[PracticeError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class CloseResult:
    account: Account
    trade: Optional[Trade] = None
    returned_notional: float = 0.0
    error: Optional[PracticeError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class Evaluation:
    is_correct: bool
    correct_action: Action
    decision: Action


@dataclass(frozen=True)
class ReplaySnapshot:
    state: str
    current_index: int
    start_index: int
    decision_index: Optional[int]
    n_bars: int
    speed: float
    evaluation: Optional[Evaluation] = None
    current_price: Optional[float] = None


@dataclass(frozen=True)
class ActionResult:
    snapshot: ReplaySnapshot
    error: Optional[PracticeError] = None
    evaluation: Optional[Evaluation] = None

    @property
    def ok(self) -> bool:
        return self.error is None
