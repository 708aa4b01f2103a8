"""
Paper trading account.

The module-level functions are the pure account math: each takes the current
Account / Position and returns new values, never mutating its inputs.
`PaperTradingAccount` is the stateful owner built on top of them: one Account,
its open Positions and the append-only Trade log.

Accounting model (no leverage):
- Opening debits buying power by the notional (quantity * price); balance is
  only touched when a position is closed.
- buying_power == balance - sum(open notional) <= balance
- equity == balance + sum(open unrealized PnL)
- Exits are evaluated against the close price only; when stop and target both
  trigger on the same update, the stop wins.
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from replay.stats import calculate_account_stats
from replay.types import (
    DEFAULT_STARTING_BALANCE,
    SIDES,
    Account,
    AccountStats,
    CloseResult,
    ExitCheck,
    ExitReason,
    InsufficientBuyingPower,
    InvalidOrder,
    OrderResult,
    Position,
    PositionNotFound,
    PositionSize,
    Side,
    Trade,
)

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _side_dir(side: Side) -> int:
    return 1 if side == "long" else -1


@dataclass(frozen=True)
class AccountConfig:
    starting_balance: float = DEFAULT_STARTING_BALANCE

    def __post_init__(self):
        if not float(self.starting_balance) > 0:
            raise ValueError("starting_balance must be > 0")


@dataclass(frozen=True)
class OrderRequest:
    symbol: str
    side: Side
    quantity: int
    price: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None


def new_account(starting_balance: float = DEFAULT_STARTING_BALANCE) -> Account:
    b = float(starting_balance)
    return Account(balance=b, equity=b, buying_power=b, starting_balance=b)


def _check_order(req: OrderRequest) -> Optional[InvalidOrder]:
    if req.side not in SIDES:
        return InvalidOrder(f"unknown side {req.side!r}", side=req.side)
    if isinstance(req.quantity, bool) or not isinstance(req.quantity, int) or req.quantity <= 0:
        return InvalidOrder("quantity must be a positive integer", quantity=req.quantity)
    if not float(req.price) > 0:
        return InvalidOrder("price must be > 0", price=req.price)
    for name in ("stop_loss", "take_profit"):
        v = getattr(req, name)
        if v is not None and not float(v) > 0:
            return InvalidOrder(f"{name} must be > 0", **{name: v})
    return None


def open_position(account: Account, req: OrderRequest, *, now_ms: Optional[int] = None) -> OrderResult:
    """
    Open a position at `req.price`. All-or-nothing: on any error the returned
    account is the input account, unchanged.
    """
    err = _check_order(req)
    if err is not None:
        return OrderResult(account=account, error=err)

    notional = float(req.price) * int(req.quantity)
    if notional > account.buying_power:
        return OrderResult(
            account=account,
            error=InsufficientBuyingPower(
                "Insufficient buying power",
                required=notional,
                available=account.buying_power,
            ),
        )

    ts = _now_ms() if now_ms is None else int(now_ms)
    position = Position(
        id=str(uuid.uuid4()),
        symbol=req.symbol,
        side=req.side,
        quantity=int(req.quantity),
        entry_price=float(req.price),
        current_price=float(req.price),
        opened_at=ts,
        updated_at=ts,
        stop_loss=None if req.stop_loss is None else float(req.stop_loss),
        take_profit=None if req.take_profit is None else float(req.take_profit),
    )
    updated = replace(account, buying_power=account.buying_power - notional)
    return OrderResult(account=updated, position=position)


def position_pnl(position: Position, price: float) -> Tuple[float, float]:
    """(unrealized_pnl, unrealized_pnl_percent) at `price`."""
    cost = float(position.entry_price) * int(position.quantity)
    pnl = (float(price) - float(position.entry_price)) * int(position.quantity) * _side_dir(position.side)
    pct = (pnl / cost * 100.0) if cost else 0.0
    return pnl, pct


def update_position_price(position: Position, new_price: float, *, now_ms: Optional[int] = None) -> Position:
    pnl, pct = position_pnl(position, new_price)
    return replace(
        position,
        current_price=float(new_price),
        unrealized_pnl=pnl,
        unrealized_pnl_percent=pct,
        updated_at=_now_ms() if now_ms is None else int(now_ms),
    )


def check_exit_conditions(position: Position, price: float) -> ExitCheck:
    """
    Stop / target check against a single (close) price. Stop-loss is evaluated
    first, so it wins when both levels are crossed by the same update.
    """
    p = float(price)
    sl = position.stop_loss
    tp = position.take_profit
    if position.side == "long":
        if sl is not None and p <= sl:
            return ExitCheck(True, "stop_loss")
        if tp is not None and p >= tp:
            return ExitCheck(True, "take_profit")
    else:
        if sl is not None and p >= sl:
            return ExitCheck(True, "stop_loss")
        if tp is not None and p <= tp:
            return ExitCheck(True, "take_profit")
    return ExitCheck(False)


def risk_reward_ratio(entry_price: float, stop_loss: Optional[float], target: float) -> float:
    """|target - entry| / |entry - stop|; 0 when there is no stop or no risk."""
    if stop_loss is None:
        return 0.0
    risk = abs(float(entry_price) - float(stop_loss))
    if risk == 0:
        return 0.0
    return abs(float(target) - float(entry_price)) / risk


def close_position(
    account: Account,
    position: Position,
    exit_price: float,
    *,
    reason: ExitReason = "manual",
    now_ms: Optional[int] = None,
) -> CloseResult:
    """
    Realize PnL at `exit_price`. The entry notional goes back to buying power
    along with the realized PnL; balance moves by the realized PnL. Equity drops
    the position's last marked unrealized PnL and adds the realized amount.
    """
    if not float(exit_price) > 0:
        return CloseResult(account=account, error=InvalidOrder("exit price must be > 0", price=exit_price))

    ts = _now_ms() if now_ms is None else int(now_ms)
    notional = position.notional
    realized, realized_pct = position_pnl(position, exit_price)

    trade = Trade(
        id=str(uuid.uuid4()),
        position_id=position.id,
        symbol=position.symbol,
        side=position.side,
        quantity=int(position.quantity),
        entry_price=float(position.entry_price),
        exit_price=float(exit_price),
        realized_pnl=realized,
        realized_pnl_percent=realized_pct,
        risk_reward_ratio=risk_reward_ratio(position.entry_price, position.stop_loss, exit_price),
        holding_time_ms=max(0, ts - int(position.opened_at)),
        opened_at=int(position.opened_at),
        closed_at=ts,
        exit_reason=reason,
    )
    updated = replace(
        account,
        balance=account.balance + realized,
        buying_power=account.buying_power + notional + realized,
        equity=account.equity - float(position.unrealized_pnl) + realized,
    )
    return CloseResult(account=updated, trade=trade, returned_notional=notional)


def revalue_account(account: Account, positions: Sequence[Position]) -> Account:
    """Recompute equity from balance and the open positions' unrealized PnL."""
    return replace(account, equity=account.balance + sum(float(p.unrealized_pnl) for p in positions))


def calculate_position_size(
    balance: float,
    risk_percent: float,
    entry_price: float,
    stop_loss: float,
) -> PositionSize:
    """
    Shares such that a stop-out loses `risk_percent` of `balance`.
    A zero stop distance yields 0 shares instead of dividing by zero.
    """
    risk_amount = float(balance) * float(risk_percent) / 100.0
    per_share = abs(float(entry_price) - float(stop_loss))
    if per_share == 0:
        return PositionSize(shares=0, risk_amount=risk_amount, position_value=0.0)
    shares = int(math.floor(risk_amount / per_share))
    return PositionSize(shares=shares, risk_amount=risk_amount, position_value=shares * float(entry_price))


class PaperTradingAccount:
    """
    Stateful paper account: owns one Account, the open positions and the trade log.

    Price updates for one position are applied in call order; callers feed bar
    closes in bar order. Every operation either fully applies or leaves state as it was.
    """

    def __init__(self, config: Optional[AccountConfig] = None, *, clock: Optional[Callable[[], int]] = None):
        self.config = config or AccountConfig()
        self._clock = clock or _now_ms
        self._account = new_account(self.config.starting_balance)
        self._positions: Dict[str, Position] = {}  # insertion ordered
        self._trades: List[Trade] = []

    @property
    def account(self) -> Account:
        return self._account

    @property
    def positions(self) -> List[Position]:
        return list(self._positions.values())

    @property
    def trades(self) -> Tuple[Trade, ...]:
        return tuple(self._trades)

    def get_position(self, position_id: str) -> Optional[Position]:
        return self._positions.get(position_id)

    def open_position(
        self,
        *,
        symbol: str,
        side: Side,
        quantity: int,
        price: float,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
    ) -> OrderResult:
        req = OrderRequest(
            symbol=symbol,
            side=side,
            quantity=quantity,
            price=price,
            stop_loss=stop_loss,
            take_profit=take_profit,
        )
        res = open_position(self._account, req, now_ms=self._clock())
        if not res.ok:
            logger.warning("order rejected: %s %s x%s @ %s (%s)", side, symbol, quantity, price, res.error.code)
            return res
        self._positions[res.position.id] = res.position
        self._account = revalue_account(res.account, self.positions)
        logger.info("opened %s %s x%d @ %.4f", side, symbol, quantity, float(price))
        return OrderResult(account=self._account, position=res.position)

    def update_price(self, symbol: str, price: float) -> List[Position]:
        """Mark every open position in `symbol` to `price`. Returns the updated positions."""
        now = self._clock()
        updated: List[Position] = []
        for pid, pos in list(self._positions.items()):
            if pos.symbol != symbol:
                continue
            new_pos = update_position_price(pos, price, now_ms=now)
            self._positions[pid] = new_pos
            updated.append(new_pos)
        if updated:
            self._account = revalue_account(self._account, self.positions)
        return updated

    def close_position(self, position_id: str, exit_price: float, *, reason: ExitReason = "manual") -> CloseResult:
        pos = self._positions.get(position_id)
        if pos is None:
            return CloseResult(account=self._account, error=PositionNotFound("no open position", position_id=position_id))
        res = close_position(self._account, pos, exit_price, reason=reason, now_ms=self._clock())
        if not res.ok:
            return res
        del self._positions[position_id]
        self._trades.append(res.trade)
        self._account = revalue_account(res.account, self.positions)
        logger.info(
            "closed %s %s x%d @ %.4f pnl=%.2f (%s)",
            pos.side,
            pos.symbol,
            pos.quantity,
            float(exit_price),
            res.trade.realized_pnl,
            reason,
        )
        return CloseResult(account=self._account, trade=res.trade, returned_notional=res.returned_notional)

    def mark_to_market(self, symbol: str, price: float) -> List[Trade]:
        """
        Apply a new close price to `symbol`'s positions, then close any whose stop
        or target triggered at that price. Returns the trades closed by this update.
        """
        closed: List[Trade] = []
        for pos in self.update_price(symbol, price):
            check = check_exit_conditions(pos, price)
            if not check.should_exit:
                continue
            res = self.close_position(pos.id, price, reason=check.reason or "manual")
            if res.ok and res.trade is not None:
                closed.append(res.trade)
        return closed

    def close_all(self, price_by_symbol: Dict[str, float]) -> List[Trade]:
        closed: List[Trade] = []
        for pos in self.positions:
            px = price_by_symbol.get(pos.symbol)
            if px is None:
                continue
            res = self.close_position(pos.id, px)
            if res.ok and res.trade is not None:
                closed.append(res.trade)
        return closed

    def stats(self) -> AccountStats:
        return calculate_account_stats(self._trades, starting_balance=self.config.starting_balance)

    def reset(self) -> None:
        self._account = new_account(self.config.starting_balance)
        self._positions.clear()
        self._trades.clear()
