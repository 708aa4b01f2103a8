from __future__ import annotations

import logging
import math
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from engine.indicators import compute_indicators
from replay.broker import PaperTradingAccount
from replay.clock import CancelToken, Scheduler, ThreadingScheduler
from replay.events import (
    BARS_CHANGED,
    INDICATORS_CHANGED,
    STATE_CHANGED,
    EventLogger,
    ReplayEvent,
)
from replay.market import MarketFeed, aggregate_bars, check_bars, timeframe_to_ms
from replay.scoring import PracticeScorecard, evaluate
from replay.types import (
    ActionResult,
    Bar,
    Evaluation,
    InvalidBarSequence,
    InvalidDecision,
    InvalidTransition,
    ReplaySnapshot,
    Scenario,
)

logger = logging.getLogger(__name__)

IDLE = "idle"
PLAYING = "playing"
PAUSED = "paused"
DECISION_PENDING = "decision_pending"
RESOLVED = "resolved"
COMPLETE = "complete"

MIN_SPEED = 0.25
MAX_SPEED = 10.0


def clamp_speed(speed: float) -> float:
    return max(MIN_SPEED, min(MAX_SPEED, float(speed)))


@dataclass(frozen=True)
class ReplaySessionConfig:
    start_index: int = 0
    base_interval_ms: float = 500.0  # tick period at 1x
    speed: float = 1.0
    # Used only when the scenario carries no decision point: decision at floor(n * ratio).
    decision_ratio: Optional[float] = None
    # Display timeframe for bars_changed / indicators_changed; None = scenario bars as-is.
    display_timeframe: Optional[Union[int, str]] = None
    fast_period: int = 9
    slow_period: int = 21
    session_tz: str = "UTC"
    emit_indicators: bool = True

    def __post_init__(self):
        if int(self.start_index) < 0:
            raise ValueError("start_index must be >= 0")
        if not float(self.base_interval_ms) > 0:
            raise ValueError("base_interval_ms must be > 0")
        if self.decision_ratio is not None and not (0.0 < float(self.decision_ratio) <= 1.0):
            raise ValueError("decision_ratio must be in (0, 1]")
        if self.display_timeframe is not None:
            timeframe_to_ms(self.display_timeframe)


class ReplayController:
    """
    Deterministic bar-by-bar replay over one scenario.

    States: idle -> playing <-> paused -> decision_pending -> resolved -> complete.

    - Playback advances exactly one bar per timer tick, whatever the speed.
    - Reaching the decision index (by tick, step or seek) force-pauses into
      decision_pending; playback stays blocked until a decision is submitted or
      the outcome is revealed.
    - The pending tick is held as a CancelToken. It is cancelled on pause, speed
      change, decision, reset, completion and close; a tick whose token is no
      longer current is ignored.

    Mutators return ActionResult values; rejected calls carry an
    InvalidTransition error and leave the session untouched.
    """

    def __init__(
        self,
        *,
        cfg: Optional[ReplaySessionConfig] = None,
        scheduler: Optional[Scheduler] = None,
        account: Optional[PaperTradingAccount] = None,
        scorecard: Optional[PracticeScorecard] = None,
        session_id: Optional[str] = None,
    ):
        self.cfg = cfg or ReplaySessionConfig()
        self.scheduler: Scheduler = scheduler or ThreadingScheduler()
        self.account = account
        self.scorecard = scorecard
        self.session_id = session_id or str(uuid.uuid4())
        self.logger = EventLogger(session_id=self.session_id)

        self._lock = threading.RLock()
        self._timer: Optional[CancelToken] = None
        self._closed = False

        self.scenario: Optional[Scenario] = None
        self.feed: Optional[MarketFeed] = None
        self._state = IDLE
        self._start_idx = 0
        self._idx = 0
        # Highest bar whose close has been applied to the account.
        self._marked_idx = 0
        self._decision_idx: Optional[int] = None
        self._evaluation: Optional[Evaluation] = None
        self._revealed = False
        self._speed = clamp_speed(self.cfg.speed)

    @classmethod
    def create(cls, scenario: Scenario, **kwargs) -> "ReplayController":
        """Build a controller and load `scenario`; raises InvalidBarSequence for bad bars."""
        ctl = cls(**kwargs)
        res = ctl.load(scenario)
        if not res.ok:
            raise res.error
        return ctl

    # -----------------------
    # Read side
    # -----------------------

    @property
    def state(self) -> str:
        return self._state

    @property
    def current_index(self) -> int:
        return self._idx

    @property
    def decision_index(self) -> Optional[int]:
        return self._decision_idx

    @property
    def speed(self) -> float:
        return self._speed

    @property
    def tick_interval_ms(self) -> float:
        return float(self.cfg.base_interval_ms) / self._speed

    @property
    def evaluation(self) -> Optional[Evaluation]:
        return self._evaluation

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None and self._timer.active

    def current_bar(self) -> Optional[Bar]:
        if self.feed is None or not self.feed.bars:
            return None
        return self.feed.bars[self._idx]

    def current_price(self) -> Optional[float]:
        bar = self.current_bar()
        return None if bar is None else float(bar.close)

    def visible_bars(self) -> List[Bar]:
        """Bars up to and including the cursor, in the display timeframe when one is configured."""
        if self.feed is None:
            return []
        prefix = self.feed.prefix(self._idx)
        if self.cfg.display_timeframe is not None:
            return aggregate_bars(prefix, self.cfg.display_timeframe)
        return prefix

    def indicators(self) -> Dict[str, List]:
        return compute_indicators(
            self.visible_bars(),
            fast=self.cfg.fast_period,
            slow=self.cfg.slow_period,
            session_tz=self.cfg.session_tz,
        )

    def snapshot(self) -> ReplaySnapshot:
        return ReplaySnapshot(
            state=self._state,
            current_index=self._idx,
            start_index=self._start_idx,
            decision_index=self._decision_idx,
            n_bars=len(self.feed) if self.feed is not None else 0,
            speed=self._speed,
            evaluation=self._evaluation,
            current_price=self.current_price(),
        )

    def subscribe(self, fn: Callable[[ReplayEvent], None]) -> Callable[[], None]:
        return self.logger.subscribe(fn)

    # -----------------------
    # Lifecycle
    # -----------------------

    def load(self, scenario: Scenario) -> ActionResult:
        """
        Load a scenario, discarding any previous session state. The scenario is
        read-only to the controller.
        """
        with self._lock:
            if not scenario.bars:
                return self._reject(InvalidBarSequence("scenario has no bars", symbol=scenario.symbol))
            err = check_bars(scenario.bars)
            if err is not None:
                return self._reject(err)

            self._cancel_timer()
            self.scenario = scenario
            self.feed = MarketFeed(symbol=scenario.symbol, bars=list(scenario.bars))
            n = len(self.feed)

            start = int(self.cfg.start_index)
            if start > n - 1:
                logger.warning("start_index %d beyond last bar %d; clamping", start, n - 1)
                start = n - 1
            self._start_idx = start
            self._marked_idx = start
            self._decision_idx = self._resolve_decision_index(scenario, n)
            self._speed = clamp_speed(self.cfg.speed)
            self._closed = False

            self.logger.emit(
                event_type="session_start",
                bar_index=start,
                ts_market=int(self.feed.bars[start].timestamp),
                payload={
                    "symbol": scenario.symbol,
                    "scenario_id": scenario.scenario_id,
                    "n_bars": n,
                    "start_index": start,
                    "decision_index": self._decision_idx,
                    "chart_timeframe": scenario.chart_timeframe,
                },
            )
            logger.info(
                "replay %s loaded %s: %d bars, start=%d decision=%s",
                self.session_id,
                scenario.symbol,
                n,
                start,
                self._decision_idx,
            )
            self._enter_start()
            return self._ok()

    def _resolve_decision_index(self, scenario: Scenario, n: int) -> Optional[int]:
        dp = scenario.decision_point
        idx: Optional[int] = None
        if dp is not None and dp.index is not None:
            idx = int(dp.index)
        elif dp is not None and dp.time is not None:
            found = self.feed.index_for_time(int(dp.time))
            idx = self._start_idx if found is None else found
        elif self.cfg.decision_ratio is not None:
            idx = int(math.floor(n * float(self.cfg.decision_ratio)))
        if idx is None:
            return None
        return max(self._start_idx, min(idx, n - 1))

    def _enter_start(self) -> None:
        self._idx = self._start_idx
        self._evaluation = None
        self._revealed = False
        self._set_state(IDLE)
        self._publish_view()
        # A decision sitting on the start bar is due immediately.
        self._check_decision()

    def reset(self) -> ActionResult:
        """Back to idle at the start index from any state; clears the decision."""
        with self._lock:
            if self.feed is None or self._closed:
                return self._reject(InvalidTransition("no active scenario", action="reset"))
            self._cancel_timer()
            self.logger.emit(event_type="reset", bar_index=self._idx, payload={"from_state": self._state})
            logger.info("replay %s reset to index %d", self.session_id, self._start_idx)
            self._enter_start()
            return self._ok()

    def close(self) -> None:
        """Teardown: release the pending timer. Safe to call more than once."""
        with self._lock:
            self._cancel_timer()
            if self._closed:
                return
            self._closed = True
            if self.feed is not None:
                self.logger.emit(
                    event_type="session_end",
                    bar_index=self._idx,
                    payload={"state": self._state, "index": self._idx},
                )

    def __enter__(self) -> "ReplayController":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -----------------------
    # Playback
    # -----------------------

    def play(self) -> ActionResult:
        with self._lock:
            if self.feed is None or self._closed:
                return self._reject(InvalidTransition("no active scenario", action="play"))
            if self._state == PLAYING:
                return self._ok()
            if self._state == DECISION_PENDING:
                return self._reject(
                    InvalidTransition("submit a decision or reveal the outcome before resuming", action="play", state=self._state)
                )
            if self._state == COMPLETE:
                return self._reject(InvalidTransition("replay is complete", action="play", state=self._state))
            if self._idx >= len(self.feed) - 1:
                self._finish_if_done()
                return self._reject(InvalidTransition("already at the last bar", action="play", state=self._state))
            self._set_state(PLAYING)
            self._arm_timer()
            return self._ok()

    def pause(self) -> ActionResult:
        with self._lock:
            if self._state != PLAYING:
                return self._reject(InvalidTransition("not playing", action="pause", state=self._state))
            self._cancel_timer()
            self._set_state(PAUSED)
            return self._ok()

    def toggle(self) -> ActionResult:
        with self._lock:
            return self.pause() if self._state == PLAYING else self.play()

    def set_speed(self, speed: float) -> ActionResult:
        """Clamp to 0.25x-10x. While playing, the pending tick is replaced by one at the new interval."""
        with self._lock:
            new_speed = clamp_speed(speed)
            if new_speed != float(speed):
                logger.debug("speed %s clamped to %s", speed, new_speed)
            self._speed = new_speed
            self.logger.emit(event_type="speed_changed", bar_index=self._idx, payload={"speed": new_speed})
            if self._state == PLAYING:
                self._cancel_timer()
                self._arm_timer()
            return self._ok()

    def _arm_timer(self) -> None:
        self._cancel_timer()
        holder: List[CancelToken] = []

        def _fire() -> None:
            self._on_tick(holder[0])

        token = self.scheduler.call_later(self.tick_interval_ms, _fire)
        holder.append(token)
        self._timer = token
        logger.debug("replay %s tick armed in %.1fms", self.session_id, self.tick_interval_ms)

    def _cancel_timer(self) -> None:
        t = self._timer
        self._timer = None
        if t is not None:
            t.cancel()

    def _on_tick(self, token: CancelToken) -> None:
        with self._lock:
            if token is not self._timer:
                # Superseded by pause / reset / speed change.
                return
            self._timer = None
            if self._state != PLAYING:
                return
            self._advance_to(self._idx + 1)
            if self._check_decision():
                return
            if self._finish_if_done():
                return
            self._arm_timer()

    # -----------------------
    # Manual navigation
    # -----------------------

    def step_forward(self) -> ActionResult:
        with self._lock:
            if self.feed is None or self._closed:
                return self._reject(InvalidTransition("no active scenario", action="step_forward"))
            if self._state not in (IDLE, PAUSED, RESOLVED):
                return self._reject(InvalidTransition("step requires idle or paused", action="step_forward", state=self._state))
            if self._idx >= len(self.feed) - 1:
                self._finish_if_done()
                return self._reject(InvalidTransition("already at the last bar", action="step_forward", state=self._state))
            self._advance_to(self._idx + 1)
            if not self._check_decision() and not self._finish_if_done() and self._state == IDLE:
                self._set_state(PAUSED)
            return self._ok()

    def step_back(self) -> ActionResult:
        with self._lock:
            if self.feed is None or self._closed:
                return self._reject(InvalidTransition("no active scenario", action="step_back"))
            if self._state not in (IDLE, PAUSED):
                return self._reject(InvalidTransition("step requires idle or paused", action="step_back", state=self._state))
            if self._idx <= self._start_idx:
                return self._reject(InvalidTransition("already at the start index", action="step_back", state=self._state))
            self._move_back_to(self._idx - 1)
            return self._ok()

    def seek(self, index: int) -> ActionResult:
        """Jump to `index` (clamped to [start, last]). Landing at or past the decision index triggers it."""
        with self._lock:
            if self.feed is None or self._closed:
                return self._reject(InvalidTransition("no active scenario", action="seek"))
            if self._state not in (IDLE, PAUSED):
                return self._reject(InvalidTransition("seek requires idle or paused", action="seek", state=self._state))
            target = max(self._start_idx, min(int(index), len(self.feed) - 1))
            if target > self._idx:
                # Forward seeks stop at the decision bar rather than jumping past it.
                if self._decision_idx is not None and self._evaluation is None:
                    target = min(target, self._decision_idx)
                self._advance_to(target)
                if not self._check_decision() and self._state == IDLE:
                    self._set_state(PAUSED)
            elif target < self._idx:
                self._move_back_to(target)
            return self._ok()

    # -----------------------
    # Decision
    # -----------------------

    def submit_decision(self, decision: str) -> ActionResult:
        with self._lock:
            if self._closed:
                return self._reject(InvalidTransition("session is closed", action="submit_decision"))
            if self._state != DECISION_PENDING:
                return self._reject(
                    InvalidTransition("no decision is pending", action="submit_decision", state=self._state)
                )
            correct = self.scenario.decision_point.correct_action if self.scenario.decision_point else "wait"
            try:
                ev = evaluate(decision, correct)
            except InvalidDecision as e:
                return self._reject(e)
            self._evaluation = ev
            if self.scorecard is not None:
                self.scorecard.record(ev)
            self.logger.emit(
                event_type="decision_submitted",
                bar_index=self._idx,
                ts_market=self._ts_at(self._idx),
                payload={"decision": ev.decision, "correct_action": ev.correct_action, "is_correct": ev.is_correct},
            )
            logger.info("replay %s decision %s (correct=%s)", self.session_id, decision, ev.is_correct)
            self._set_state(RESOLVED)
            self._finish_if_done()
            return ActionResult(snapshot=self.snapshot(), evaluation=ev)

    def reveal_outcome(self) -> ActionResult:
        """Show the rest of the scenario: jump to the last bar and complete."""
        with self._lock:
            if self._closed:
                return self._reject(InvalidTransition("session is closed", action="reveal_outcome"))
            if self._state not in (DECISION_PENDING, RESOLVED):
                return self._reject(InvalidTransition("outcome not available yet", action="reveal_outcome", state=self._state))
            self._cancel_timer()
            self._revealed = True
            last = len(self.feed) - 1
            if self._idx < last:
                self._advance_to(last)
            self._set_state(COMPLETE)
            return self._ok()

    # -----------------------
    # Internals
    # -----------------------

    def _ts_at(self, idx: int) -> Optional[int]:
        if self.feed is None or not self.feed.bars:
            return None
        return int(self.feed.bars[idx].timestamp)

    def _advance_to(self, target: int) -> None:
        """
        Move the cursor forward one bar at a time. Each bar close is applied to the
        account once, the first time the cursor passes it; bars revisited after a
        rewind or reset are not marked again.
        """
        while self._idx < target:
            self._idx += 1
            if self._idx <= self._marked_idx:
                continue
            self._marked_idx = self._idx
            if self.account is not None:
                bar = self.feed.bars[self._idx]
                for t in self.account.mark_to_market(self.feed.symbol, float(bar.close)):
                    self.logger.emit(
                        event_type="position_exit",
                        bar_index=self._idx,
                        ts_market=int(bar.timestamp),
                        payload={
                            "position_id": t.position_id,
                            "reason": t.exit_reason,
                            "exit_price": t.exit_price,
                            "realized_pnl": t.realized_pnl,
                        },
                    )
        self._publish_view()

    def _move_back_to(self, target: int) -> None:
        # Rewinding only changes what is visible; the account is never marked backwards in time.
        self._idx = max(self._start_idx, target)
        self._publish_view()

    def _check_decision(self) -> bool:
        if (
            self._decision_idx is None
            or self._evaluation is not None
            or self._revealed
            or self._idx < self._decision_idx
        ):
            return False
        self._cancel_timer()
        if self._state != DECISION_PENDING:
            self.logger.emit(
                event_type="decision_reached",
                bar_index=self._idx,
                ts_market=self._ts_at(self._idx),
                payload={"decision_index": self._decision_idx},
            )
            logger.info("replay %s reached decision point at index %d", self.session_id, self._idx)
            self._set_state(DECISION_PENDING)
        return True

    def _finish_if_done(self) -> bool:
        if self.feed is None or self._idx < len(self.feed) - 1:
            return False
        if self._decision_idx is not None and self._evaluation is None and not self._revealed:
            return False
        self._cancel_timer()
        if self._state != COMPLETE:
            self._set_state(COMPLETE)
        return True

    def _set_state(self, new_state: str) -> None:
        old = self._state
        self._state = new_state
        if old != new_state:
            self.logger.emit(
                event_type=STATE_CHANGED,
                bar_index=self._idx,
                ts_market=self._ts_at(self._idx),
                payload={"from": old, "to": new_state},
            )
            if new_state == COMPLETE:
                logger.info("replay %s complete at index %d", self.session_id, self._idx)

    def _publish_view(self) -> None:
        if self.feed is None:
            return
        bars = self.visible_bars()
        self.logger.emit(
            event_type=BARS_CHANGED,
            bar_index=self._idx,
            ts_market=self._ts_at(self._idx),
            payload={"n_visible": len(bars), "bars": bars},
            log_payload={"n_visible": len(bars)},
        )
        if self.cfg.emit_indicators:
            self.logger.emit(
                event_type=INDICATORS_CHANGED,
                bar_index=self._idx,
                ts_market=self._ts_at(self._idx),
                payload=self.indicators(),
                log_payload={"n_visible": len(bars)},
            )

    def _ok(self) -> ActionResult:
        return ActionResult(snapshot=self.snapshot())

    def _reject(self, err) -> ActionResult:
        logger.warning("replay %s rejected: %s %s", self.session_id, err.code, err.details or "")
        return ActionResult(snapshot=self.snapshot(), error=err)

    def describe(self) -> Dict[str, Any]:
        snap = self.snapshot()
        return {
            "session_id": self.session_id,
            "symbol": self.feed.symbol if self.feed else None,
            "state": snap.state,
            "current_index": snap.current_index,
            "decision_index": snap.decision_index,
            "n_bars": snap.n_bars,
            "speed": snap.speed,
            "events": self.logger.counts(),
        }
