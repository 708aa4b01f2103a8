"""
Timer scheduling for replay playback.

The replay controller never touches real timers directly. It asks a Scheduler
for a one-shot callback and holds the returned CancelToken; cancelling the token
guarantees the callback will not run. Two implementations:

- ThreadingScheduler: wall-clock timers (threading.Timer).
- FakeScheduler: virtual time advanced explicitly, for deterministic tests and
  headless stepping.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol

logger = logging.getLogger(__name__)


class CancelToken:
    """
    Handle for one scheduled callback. `cancel()` is idempotent and thread-safe.
    """

    __slots__ = ("_lock", "_cancelled", "_fired", "_on_cancel")

    def __init__(self, on_cancel: Optional[Callable[[], None]] = None):
        self._lock = threading.Lock()
        self._cancelled = False
        self._fired = False
        self._on_cancel = on_cancel

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def active(self) -> bool:
        return not (self._cancelled or self._fired)

    def cancel(self) -> bool:
        """Returns True if this call prevented the callback from running."""
        with self._lock:
            if self._cancelled or self._fired:
                return False
            self._cancelled = True
            hook = self._on_cancel
        if hook is not None:
            hook()
        return True

    def claim(self) -> bool:
        """Mark as fired. False means the token was cancelled first and the callback must not run."""
        with self._lock:
            if self._cancelled or self._fired:
                return False
            self._fired = True
            return True


class Scheduler(Protocol):
    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> CancelToken: ...


class ThreadingScheduler:
    """Wall-clock scheduler backed by daemon threading.Timer objects."""

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> CancelToken:
        timer_box: List[threading.Timer] = []
        token = CancelToken(on_cancel=lambda: timer_box[0].cancel() if timer_box else None)

        def _run() -> None:
            if token.claim():
                callback()

        t = threading.Timer(max(0.0, float(delay_ms)) / 1000.0, _run)
        t.daemon = True
        timer_box.append(t)
        t.start()
        return token


@dataclass(order=True)
class _Pending:
    due_ms: float
    seq: int
    token: CancelToken = field(compare=False)
    callback: Callable[[], None] = field(compare=False)


class FakeScheduler:
    """
    Virtual-time scheduler. Nothing runs until `advance()` / `run_next()` is called;
    callbacks run synchronously in due-time order (ties in scheduling order).
    """

    def __init__(self, start_ms: float = 0.0):
        self.now_ms = float(start_ms)
        self._queue: List[_Pending] = []
        self._seq = itertools.count()

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> CancelToken:
        token = CancelToken()
        heapq.heappush(
            self._queue,
            _Pending(due_ms=self.now_ms + max(0.0, float(delay_ms)), seq=next(self._seq), token=token, callback=callback),
        )
        return token

    @property
    def pending(self) -> int:
        return sum(1 for p in self._queue if p.token.active)

    def next_due(self) -> Optional[float]:
        self._drop_cancelled()
        return self._queue[0].due_ms if self._queue else None

    def _drop_cancelled(self) -> None:
        while self._queue and not self._queue[0].token.active:
            heapq.heappop(self._queue)

    def run_next(self) -> bool:
        """Jump to the next live callback and run it. False when nothing is pending."""
        self._drop_cancelled()
        if not self._queue:
            return False
        item = heapq.heappop(self._queue)
        self.now_ms = max(self.now_ms, item.due_ms)
        if item.token.claim():
            item.callback()
        return True

    def advance(self, delta_ms: float) -> int:
        """Advance virtual time by `delta_ms`, running every callback that comes due. Returns the count run."""
        target = self.now_ms + float(delta_ms)
        ran = 0
        while True:
            self._drop_cancelled()
            if not self._queue or self._queue[0].due_ms > target:
                break
            item = heapq.heappop(self._queue)
            self.now_ms = item.due_ms
            if item.token.claim():
                item.callback()
                ran += 1
        self.now_ms = target
        return ran

    def run_all(self, max_callbacks: int = 100_000) -> int:
        ran = 0
        while ran < max_callbacks and self.run_next():
            ran += 1
        if ran >= max_callbacks:
            logger.warning("FakeScheduler.run_all stopped after %d callbacks", ran)
        return ran


