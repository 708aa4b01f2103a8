from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

# Event types fanned out to rendering / UI subscribers.
BARS_CHANGED = "bars_changed"
INDICATORS_CHANGED = "indicators_changed"
STATE_CHANGED = "state_changed"


def _iso_z(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    return dt.isoformat().replace("+00:00", "Z")


def iso_from_ms(t_ms: int) -> str:
    return _iso_z(datetime.fromtimestamp(int(t_ms) / 1000.0, tz=timezone.utc))


@dataclass(frozen=True)
class ReplayEvent:
    event_id: int
    session_id: str
    event_type: str
    bar_index: int
    ts_market: Optional[int]  # epoch ms of the bar under the cursor
    payload: Dict[str, Any]

    @property
    def market_time(self) -> Optional[str]:
        return None if self.ts_market is None else iso_from_ms(self.ts_market)


Subscriber = Callable[[ReplayEvent], None]


@dataclass
class EventLogger:
    """
    Append-only, in-memory replay event log for one session.

    Every emitted event is kept (ids are monotonic) and pushed to subscribers.
    View events (full bar prefix, indicator series) are kept in slim form only.
    Subscribers are outside the core: a failing subscriber is logged and skipped,
    it never breaks the replay.
    """

    session_id: str
    events: List[ReplayEvent] = field(default_factory=list)
    _subscribers: List[Subscriber] = field(default_factory=list, repr=False)

    def subscribe(self, fn: Subscriber) -> Callable[[], None]:
        """Register `fn`; returns an unsubscribe callable."""
        self._subscribers.append(fn)

        def _unsubscribe() -> None:
            try:
                self._subscribers.remove(fn)
            except ValueError:
                pass

        return _unsubscribe

    def emit(
        self,
        *,
        event_type: str,
        bar_index: int,
        payload: Dict[str, Any],
        ts_market: Optional[int] = None,
        log_payload: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Record one event and push it to subscribers. When `log_payload` is given
        the retained event carries it instead of `payload`; subscribers always get
        the full payload.
        """
        event_id = len(self.events) + 1
        ev = ReplayEvent(
            event_id=event_id,
            session_id=self.session_id,
            event_type=event_type,
            bar_index=int(bar_index),
            ts_market=ts_market,
            payload=payload,
        )
        self.events.append(ev if log_payload is None else replace(ev, payload=log_payload))
        logger.debug("replay %s #%d %s idx=%d", self.session_id, event_id, event_type, bar_index)
        for fn in list(self._subscribers):
            try:
                fn(ev)
            except Exception:
                logger.exception("replay subscriber failed on %s (session %s)", event_type, self.session_id)
        return event_id

    def of_type(self, event_type: str) -> List[ReplayEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def counts(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for e in self.events:
            out[e.event_type] = out.get(e.event_type, 0) + 1
        return out
