import threading
import unittest

from replay.clock import CancelToken, FakeScheduler, ThreadingScheduler
from replay.events import EventLogger


class CancelTokenTests(unittest.TestCase):
    def test_cancel_is_idempotent(self):
        calls = []
        tok = CancelToken(on_cancel=lambda: calls.append(1))
        self.assertTrue(tok.cancel())
        self.assertFalse(tok.cancel())
        self.assertEqual(calls, [1])
        self.assertFalse(tok.claim())
        self.assertFalse(tok.active)

    def test_claim_blocks_cancel(self):
        tok = CancelToken()
        self.assertTrue(tok.claim())
        self.assertFalse(tok.cancel())
        self.assertFalse(tok.cancelled)


class FakeSchedulerTests(unittest.TestCase):
    def test_runs_in_due_order(self):
        sched = FakeScheduler()
        seen = []
        sched.call_later(300, lambda: seen.append("c"))
        sched.call_later(100, lambda: seen.append("a"))
        sched.call_later(100, lambda: seen.append("b"))
        self.assertEqual(sched.next_due(), 100)
        self.assertEqual(sched.advance(200), 2)
        self.assertEqual(seen, ["a", "b"])
        self.assertEqual(sched.now_ms, 200)
        self.assertEqual(sched.run_all(), 1)
        self.assertEqual(seen, ["a", "b", "c"])
        self.assertEqual(sched.now_ms, 300)

    def test_cancelled_callbacks_never_run(self):
        sched = FakeScheduler()
        seen = []
        tok = sched.call_later(10, lambda: seen.append(1))
        tok.cancel()
        self.assertEqual(sched.pending, 0)
        self.assertEqual(sched.advance(100), 0)
        self.assertEqual(seen, [])
        self.assertIsNone(sched.next_due())

    def test_callbacks_can_reschedule(self):
        sched = FakeScheduler()
        seen = []

        def tick():
            seen.append(sched.now_ms)
            if len(seen) < 3:
                sched.call_later(50, tick)

        sched.call_later(50, tick)
        sched.advance(1_000)
        self.assertEqual(seen, [50, 100, 150])


class ThreadingSchedulerTests(unittest.TestCase):
    def test_fires_and_cancels(self):
        sched = ThreadingScheduler()
        fired = threading.Event()
        sched.call_later(1, fired.set)
        self.assertTrue(fired.wait(2.0))

        never = threading.Event()
        tok = sched.call_later(200, never.set)
        self.assertTrue(tok.cancel())
        self.assertFalse(never.wait(0.4))


class EventLoggerTests(unittest.TestCase):
    def test_ids_are_monotonic_and_subscribers_isolated(self):
        log = EventLogger(session_id="s1")
        got = []

        def bad(_ev):
            raise RuntimeError("x")

        log.subscribe(bad)
        log.subscribe(got.append)
        a = log.emit(event_type="state_changed", bar_index=0, payload={})
        b = log.emit(event_type="bars_changed", bar_index=1, payload={}, ts_market=0)
        self.assertEqual((a, b), (1, 2))
        self.assertEqual(len(got), 2)
        self.assertEqual(got[1].market_time, "1970-01-01T00:00:00Z")
        self.assertIsNone(got[0].market_time)
        self.assertEqual(log.counts(), {"state_changed": 1, "bars_changed": 1})


if __name__ == "__main__":
    unittest.main()
