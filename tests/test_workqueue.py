"""
tests/test_workqueue.py
───────────────────────
WorkQueue and KeyedMutex tests. Delays are driven by a manual monotonic
clock and zero-timeout gets.

Test groups:
    Group 1 — Dedup and single-flight
    Group 2 — Delayed and rate-limited adds
    Group 3 — KeyedMutex
"""

from __future__ import annotations

import threading
import time

from kube_cache.control_plane.workqueue import KeyedMutex, WorkQueue


class _Monotonic:
    def __init__(self) -> None:
        self.t = 1000.0

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


def _queue():
    clock = _Monotonic()
    return WorkQueue(rate_limit_base_s=0.5, rate_limit_cap_s=4.0, clock=clock), clock


# ─────────────────────────────────────────────────────────────────────────────
# Group 1 — Dedup and single-flight
# ─────────────────────────────────────────────────────────────────────────────

class TestSingleFlight:

    def test_duplicate_adds_collapse(self):
        q, _ = _queue()
        q.add("ml/a")
        q.add("ml/a")
        q.add("ml/b")
        assert len(q) == 2

    def test_fifo_order(self):
        q, _ = _queue()
        for key in ("ml/a", "ml/b", "ml/c"):
            q.add(key)
        assert [q.get(0), q.get(0), q.get(0)] == ["ml/a", "ml/b", "ml/c"]

    def test_key_in_flight_is_not_handed_out_twice(self):
        q, _ = _queue()
        q.add("ml/a")
        assert q.get(0) == "ml/a"

        q.add("ml/a")
        assert len(q) == 0
        assert q.get(0) is None

        q.done("ml/a")
        assert q.get(0) == "ml/a"

    def test_done_without_readd_does_not_requeue(self):
        q, _ = _queue()
        q.add("ml/a")
        q.done(q.get(0))
        assert q.get(0) is None

    def test_empty_get_times_out(self):
        q, _ = _queue()
        assert q.get(0) is None

    def test_shutdown_releases_blocked_getter(self):
        q = WorkQueue()
        got = []
        t = threading.Thread(target=lambda: got.append(q.get()))
        t.start()
        time.sleep(0.05)
        q.shutdown()
        t.join(timeout=2)
        assert not t.is_alive()
        assert got == [None]

    def test_adds_after_shutdown_are_dropped(self):
        q, _ = _queue()
        q.shutdown()
        q.add("ml/a")
        assert len(q) == 0


# ─────────────────────────────────────────────────────────────────────────────
# Group 2 — Delayed and rate-limited adds
# ─────────────────────────────────────────────────────────────────────────────

class TestDelayedAdds:

    def test_add_after_waits_for_delay(self):
        q, clock = _queue()
        q.add_after("ml/a", 5.0)
        assert q.get(0) is None
        clock.advance(4.0)
        assert q.get(0) is None
        clock.advance(1.0)
        assert q.get(0) == "ml/a"

    def test_zero_delay_is_immediate(self):
        q, _ = _queue()
        q.add_after("ml/a", 0)
        assert q.get(0) == "ml/a"

    def test_earliest_delay_wins(self):
        q, clock = _queue()
        q.add_after("ml/a", 10.0)
        q.add_after("ml/a", 3.0)
        assert q.pending_delayed() == 1

        clock.advance(3.0)
        assert q.get(0) == "ml/a"
        q.done("ml/a")

        clock.advance(10.0)
        assert q.get(0) is None

    def test_delayed_add_during_processing_is_deferred(self):
        q, clock = _queue()
        q.add("ml/a")
        assert q.get(0) == "ml/a"
        q.add_after("ml/a", 1.0)
        clock.advance(1.0)
        assert q.get(0) is None
        q.done("ml/a")
        assert q.get(0) == "ml/a"

    def test_rate_limit_doubles_and_caps(self):
        q, _ = _queue()
        delays = [q.add_rate_limited("ml/a") for _ in range(5)]
        assert delays == [0.5, 1.0, 2.0, 4.0, 4.0]
        assert q.num_requeues("ml/a") == 5

    def test_forget_resets_backoff(self):
        q, _ = _queue()
        q.add_rate_limited("ml/a")
        q.add_rate_limited("ml/a")
        q.forget("ml/a")
        assert q.num_requeues("ml/a") == 0
        assert q.add_rate_limited("ml/a") == 0.5

    def test_rate_limits_are_per_key(self):
        q, _ = _queue()
        q.add_rate_limited("ml/a")
        q.add_rate_limited("ml/a")
        assert q.add_rate_limited("ml/b") == 0.5


# ─────────────────────────────────────────────────────────────────────────────
# Group 3 — KeyedMutex
# ─────────────────────────────────────────────────────────────────────────────

class TestKeyedMutex:

    def test_same_key_is_serialised(self):
        mutex = KeyedMutex()
        active = []
        overlaps = []
        guard = threading.Lock()

        def work() -> None:
            with mutex.hold("ml/a"):
                with guard:
                    active.append(1)
                    if len(active) > 1:
                        overlaps.append(len(active))
                time.sleep(0.01)
                with guard:
                    active.pop()

        threads = [threading.Thread(target=work) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert overlaps == []

    def test_different_keys_do_not_block(self):
        mutex = KeyedMutex()
        with mutex.hold("ml/a"):
            done = threading.Event()

            def other() -> None:
                with mutex.hold("ml/b"):
                    done.set()

            t = threading.Thread(target=other)
            t.start()
            assert done.wait(timeout=2)
            t.join()

    def test_locks_are_dropped_when_idle(self):
        mutex = KeyedMutex()
        with mutex.hold("ml/a"):
            assert len(mutex) == 1
        assert len(mutex) == 0
