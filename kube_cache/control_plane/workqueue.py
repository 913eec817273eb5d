"""
kube_cache/control_plane/workqueue.py
─────────────────────────────────────
Single-flight work queue and per-key mutex.

WorkQueue follows the semantics of client-go's workqueue, which is what
every Kubernetes controller is built around:

  dirty set       → a key is queued at most once, however many events
                    arrive for it before a worker picks it up.
  processing set  → a key handed to a worker is not handed to another one
                    until done(key). An add() during processing marks it
                    dirty, and it is re-queued by done().
  delayed adds    → add_after(key, delay). Several pending delays for one
                    key collapse to the earliest.
  rate limiting   → add_rate_limited(key) waits base × 2^failures (capped)
                    and counts a failure; forget(key) resets the count.

Together these give the reconciler its single-flight guarantee: for one
workload there is at most one reconcile in progress, and events that arrive
meanwhile are coalesced into exactly one follow-up.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from typing import Callable, Deque, Dict, Iterator, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

RATE_LIMIT_BASE_S: float = 0.5
"""Delay of the first rate-limited requeue."""

RATE_LIMIT_CAP_S: float = 60.0
"""Longest rate-limited requeue delay."""


class WorkQueue:
    """Thread-safe dedup queue of workload keys."""

    def __init__(
        self,
        rate_limit_base_s: float = RATE_LIMIT_BASE_S,
        rate_limit_cap_s: float = RATE_LIMIT_CAP_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: Deque[str] = deque()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._delayed: List[Tuple[float, int, str]] = []
        self._ready_at: Dict[str, float] = {}
        self._seq = itertools.count()
        self._failures: Dict[str, int] = {}
        self._base = rate_limit_base_s
        self._cap = rate_limit_cap_s
        self._shutting_down = False

    # ── Plain adds ────────────────────────────────────────────────────────────

    def add(self, key: str) -> None:
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """
        Take the next key, blocking up to `timeout` seconds (forever if None).

        Returns None on timeout or once the queue is shut down. The caller
        must call done(key) for every key it receives.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key
                if self._shutting_down:
                    return None

                now = self._clock()
                wait = None if deadline is None else deadline - now
                if wait is not None and wait <= 0:
                    return None
                if self._delayed:
                    until_due = max(0.0, self._delayed[0][0] - now)
                    wait = until_due if wait is None else min(wait, until_due)
                self._cond.wait(wait)

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    # ── Delayed adds ──────────────────────────────────────────────────────────

    def add_after(self, key: str, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay
            current = self._ready_at.get(key)
            if current is not None and current <= ready_at:
                return
            self._ready_at[key] = ready_at
            heapq.heappush(self._delayed, (ready_at, next(self._seq), key))
            self._cond.notify()

    def _promote_due_locked(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            ready_at, _, key = heapq.heappop(self._delayed)
            if self._ready_at.get(key) != ready_at:
                continue  # superseded by an earlier add_after
            del self._ready_at[key]
            self._add_locked(key)

    # ── Rate limiting ─────────────────────────────────────────────────────────

    def add_rate_limited(self, key: str) -> float:
        """Requeue after this key's failure backoff; returns the delay used."""
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = min(self._cap, self._base * (2 ** min(failures, 32)))
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def pending_delayed(self) -> int:
        with self._cond:
            return len(self._ready_at)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)


class _Slot:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0


class KeyedMutex:
    """
    One lock per key, created on demand and dropped when no thread holds or
    waits for it.

        with mutex.hold("ns/pod"):
            ...
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._slots: Dict[str, _Slot] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            slot = self._slots.get(key)
            if slot is None:
                slot = self._slots[key] = _Slot()
            slot.holders += 1
        slot.lock.acquire()
        try:
            yield
        finally:
            slot.lock.release()
            with self._guard:
                slot.holders -= 1
                if slot.holders == 0:
                    del self._slots[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._slots)
