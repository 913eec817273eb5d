"""
Per-workload phase memory, used only for observability.

Decisions never read from here; the reconciler always re-derives the phase
from the cluster. The tracker exists so that each phase change is logged
and counted exactly once, and so that the time spent in a phase can be
observed when the workload leaves it. It also gives the periodic sweep the
set of keys that were in flight, so a pod whose watch event was missed is
still revisited.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from kube_cache.shared.models import WorkloadPhase
from kube_cache.telemetry.metrics import PHASE_DURATION, PHASE_TRANSITIONS, TRACKED_WORKLOADS

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    phase: WorkloadPhase
    entered_at: datetime
    first_seen: datetime


class PhaseTracker:
    def __init__(self) -> None:
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def observe(self, key: str, phase: WorkloadPhase, now: datetime) -> bool:
        """
        Note that `key` is in `phase`. Returns True if this is a transition
        (first sighting or a different phase than last time).
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.phase == phase:
                return False
            previous = entry.phase if entry is not None else None
            if entry is not None:
                PHASE_DURATION.labels(phase=entry.phase.value).observe(
                    max(0.0, (now - entry.entered_at).total_seconds())
                )
                entry.phase = phase
                entry.entered_at = now
            else:
                self._entries[key] = _Entry(phase=phase, entered_at=now, first_seen=now)
            TRACKED_WORKLOADS.set(len(self._entries))

        PHASE_TRANSITIONS.labels(phase=phase.value).inc()
        logger.info(
            "%s: %s -> %s", key, previous.value if previous else "-", phase.value
        )
        return True

    def phase_of(self, key: str) -> Optional[WorkloadPhase]:
        with self._lock:
            entry = self._entries.get(key)
            return entry.phase if entry else None

    def first_seen(self, key: str) -> Optional[datetime]:
        with self._lock:
            entry = self._entries.get(key)
            return entry.first_seen if entry else None

    def forget(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)
            TRACKED_WORKLOADS.set(len(self._entries))

    def tracked_keys(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
