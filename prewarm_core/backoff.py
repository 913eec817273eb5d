"""
prewarm_core/backoff.py
───────────────────────
Retry policy for delegation attempts.

The curve
──────────
  delay(attempt) = min(cap, base × 2^(attempt − 1))

  attempt is the number of the attempt that just FAILED (1-based), so with
  base=10s, cap=300s:
    attempt 1 failed → wait 10s before attempt 2
    attempt 2 failed → wait 20s before attempt 3
    attempt 6 failed → wait 300s (capped)

Why the delay is anchored on the job, not on controller memory
─────────────────────────────────────────────────────────────────
The remaining wait is computed from the failed job's own finish time
(status condition lastTransitionTime). A controller that restarts halfway
through a backoff window recomputes exactly the same remaining wait, so
restarts neither skip nor restart the backoff. The reconciler copies that
time to the pod, so the anchor survives the job being garbage-collected.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from kube_cache.shared.config import ControllerSettings

BACKOFF_FACTOR: float = 2.0
"""Multiplier applied per failed attempt."""


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt ceiling plus backoff curve. Built from ControllerSettings."""

    max_attempts: int = 3
    base_s: float = 10.0
    cap_s: float = 300.0

    @classmethod
    def from_settings(cls, settings: "ControllerSettings") -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_s=settings.backoff_base_s,
            cap_s=settings.backoff_cap_s,
        )

    def delay_after(self, failed_attempt: int) -> float:
        """Seconds to wait after `failed_attempt` failed, before the next one."""
        return backoff_delay(failed_attempt, self.base_s, self.cap_s)

    def exhausted(self, failed_attempt: int) -> bool:
        """True once `failed_attempt` was the last attempt allowed."""
        return failed_attempt >= self.max_attempts

    def remaining(
        self, failed_attempt: int, finished_at: Optional[datetime], now: datetime
    ) -> float:
        """
        Seconds still to wait before the next attempt may be created.

        A failed job with no recorded finish time has no anchor; the next
        attempt is not delayed rather than blocked forever.
        """
        if finished_at is None:
            return 0.0
        elapsed = (now - finished_at).total_seconds()
        return max(0.0, self.delay_after(failed_attempt) - elapsed)


def backoff_delay(attempt: int, base_s: float, cap_s: float) -> float:
    """
    Exponential backoff delay for a 1-based attempt number.

    Args:
        attempt: The attempt that failed (≥ 1). Values < 1 are clamped to 1.
        base_s:  Delay after the first failure.
        cap_s:   Maximum delay.

    Returns:
        min(cap_s, base_s × 2^(attempt − 1))
    """
    attempt = max(1, attempt)
    # Exponent is bounded so huge attempt counts cannot overflow the float.
    exponent = min(attempt - 1, 62)
    return min(cap_s, base_s * (BACKOFF_FACTOR ** exponent))
