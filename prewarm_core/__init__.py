"""
prewarm_core — pure delegation state machine.

Public API:
    derive_phase   — (pod, jobs, policy, now) → PhaseState variant
    RetryPolicy    — attempt ceiling + exponential backoff
    backoff_delay  — the backoff curve on its own

Usage:
    from prewarm_core import RetryPolicy, derive_phase

    state = derive_phase(workload, jobs, RetryPolicy(max_attempts=3), now)
    # → Detected / AwaitingJob / Releasing / Failed / ...

Nothing in this package performs I/O.
"""

from prewarm_core.backoff import RetryPolicy, backoff_delay
from prewarm_core.phases import (
    AwaitingJob,
    Delegating,
    Detected,
    Failed,
    Misplaced,
    PhaseState,
    Released,
    Releasing,
    RetryWaiting,
    Untracked,
    derive_phase,
    latest_job,
)

__all__ = [
    "RetryPolicy",
    "backoff_delay",
    "derive_phase",
    "latest_job",
    "PhaseState",
    "Untracked",
    "Released",
    "Failed",
    "Detected",
    "Misplaced",
    "AwaitingJob",
    "RetryWaiting",
    "Delegating",
    "Releasing",
]
