"""
prewarm_core/phases.py
──────────────────────
The delegation state machine, as a pure function of observed cluster state.

    phase = derive_phase(observed_pod, observed_jobs, policy, now)

Why pure
─────────
The controller keeps no durable local storage. If it trusted an in-memory
phase, a restart (or a missed watch event) would leave it acting on stale
history. Instead, every reconcile re-reads the pod and its jobs and derives
the phase from scratch. Everything needed to do that lives in the cluster:

  gate present?          → pod.spec.schedulingGates
  terminal failure?      → failure annotation on the pod
  attempt number?        → attempt label on each job, and the attempt
                           annotation written on the pod before each create
  job outcome?           → job status conditions
  backoff anchor?        → failed job's condition transition time, copied to
                           the pod as the last-failure annotation

The pod copies matter once jobs are garbage-collected (ttlSecondsAfterFinished)
or deleted by hand: the attempt count and backoff anchor are still there,
so losing a failed job never resets the retry budget.

The result is a tagged variant: one frozen dataclass per state, carrying
exactly the data that state needs. Illegal combinations (e.g. "awaiting a
job" with no job) cannot be constructed.

Derivation order (first match wins)
────────────────────────────────────
  1. pod absent                          → Untracked
  2. gate absent                         → Released
  3. failure annotation present          → Failed(recorded=True)
  4. dataset annotation missing          → Failed("missing dataset annotation")
  5. node unknown                        → Detected(node=None)       (requeue)
  6. no job at or past the pod's recorded attempt
       nothing recorded                  → Detected(node)            (check cache)
       attempt N, outcome never seen     → Detected(node, attempt=N) (re-run N)
       attempt N failed                  → steps 10-12 with the pod's anchor
  7. latest job on another node          → Misplaced(job, node)
  8. latest job running                  → AwaitingJob(job)
  9. latest job succeeded                → Releasing("job-succeeded", job)
 10. latest job failed, ceiling reached  → Failed("attempts exhausted")
 11. latest job failed, backoff pending  → RetryWaiting(attempt, retry_in, job)
 12. latest job failed, backoff elapsed  → Delegating(node, attempt + 1)

"Latest" means highest attempt number. Older failed attempts are history.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import ClassVar, Optional, Sequence, Union

from kube_cache.shared.models import (
    DelegationJob,
    GatedWorkload,
    JobCompletion,
    WorkloadPhase,
)
from prewarm_core.backoff import RetryPolicy

MISSING_DATASET_REASON = "MissingDatasetAnnotation"
ATTEMPTS_EXHAUSTED_REASON = "DelegationAttemptsExhausted"


# ─────────────────────────────────────────────────────────────────────────────
# Variants
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Untracked:
    phase: ClassVar[WorkloadPhase] = WorkloadPhase.UNTRACKED


@dataclass(frozen=True)
class Released:
    phase: ClassVar[WorkloadPhase] = WorkloadPhase.RELEASED


@dataclass(frozen=True)
class Failed:
    """
    Terminal failure. recorded=False means the failure has been derived but
    not yet written to the pod; the reconciler persists it exactly then.
    """
    reason: str
    message: str = ""
    recorded: bool = False
    phase: ClassVar[WorkloadPhase] = WorkloadPhase.FAILED


@dataclass(frozen=True)
class Detected:
    """
    No job for the current attempt. node=None means placement is still
    indeterminate. attempt is the one to create on a cache miss: the pod's
    recorded attempt when that attempt's job vanished before its outcome was
    seen, so it is run again rather than counted twice.
    """
    node: Optional[str] = None
    attempt: int = 1
    phase: ClassVar[WorkloadPhase] = WorkloadPhase.DETECTED


@dataclass(frozen=True)
class Misplaced:
    """The latest job is pinned to a node the pod will not run on."""
    job: DelegationJob
    node: str
    phase: ClassVar[WorkloadPhase] = WorkloadPhase.DELEGATING


@dataclass(frozen=True)
class AwaitingJob:
    job: DelegationJob
    phase: ClassVar[WorkloadPhase] = WorkloadPhase.AWAITING_JOB


@dataclass(frozen=True)
class RetryWaiting:
    """
    Attempt `attempt` failed; the next one is due in retry_in seconds.
    job is None once the failed job has been garbage-collected.
    """
    attempt: int
    retry_in: float
    job: Optional[DelegationJob] = None
    phase: ClassVar[WorkloadPhase] = WorkloadPhase.AWAITING_JOB


@dataclass(frozen=True)
class Delegating:
    node: str
    attempt: int
    previous: Optional[DelegationJob] = None
    phase: ClassVar[WorkloadPhase] = WorkloadPhase.DELEGATING


@dataclass(frozen=True)
class Releasing:
    reason: str
    job: Optional[DelegationJob] = None
    phase: ClassVar[WorkloadPhase] = WorkloadPhase.RELEASING


PhaseState = Union[
    Untracked,
    Released,
    Failed,
    Detected,
    Misplaced,
    AwaitingJob,
    RetryWaiting,
    Delegating,
    Releasing,
]


# ─────────────────────────────────────────────────────────────────────────────
# Derivation
# ─────────────────────────────────────────────────────────────────────────────

def latest_job(jobs: Sequence[DelegationJob]) -> Optional[DelegationJob]:
    """Highest-attempt job. Ties (should not happen) resolve by name."""
    if not jobs:
        return None
    return max(jobs, key=lambda j: (j.attempt, j.name))


def _after_failure(
    node: str,
    attempt: int,
    failed_at: Optional[datetime],
    policy: RetryPolicy,
    now: datetime,
    job: Optional[DelegationJob] = None,
) -> PhaseState:
    """Next step once `attempt` is known to have failed at `failed_at`."""
    if policy.exhausted(attempt):
        what = f"delegation job {job.name}" if job is not None else "delegation"
        return Failed(
            reason=ATTEMPTS_EXHAUSTED_REASON,
            message=f"{what} failed on attempt {attempt} of {policy.max_attempts}",
        )
    retry_in = policy.remaining(attempt, failed_at, now)
    if retry_in > 0:
        return RetryWaiting(attempt=attempt, retry_in=retry_in, job=job)
    return Delegating(node=node, attempt=attempt + 1, previous=job)


def derive_phase(
    workload: Optional[GatedWorkload],
    jobs: Sequence[DelegationJob],
    policy: RetryPolicy,
    now: datetime,
) -> PhaseState:
    """
    Derive the current state of one workload from what the cluster shows.

    Args:
        workload: The pod, converted. None if the pod does not exist.
        jobs:     Delegation jobs owned by this pod incarnation (any attempt).
        policy:   Attempt ceiling and backoff curve.
        now:      Current time, timezone-aware UTC. Injected for testability.

    Returns:
        One PhaseState variant. Never raises for any combination of inputs.
    """
    if workload is None:
        return Untracked()
    if not workload.gate_present:
        return Released()
    if workload.failure_reason:
        return Failed(reason=workload.failure_reason, recorded=True)
    if not workload.dataset_ref:
        return Failed(
            reason=MISSING_DATASET_REASON,
            message="pod carries the prefetch gate but no dataset annotation",
        )

    node = workload.target_node
    if node is None:
        return Detected(node=None)

    recorded = workload.recorded_attempt
    job = latest_job(jobs)
    if job is None or job.attempt < recorded:
        # The job for the recorded attempt is gone; the pod still knows its history.
        if recorded < 1:
            return Detected(node=node)
        if workload.recorded_failure_at is None:
            return Detected(node=node, attempt=recorded)
        return _after_failure(node, recorded, workload.recorded_failure_at, policy, now)

    if job.target_node != node:
        return Misplaced(job=job, node=node)

    if job.completion == JobCompletion.RUNNING:
        return AwaitingJob(job=job)

    if job.completion == JobCompletion.SUCCEEDED:
        return Releasing(reason="job-succeeded", job=job)

    failed_at = job.finished_at
    if failed_at is None and job.attempt == recorded:
        failed_at = workload.recorded_failure_at
    return _after_failure(node, job.attempt, failed_at, policy, now, job=job)
