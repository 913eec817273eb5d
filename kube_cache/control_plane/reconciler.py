"""
kube_cache/control_plane/reconciler.py
──────────────────────────────────────
Reconciliation Engine: one call advances one workload by at most one safe
step.

    outcome = reconciler.reconcile("namespace/pod-name")

Every call starts from a fresh read of the pod and its delegation jobs,
derives the phase with prewarm_core.derive_phase(), performs the single
action that phase calls for, and returns a ReconcileOutcome whose
requeue_after tells the runtime when to come back.

Idempotency
────────────
Nothing here depends on what a previous call did. With unchanged cluster
state, calling reconcile() any number of times:
  • creates at most one job per attempt (deterministic names; the API
    server rejects the second create, and that job is adopted),
  • removes the gate at most once (the patch is conditional, and an absent
    gate is a no-op),
  • records a terminal failure once (the annotation is read back as
    Failed(recorded=True)).

Crash recovery
───────────────
A restart loses only the PhaseTracker, which feeds metrics and logs. Job
attempt numbers, backoff anchors and terminal failures are all read back
from the cluster. The attempt number is written to the pod (conditioned on
its resourceVersion) before each job create, and a failed attempt's finish
time is copied there while the controller waits out the backoff, so a job
removed by ttlSecondsAfterFinished or by hand never resets the count.

Serialisation
──────────────
The work queue never hands one key to two workers. reconcile() also holds
a per-key mutex, so direct callers (tests, the sweep) are serialised too.
Different keys proceed fully in parallel.

Errors
───────
Handled here:
  ConflictError on release / annotate   → requeue immediately, re-read.
  NotFoundError on release / annotate   → pod is gone → Untracked.
  AlreadyExistsError on create          → adopt the existing job.
Everything else (TransientApiError, unexpected ClusterApiError) propagates
to the controller runtime, which counts it and requeues with rate limiting.
A workload is never marked Failed because the API server was unavailable.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from kube_cache.cluster.client import ClusterStateClient
from kube_cache.cluster.convert import delegation_jobs, format_timestamp, workload_from_pod
from kube_cache.cluster.errors import (
    AlreadyExistsError,
    ClusterApiError,
    ConflictError,
    NotFoundError,
)
from kube_cache.control_plane.cache_oracle import CacheOracle, probe
from kube_cache.control_plane.gate_release import GateReleaser
from kube_cache.control_plane.job_factory import build_job
from kube_cache.control_plane.tracker import PhaseTracker
from kube_cache.control_plane.workqueue import KeyedMutex
from kube_cache.shared import labels
from kube_cache.shared.config import ControllerSettings
from kube_cache.shared.models import (
    DelegationJob,
    GatedWorkload,
    ReconcileOutcome,
    WorkloadPhase,
    split_key,
)
from kube_cache.telemetry.metrics import WORKLOAD_FAILURES, DELEGATION_JOBS
from kube_cache.telemetry.tracing import DelegationSpanRecorder
from prewarm_core import (
    AwaitingJob,
    Delegating,
    Detected,
    Failed,
    Misplaced,
    Released,
    Releasing,
    RetryPolicy,
    RetryWaiting,
    Untracked,
    derive_phase,
)

logger = logging.getLogger(__name__)

FAILED_EVENT_REASON = "DatasetPrefetchFailed"
DELEGATED_EVENT_REASON = "DatasetPrefetchStarted"

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Reconciler:
    """
    Drives one gated workload at a time towards Released (or Failed).

    Args:
        cluster:  ClusterStateClient implementation.
        oracle:   Cache presence oracle.
        settings: Controller settings (gate name, policy, job sizing).
        clock:    Returns the current timezone-aware UTC time.
        tracker:  Phase memory for metrics and logs. Created if omitted.
        spans:    Delegation span recorder. Created if omitted.
    """

    def __init__(
        self,
        cluster: ClusterStateClient,
        oracle: CacheOracle,
        settings: ControllerSettings,
        clock: Optional[Clock] = None,
        tracker: Optional[PhaseTracker] = None,
        spans: Optional[DelegationSpanRecorder] = None,
    ) -> None:
        self._cluster = cluster
        self._oracle = oracle
        self._settings = settings
        self._policy = RetryPolicy.from_settings(settings)
        self._clock = clock or _utcnow
        self._tracker = tracker if tracker is not None else PhaseTracker()
        self._spans = spans if spans is not None else DelegationSpanRecorder()
        self._releaser = GateReleaser(cluster)
        self._mutex = KeyedMutex()

    @property
    def tracker(self) -> PhaseTracker:
        return self._tracker

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    # ─────────────────────────────────────────────────────────────────────────
    # Entry point
    # ─────────────────────────────────────────────────────────────────────────

    def reconcile(self, key: str) -> ReconcileOutcome:
        """
        Advance the workload at `key` ("namespace/name") by one step.

        Raises:
            ValueError:      malformed key.
            ClusterApiError: API failures not handled locally (transient
                             errors included); the caller requeues.
        """
        namespace, name = split_key(key)
        with self._mutex.hold(key):
            return self._reconcile_locked(key, namespace, name)

    def _reconcile_locked(self, key: str, namespace: str, name: str) -> ReconcileOutcome:
        now = self._clock()

        pod = self._cluster.get_pod(namespace, name)
        if pod is not None and (pod.get("metadata") or {}).get("deletionTimestamp"):
            pod = None
        workload = workload_from_pod(pod, self._settings) if pod is not None else None

        owned = self._list_jobs(namespace, name)
        if workload is None:
            return self._untracked(key, owned)

        uid = workload.identity.uid
        current = [j for j in owned if j.owner.uid == uid]
        for stale in (j for j in owned if j.owner.uid != uid):
            self._delete_job(stale, "belongs to an earlier pod incarnation")

        for job in current:
            self._spans.record(job, now)

        if workload.target_node is None and workload.target_hostname:
            workload = self._resolve_hostname(key, workload)

        state = derive_phase(workload, current, self._policy, now)
        logger.debug("%s: derived %s", key, state)

        if isinstance(state, Untracked):
            return self._untracked(key, current)
        if isinstance(state, Released):
            return self._released(key, current)
        if isinstance(state, Failed):
            return self._failed(key, workload, state, current, now)
        if isinstance(state, Detected):
            return self._detected(key, workload, state, now)
        if isinstance(state, Misplaced):
            return self._misplaced(key, state, now)
        if isinstance(state, AwaitingJob):
            self._tracker.observe(key, WorkloadPhase.AWAITING_JOB, now)
            logger.debug("%s: waiting on job %s", key, state.job.name)
            return ReconcileOutcome(
                key=key,
                phase=WorkloadPhase.AWAITING_JOB,
                requeue_after=self._settings.job_poll_interval_s,
                job_name=state.job.name,
            )
        if isinstance(state, RetryWaiting):
            return self._retry_waiting(key, workload, state, now)
        if isinstance(state, Delegating):
            logger.warning(
                "%s: delegation attempt %d failed; starting attempt %d of %d",
                key, state.attempt - 1, state.attempt, self._policy.max_attempts,
            )
            return self._delegate(key, workload, state.node, state.attempt, now)
        if isinstance(state, Releasing):
            return self._release(key, workload, state.reason, current, now)

        raise TypeError(f"unhandled phase state {state!r}")

    # ─────────────────────────────────────────────────────────────────────────
    # Terminal states
    # ─────────────────────────────────────────────────────────────────────────

    def _untracked(self, key: str, jobs: List[DelegationJob]) -> ReconcileOutcome:
        for job in jobs:
            self._delete_job(job, "pod is gone")
        if self._tracker.phase_of(key) is not None:
            self._tracker.observe(key, WorkloadPhase.UNTRACKED, self._clock())
            self._tracker.forget(key)
            logger.info("%s: pod gone; stopped tracking", key)
        return ReconcileOutcome(key=key, phase=WorkloadPhase.UNTRACKED)

    def _released(self, key: str, jobs: List[DelegationJob]) -> ReconcileOutcome:
        for job in jobs:
            self._delete_job(job, "gate already released")
        if self._tracker.phase_of(key) is not None:
            self._tracker.observe(key, WorkloadPhase.RELEASED, self._clock())
            self._tracker.forget(key)
        return ReconcileOutcome(key=key, phase=WorkloadPhase.RELEASED)

    def _failed(
        self,
        key: str,
        workload: GatedWorkload,
        state: Failed,
        jobs: List[DelegationJob],
        now: datetime,
    ) -> ReconcileOutcome:
        if not state.recorded:
            try:
                # Attempt history is cleared with it, so removing the failure
                # annotation re-arms delegation from attempt 1.
                self._cluster.annotate_pod(
                    namespace=workload.identity.namespace,
                    name=workload.identity.name,
                    annotations={
                        self._settings.failure_annotation: state.reason,
                        labels.POD_ATTEMPT_ANNOTATION: None,
                        labels.POD_FAILED_AT_ANNOTATION: None,
                    },
                    resource_version=workload.resource_version,
                )
            except ConflictError:
                logger.warning("%s: pod changed while recording failure; re-reading", key)
                return ReconcileOutcome(key=key, phase=WorkloadPhase.FAILED, requeue_after=0.0)
            except NotFoundError:
                return self._untracked(key, jobs)

            WORKLOAD_FAILURES.labels(reason=state.reason).inc()
            logger.warning(
                "%s: delegation failed (%s) %s; gate %s left in place",
                key, state.reason, state.message, workload.gate_name,
            )
            self._event(
                workload,
                FAILED_EVENT_REASON,
                f"{state.reason}: {state.message or 'dataset prefetch failed'}. "
                f"Gate {workload.gate_name} kept; remove annotation "
                f"{self._settings.failure_annotation} to retry.",
                "Warning",
            )

        for job in jobs:
            self._delete_job(job, "workload failed")
        self._tracker.observe(key, WorkloadPhase.FAILED, now)
        return ReconcileOutcome(
            key=key, phase=WorkloadPhase.FAILED, message=state.message or state.reason
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Active states
    # ─────────────────────────────────────────────────────────────────────────

    def _detected(
        self, key: str, workload: GatedWorkload, state: Detected, now: datetime
    ) -> ReconcileOutcome:
        self._tracker.observe(key, WorkloadPhase.DETECTED, now)
        wait = self._settings.node_wait_interval_s

        if state.node is None:
            if workload.target_hostname:
                message = f"no single node labelled {labels.hostname_selector(workload.target_hostname)}"
            else:
                message = "target node not yet known"
            since = workload.created_at or self._tracker.first_seen(key) or now
            waited = (now - since).total_seconds()
            if waited > self._settings.node_resolution_warn_after_s:
                logger.warning("%s: %s after %.0fs; still waiting", key, message, waited)
            else:
                logger.debug("%s: %s", key, message)
            return ReconcileOutcome(
                key=key, phase=WorkloadPhase.DETECTED, requeue_after=wait, message=message,
            )

        if self._cluster.get_node(state.node) is None:
            logger.warning("%s: target node %s does not exist; waiting", key, state.node)
            return ReconcileOutcome(
                key=key, phase=WorkloadPhase.DETECTED, requeue_after=wait,
                message=f"node {state.node} not found",
            )

        self._tracker.observe(key, WorkloadPhase.CACHE_CHECKING, now)
        if probe(self._oracle, state.node, workload.dataset_ref):
            self._tracker.observe(key, WorkloadPhase.CACHE_HIT, now)
            logger.info("%s: %s already cached on %s", key, workload.dataset_ref, state.node)
            return self._release(key, workload, "cache-hit", [], now)

        if workload.recorded_attempt:
            logger.warning("%s: no job found for recorded attempt %d; creating it again", key, state.attempt)
        return self._delegate(key, workload, state.node, state.attempt, now)

    def _retry_waiting(
        self, key: str, workload: GatedWorkload, state: RetryWaiting, now: datetime
    ) -> ReconcileOutcome:
        self._tracker.observe(key, WorkloadPhase.AWAITING_JOB, now)
        job = state.job
        if (
            job is not None
            and job.finished_at is not None
            and (workload.recorded_attempt != job.attempt or workload.recorded_failure_at is None)
        ):
            # Copy the backoff anchor to the pod before the job can be collected.
            try:
                self._cluster.annotate_pod(
                    namespace=workload.identity.namespace,
                    name=workload.identity.name,
                    annotations={
                        labels.POD_ATTEMPT_ANNOTATION: str(job.attempt),
                        labels.POD_FAILED_AT_ANNOTATION: format_timestamp(job.finished_at),
                    },
                    resource_version=workload.resource_version,
                )
            except ConflictError:
                logger.debug("%s: pod changed while recording failed attempt; re-reading", key)
                return ReconcileOutcome(key=key, phase=WorkloadPhase.AWAITING_JOB, requeue_after=0.0)
            except NotFoundError:
                return self._untracked(key, [job])

        logger.debug(
            "%s: attempt %d failed, next attempt in %.1fs", key, state.attempt, state.retry_in
        )
        return ReconcileOutcome(
            key=key,
            phase=WorkloadPhase.AWAITING_JOB,
            requeue_after=state.retry_in,
            message=f"retrying after failed attempt {state.attempt}",
            job_name=job.name if job is not None else None,
        )

    def _misplaced(self, key: str, state: Misplaced, now: datetime) -> ReconcileOutcome:
        logger.warning(
            "%s: job %s is pinned to %s but the pod targets %s; deleting it",
            key, state.job.name, state.job.target_node, state.node,
        )
        self._cluster.delete_job(state.job.namespace, state.job.name)
        self._tracker.observe(key, WorkloadPhase.DELEGATING, now)
        return ReconcileOutcome(
            key=key, phase=WorkloadPhase.DELEGATING, requeue_after=0.0,
            message=f"deleted misplaced job {state.job.name}",
        )

    def _delegate(
        self, key: str, workload: GatedWorkload, node: str, attempt: int, now: datetime
    ) -> ReconcileOutcome:
        self._tracker.observe(key, WorkloadPhase.DELEGATING, now)
        job_spec = build_job(workload, node, attempt, self._settings)

        if workload.recorded_attempt != attempt or workload.recorded_failure_at is not None:
            # The pod must show the attempt before its job can exist.
            try:
                self._cluster.annotate_pod(
                    namespace=workload.identity.namespace,
                    name=workload.identity.name,
                    annotations={
                        labels.POD_ATTEMPT_ANNOTATION: str(attempt),
                        labels.POD_FAILED_AT_ANNOTATION: None,
                    },
                    resource_version=workload.resource_version,
                )
            except ConflictError:
                logger.debug("%s: pod changed before recording attempt %d; re-reading", key, attempt)
                return ReconcileOutcome(key=key, phase=WorkloadPhase.DELEGATING, requeue_after=0.0)
            except NotFoundError:
                return self._untracked(key, [])

        try:
            self._cluster.create_job(job_spec.namespace, job_spec.manifest)
        except AlreadyExistsError:
            existing = self._cluster.get_job(job_spec.namespace, job_spec.name)
            if existing is None:
                # Deleted between the create and the read; try again.
                return ReconcileOutcome(
                    key=key, phase=WorkloadPhase.DELEGATING, requeue_after=0.0, job_name=job_spec.name
                )
            DELEGATION_JOBS.labels(action="adopted").inc()
            logger.info("%s: adopted existing job %s (attempt %d)", key, job_spec.name, attempt)
        else:
            DELEGATION_JOBS.labels(action="created").inc()
            logger.info(
                "%s: created job %s on node %s for %s (attempt %d)",
                key, job_spec.name, node, workload.dataset_ref, attempt,
            )
            self._event(
                workload,
                DELEGATED_EVENT_REASON,
                f"Fetching {workload.dataset_ref} onto node {node} with job {job_spec.name} "
                f"(attempt {attempt})",
                "Normal",
            )

        self._tracker.observe(key, WorkloadPhase.AWAITING_JOB, now)
        return ReconcileOutcome(
            key=key,
            phase=WorkloadPhase.AWAITING_JOB,
            requeue_after=self._settings.job_poll_interval_s,
            job_name=job_spec.name,
        )

    def _release(
        self,
        key: str,
        workload: GatedWorkload,
        reason: str,
        jobs: List[DelegationJob],
        now: datetime,
    ) -> ReconcileOutcome:
        self._tracker.observe(key, WorkloadPhase.RELEASING, now)
        try:
            self._releaser.release_gate(workload, reason)
        except ConflictError:
            logger.warning("%s: pod changed before gate release; re-reading", key)
            return ReconcileOutcome(key=key, phase=WorkloadPhase.RELEASING, requeue_after=0.0)
        except NotFoundError:
            return self._untracked(key, jobs)

        for job in jobs:
            self._delete_job(job, "gate released")
        self._tracker.observe(key, WorkloadPhase.RELEASED, now)
        self._tracker.forget(key)
        return ReconcileOutcome(key=key, phase=WorkloadPhase.RELEASED, message=reason)

    # ─────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────

    def _resolve_hostname(self, key: str, workload: GatedWorkload) -> GatedWorkload:
        """
        Map the pod's kubernetes.io/hostname label value to a node name.

        The workload comes back unchanged (target_node still None) unless
        exactly one node carries the label.
        """
        hostname = workload.target_hostname
        nodes = self._cluster.list_nodes(labels.hostname_selector(hostname))
        names = sorted({(n.get("metadata") or {}).get("name") or "" for n in nodes} - {""})
        if len(names) != 1:
            if names:
                logger.warning(
                    "%s: %d nodes carry %s=%s (%s); waiting",
                    key, len(names), labels.HOSTNAME_LABEL, hostname, ", ".join(names),
                )
            return workload
        if names[0] != hostname:
            logger.debug("%s: hostname %s is node %s", key, hostname, names[0])
        return workload.model_copy(update={"target_node": names[0]})

    def _list_jobs(self, namespace: str, name: str) -> List[DelegationJob]:
        """Delegation jobs of every incarnation of the pod `name`."""
        objects, _ = self._cluster.list_jobs(namespace, labels.owner_name_selector(name))
        return [
            job for job in delegation_jobs(objects) if job.owner.name == name
        ]

    def _delete_job(self, job: DelegationJob, why: str) -> None:
        try:
            self._cluster.delete_job(job.namespace, job.name)
            logger.debug("Deleted job %s/%s: %s", job.namespace, job.name, why)
        except ClusterApiError:
            logger.warning("Could not delete job %s/%s", job.namespace, job.name, exc_info=True)

    def _event(self, workload: GatedWorkload, reason: str, message: str, event_type: str) -> None:
        try:
            self._cluster.create_event(workload.identity, reason, message, event_type)
        except ClusterApiError:
            logger.warning("Could not record %s event for %s", reason, workload.key, exc_info=True)
