"""
kube_cache/shared/models.py
───────────────────────────
The single source of truth for every data structure the controller reasons
about.

Design philosophy
-----------------
Every model answers one question: "What does the controller *need to know*
about this thing in order to decide the next safe step?"

Nothing in here talks to the cluster. Raw pod / job objects are converted
into these models by kube_cache/cluster/convert.py, and every decision in
prewarm_core/ and kube_cache/control_plane/ is made against them. That keeps
the state machine testable without an API server.

Reading guide
-------------
Read top-to-bottom. Each model builds on the ones above it.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: ENUMERATIONS
# ─────────────────────────────────────────────────────────────────────────────

class WorkloadPhase(str, Enum):
    """
    Lifecycle of one gated workload, as seen by the reconciler.

    DETECTED       → Pod seen with the dataset annotation and our gate.
    CACHE_CHECKING → Oracle is being consulted for (node, dataset).
    CACHE_HIT      → Data already on the node. Goes straight to RELEASING.
    DELEGATING     → A fetch job is being created (or adopted).
    AWAITING_JOB   → A fetch job exists and has not concluded, or a failed
                     attempt is waiting out its retry backoff.
    RELEASING      → Gate removal in progress.
    RELEASED       → Gate gone. Terminal success.
    FAILED         → Attempts exhausted or pod misconfigured. Terminal; the
                     gate stays on (fail-closed).
    UNTRACKED      → Pod disappeared. Tracking dropped, nothing to do.
    """
    DETECTED = "Detected"
    CACHE_CHECKING = "CacheChecking"
    CACHE_HIT = "CacheHit"
    DELEGATING = "Delegating"
    AWAITING_JOB = "AwaitingJob"
    RELEASING = "Releasing"
    RELEASED = "Released"
    FAILED = "Failed"
    UNTRACKED = "Untracked"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkloadPhase.RELEASED, WorkloadPhase.FAILED, WorkloadPhase.UNTRACKED)


class JobCompletion(str, Enum):
    """
    Completion state of a delegation job, read only from its terminal
    status conditions. Job logs are never parsed.
    """
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: IDENTITY
# ─────────────────────────────────────────────────────────────────────────────

class WorkloadIdentity(BaseModel):
    """
    Stable identity of a gated pod.

    namespace + name locate the pod; uid pins the specific incarnation.
    A pod deleted and recreated under the same name gets a new uid, and
    therefore a new set of delegation job names.
    """
    model_config = ConfigDict(frozen=True)

    namespace: str
    name: str
    uid: str = ""

    @property
    def key(self) -> str:
        """Work-queue key: "namespace/name"."""
        return f"{self.namespace}/{self.name}"

    def __str__(self) -> str:
        return self.key


def split_key(key: str) -> Tuple[str, str]:
    """Inverse of WorkloadIdentity.key. Raises ValueError on a malformed key."""
    namespace, sep, name = key.partition("/")
    if not sep or not namespace or not name:
        raise ValueError(f"malformed workload key {key!r}; expected 'namespace/name'")
    return namespace, name


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: WORKLOAD
# ─────────────────────────────────────────────────────────────────────────────

class GatedWorkload(BaseModel):
    """
    A pod awaiting data, reduced to what the state machine needs.

    Fields:
        identity         → namespace/name/uid of the pod.
        dataset_ref      → Opaque dataset URI from the trigger annotation.
                           None if the pod carries our gate but no annotation
                           (a misconfiguration, surfaced as FAILED).
        target_node      → Name of the Node the pod will occupy. Resolved lazily:
                           nodeName, then scheduling hints, then the admission
                           annotation. None until one of those is present.
        target_hostname  → kubernetes.io/hostname label value the pod is pinned
                           to, when that is all its scheduling hints name. The
                           reconciler maps it to target_node through a node
                           list, since the label need not equal the node name.
        gate_name        → The scheduling gate this controller owns.
        gate_index       → Position of our gate in spec.schedulingGates, needed
                           for the index-addressed JSON patch. None if absent.
        resource_version → Pod resourceVersion at read time; every write we make
                           is conditioned on it.
        failure_reason   → Persisted terminal failure (from the pod annotation).
        recorded_attempt → Last delegation attempt started, from the pod
                           annotation written before each job create. 0 if none.
        recorded_failure_at → When that attempt was seen to fail. None while it
                           is running or its outcome was never observed.
        tolerations      → Copied onto the fetch job so it can land on tainted
                           GPU nodes.

    Invariant:
        phase != RELEASED  ⇒  gate_present is True.
        The controller never adds gates, so a released gate is never reapplied.
    """
    identity: WorkloadIdentity
    dataset_ref: Optional[str] = None
    target_node: Optional[str] = None
    target_hostname: Optional[str] = None
    gate_name: str
    gate_index: Optional[int] = None
    resource_version: str = ""
    generation: int = 0
    failure_reason: Optional[str] = None
    recorded_attempt: int = Field(0, ge=0)
    recorded_failure_at: Optional[datetime] = None
    tolerations: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    phase: WorkloadPhase = WorkloadPhase.DETECTED

    @property
    def gate_present(self) -> bool:
        return self.gate_index is not None

    @property
    def key(self) -> str:
        return self.identity.key


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 4: DELEGATION JOBS
# ─────────────────────────────────────────────────────────────────────────────

class DelegationJob(BaseModel):
    """
    A fetch job observed in the cluster.

    attempt is 1-based and read from the job's own labels, so the retry count
    survives a controller restart without any controller-local storage.
    finished_at is taken from the terminal condition's transition time and
    anchors the retry backoff.
    """
    name: str
    namespace: str
    owner: WorkloadIdentity
    target_node: Optional[str] = None
    dataset_ref: Optional[str] = None
    attempt: int = Field(1, ge=1)
    completion: JobCompletion = JobCompletion.RUNNING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class DelegationJobSpec(BaseModel):
    """
    Output of the job factory: what will be submitted, plus the rendered
    batch/v1 Job manifest ready for create_namespaced_job().
    """
    name: str
    namespace: str
    owner: WorkloadIdentity
    target_node: str
    dataset_ref: str
    attempt: int = Field(1, ge=1)
    manifest: Dict[str, Any] = Field(default_factory=dict)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 5: RECONCILE RESULTS
# ─────────────────────────────────────────────────────────────────────────────

class ReconcileOutcome(BaseModel):
    """
    Result of one reconcile() call.

    requeue_after:
        None → nothing more to do until the next notification or sweep.
        0.0  → retry now (through the rate limiter).
        > 0  → revisit after this many seconds (job poll, backoff, node wait).
    """
    key: str
    phase: WorkloadPhase
    requeue_after: Optional[float] = None
    message: str = ""
    job_name: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal


class ReleaseResult(BaseModel):
    """Result of a gate release attempt that did not raise."""
    key: str
    released: bool
    already_released: bool = False
    resource_version: Optional[str] = None
