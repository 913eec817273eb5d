"""
kube_cache/cluster/convert.py
─────────────────────────────
Raw cluster objects → domain models.

Everything here takes plain dicts in the API's own camelCase shape (what
ApiClient.sanitize_for_serialization() produces, and what a watch stream or
a YAML manifest looks like). No function here performs I/O, which is why
the whole state machine can be tested against literal pod dicts.

Target node resolution
───────────────────────
A gated pod is by definition not yet bound, so spec.nodeName is usually
empty. The node it WILL occupy has to come from somewhere the scheduler is
bound to honour, checked in this order:

  1. spec.nodeName                                  (pod created pre-bound)
  2. spec.nodeSelector["kubernetes.io/hostname"]
  3. required node affinity naming exactly one node:
       matchFields      metadata.name           In [node]
       matchExpressions kubernetes.io/hostname  In [hostname]
  4. the target-node annotation written at admission time

Source 2 and the matchExpressions form of 3 name a kubernetes.io/hostname
label VALUE, not a node name. On many clouds the two differ
(ip-10-0-0-1 vs ip-10-0-0-1.ec2.internal), so those are returned as a
hostname for the reconciler to look up, never as the node name itself.

Preferred (soft) affinity is ignored: it does not bind the scheduler, and a
fetch job on a merely-preferred node would pre-warm the wrong disk. A term
listing several candidate nodes is ignored for the same reason.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, NamedTuple, Optional, Set

from kube_cache.shared import labels
from kube_cache.shared.models import (
    DelegationJob,
    GatedWorkload,
    JobCompletion,
    WorkloadIdentity,
)

if TYPE_CHECKING:
    from kube_cache.shared.config import ControllerSettings


def _meta(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.get("metadata") or {}


def _spec(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.get("spec") or {}


def parse_timestamp(value: Any) -> Optional[datetime]:
    """RFC 3339 string (or datetime) → timezone-aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """Timezone-aware datetime → RFC 3339 UTC string, second precision."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def identity_of(obj: Dict[str, Any]) -> WorkloadIdentity:
    meta = _meta(obj)
    return WorkloadIdentity(
        namespace=meta.get("namespace") or "default",
        name=meta.get("name") or "",
        uid=meta.get("uid") or "",
    )


# ── Pods ──────────────────────────────────────────────────────────────────────

class Placement(NamedTuple):
    node: Optional[str] = None
    hostname: Optional[str] = None


NO_PLACEMENT = Placement()


def find_gate_index(pod: Dict[str, Any], gate_name: str) -> Optional[int]:
    """Index of our gate in spec.schedulingGates, or None if absent."""
    for i, gate in enumerate(_spec(pod).get("schedulingGates") or []):
        if (gate or {}).get("name") == gate_name:
            return i
    return None


def is_candidate(pod: Dict[str, Any], settings: "ControllerSettings") -> bool:
    """
    True if the pod carries our gate.

    The dataset annotation is NOT required here: a gated pod without it is
    still ours and has to be surfaced as failed rather than silently ignored.
    Pods being deleted are skipped.
    """
    if _meta(pod).get("deletionTimestamp"):
        return False
    return find_gate_index(pod, settings.gate_name) is not None


def _single_node_from_affinity(spec: Dict[str, Any]) -> Placement:
    required = (
        ((spec.get("affinity") or {}).get("nodeAffinity") or {})
        .get("requiredDuringSchedulingIgnoredDuringExecution")
        or {}
    )
    terms = required.get("nodeSelectorTerms") or []
    names: Set[str] = set()
    hostnames: Set[str] = set()
    for term in terms:
        term_names = None
        term_hostnames = None
        for req in (term.get("matchFields") or []):
            if req.get("key") == "metadata.name" and req.get("operator") == "In":
                term_names = set(req.get("values") or [])
        for req in (term.get("matchExpressions") or []):
            if req.get("key") == labels.HOSTNAME_LABEL and req.get("operator") == "In":
                values = set(req.get("values") or [])
                term_hostnames = values if term_hostnames is None else term_hostnames & values
        if term_names is not None:
            # A node name pins the term on its own; a hostname ANDed with it adds nothing.
            names |= term_names
        elif term_hostnames is not None:
            hostnames |= term_hostnames
        else:
            # Terms are ORed: one unconstrained term means any node qualifies.
            return NO_PLACEMENT
    if len(names) == 1 and not hostnames:
        return Placement(node=next(iter(names)))
    if len(hostnames) == 1 and not names:
        return Placement(hostname=next(iter(hostnames)))
    return NO_PLACEMENT


def resolve_placement(pod: Dict[str, Any], settings: "ControllerSettings") -> Placement:
    """
    Where the pod will run, as a node name or a hostname label value.

    At most one of the two is set. Both are None while placement is still
    indeterminate.
    """
    spec = _spec(pod)
    if spec.get("nodeName"):
        return Placement(node=spec["nodeName"])

    selector = spec.get("nodeSelector") or {}
    if selector.get(labels.HOSTNAME_LABEL):
        return Placement(hostname=selector[labels.HOSTNAME_LABEL])

    pinned = _single_node_from_affinity(spec)
    if pinned != NO_PLACEMENT:
        return pinned

    hint = (_meta(pod).get("annotations") or {}).get(settings.target_node_annotation)
    if hint and hint.strip():
        return Placement(node=hint.strip())
    return NO_PLACEMENT


def _recorded_attempt(annotations: Dict[str, Any]) -> int:
    try:
        return max(0, int(annotations.get(labels.POD_ATTEMPT_ANNOTATION) or 0))
    except (TypeError, ValueError):
        return 0


def workload_from_pod(pod: Dict[str, Any], settings: "ControllerSettings") -> GatedWorkload:
    meta = _meta(pod)
    annotations = meta.get("annotations") or {}
    dataset_ref = (annotations.get(settings.dataset_annotation) or "").strip() or None
    placement = resolve_placement(pod, settings)
    return GatedWorkload(
        identity=identity_of(pod),
        dataset_ref=dataset_ref,
        target_node=placement.node,
        target_hostname=placement.hostname,
        gate_name=settings.gate_name,
        gate_index=find_gate_index(pod, settings.gate_name),
        resource_version=meta.get("resourceVersion") or "",
        generation=int(meta.get("generation") or 0),
        failure_reason=annotations.get(settings.failure_annotation) or None,
        recorded_attempt=_recorded_attempt(annotations),
        recorded_failure_at=parse_timestamp(annotations.get(labels.POD_FAILED_AT_ANNOTATION)),
        tolerations=list(_spec(pod).get("tolerations") or []),
        created_at=parse_timestamp(meta.get("creationTimestamp")),
    )


# ── Jobs ──────────────────────────────────────────────────────────────────────

def job_completion(job: Dict[str, Any]) -> JobCompletion:
    """
    Read a job's outcome from its terminal status conditions only.

    Complete / SuccessCriteriaMet = True → SUCCEEDED
    Failed / FailureTarget        = True → FAILED
    anything else                        → RUNNING
    """
    conditions = ((job.get("status") or {}).get("conditions")) or []
    for cond in conditions:
        if str(cond.get("status")) != "True":
            continue
        if cond.get("type") in ("Failed", "FailureTarget"):
            return JobCompletion.FAILED
    for cond in conditions:
        if str(cond.get("status")) == "True" and cond.get("type") in ("Complete", "SuccessCriteriaMet"):
            return JobCompletion.SUCCEEDED
    return JobCompletion.RUNNING


def _finished_at(job: Dict[str, Any]) -> Optional[datetime]:
    status = job.get("status") or {}
    for cond in status.get("conditions") or []:
        if str(cond.get("status")) == "True" and cond.get("type") in (
            "Complete", "SuccessCriteriaMet", "Failed", "FailureTarget",
        ):
            ts = parse_timestamp(cond.get("lastTransitionTime"))
            if ts is not None:
                return ts
    return parse_timestamp(status.get("completionTime"))


def delegation_job_from_object(job: Dict[str, Any]) -> Optional[DelegationJob]:
    """
    Convert a Job object into a DelegationJob, or None if it is not one of ours
    (missing the managed-by label or the owner labels).
    """
    meta = _meta(job)
    job_labels = meta.get("labels") or {}
    if job_labels.get(labels.MANAGED_BY_LABEL) != labels.MANAGED_BY_VALUE:
        return None
    annotations = meta.get("annotations") or {}
    owner_uid = job_labels.get(labels.OWNER_UID_LABEL)
    owner_name = annotations.get(labels.OWNER_NAME_ANNOTATION) or job_labels.get(labels.OWNER_NAME_LABEL)
    if not owner_uid or not owner_name:
        return None
    try:
        attempt = max(1, int(job_labels.get(labels.ATTEMPT_LABEL) or 1))
    except ValueError:
        attempt = 1
    namespace = meta.get("namespace") or "default"
    return DelegationJob(
        name=meta.get("name") or "",
        namespace=namespace,
        owner=WorkloadIdentity(namespace=namespace, name=owner_name, uid=owner_uid),
        target_node=annotations.get(labels.TARGET_NODE_ANNOTATION),
        dataset_ref=annotations.get(labels.DATASET_REF_ANNOTATION),
        attempt=attempt,
        completion=job_completion(job),
        started_at=parse_timestamp((job.get("status") or {}).get("startTime")),
        finished_at=_finished_at(job),
    )


def delegation_jobs(
    objects: List[Dict[str, Any]], owner_uid: Optional[str] = None
) -> List[DelegationJob]:
    """Convert managed jobs, keeping only one pod incarnation's if owner_uid is given."""
    jobs = []
    for obj in objects:
        job = delegation_job_from_object(obj)
        if job is None:
            continue
        if owner_uid is None or job.owner.uid == owner_uid:
            jobs.append(job)
    return jobs
