"""
kube_cache/control_plane/job_factory.py
───────────────────────────────────────
Delegation Job Factory: workload + node + attempt → batch/v1 Job manifest.

Smart node targeting
─────────────────────
The fetch job is only useful if it runs on the exact node the GPU pod will
occupy. A job that lands anywhere else completes successfully, the gate is
released, and the pod then downloads its dataset itself. Nothing errors;
the optimisation is just silently gone. So pinning is done with the
strictest mechanism available:

  affinity.nodeAffinity.requiredDuringSchedulingIgnoredDuringExecution
    nodeSelectorTerms: [ matchFields: metadata.name In [<node>] ]

matchFields on metadata.name targets the Node object's name itself (the
same technique the DaemonSet controller uses). `node` must therefore be a
real node name: a pod pinned by kubernetes.io/hostname label is resolved to
its node by the reconciler before a job is built. The node is also stamped in an annotation so the reconciler can check it on every
visit (see Misplaced in prewarm_core/phases.py).

The pod's tolerations are copied to the job. GPU nodes are commonly
tainted, and a fetcher that cannot tolerate the taint would sit Pending
forever next to the pod it is supposed to serve.

Deterministic naming
─────────────────────
  attempt 1 : fetch-<pod-name>-<uid[:8]>
  attempt N : fetch-<pod-name>-<uid[:8]>-r<N>

A pure function of (identity, attempt). Two reconciles racing to create the
same attempt submit the same name, and the API server's uniqueness
constraint lets exactly one of them win. The loser adopts the winner's job.

Names are DNS-1123 labels (≤ 63 chars, [a-z0-9-]) because the Job name is
copied into its pods' job-name label. Long pod names are truncated and a
short hash of the full name is appended, keeping the result unique.
"""

from __future__ import annotations

import hashlib
import re
from typing import Any, Dict, Optional

from kube_cache.cluster.errors import PlacementError
from kube_cache.control_plane.cache_oracle import cache_dir, dataset_key, marker_path
from kube_cache.shared import labels
from kube_cache.shared.config import ControllerSettings
from kube_cache.shared.models import DelegationJobSpec, GatedWorkload, WorkloadIdentity

JOB_NAME_PREFIX: str = "fetch-"
MAX_NAME_LENGTH: int = 63
UID_FRAGMENT_LENGTH: int = 8
FETCH_CONTAINER_NAME: str = "fetch"
CACHE_VOLUME_NAME: str = "dataset-cache"

_INVALID_CHARS = re.compile(r"[^a-z0-9-]+")


def _dns_label(text: str) -> str:
    return _INVALID_CHARS.sub("-", text.lower()).strip("-")


def delegation_job_name(identity: WorkloadIdentity, attempt: int = 1) -> str:
    """
    Deterministic job name for one attempt of one pod incarnation.

    Same (identity, attempt) → same name, on every controller replica and
    across restarts.
    """
    suffix = ""
    uid_part = _dns_label(identity.uid)[:UID_FRAGMENT_LENGTH]
    if uid_part:
        suffix += f"-{uid_part}"
    if attempt > 1:
        suffix += f"-r{attempt}"

    base = _dns_label(identity.name) or "pod"
    name = f"{JOB_NAME_PREFIX}{base}{suffix}"
    if len(name) <= MAX_NAME_LENGTH:
        return name

    digest = hashlib.sha256(identity.name.encode("utf-8")).hexdigest()[:6]
    room = MAX_NAME_LENGTH - len(JOB_NAME_PREFIX) - len(suffix) - len(digest) - 1
    return f"{JOB_NAME_PREFIX}{base[:room].rstrip('-')}-{digest}{suffix}"


def _node_pin(node: str) -> Dict[str, Any]:
    return {
        "nodeAffinity": {
            "requiredDuringSchedulingIgnoredDuringExecution": {
                "nodeSelectorTerms": [
                    {
                        "matchFields": [
                            {"key": "metadata.name", "operator": "In", "values": [node]}
                        ]
                    }
                ]
            }
        }
    }


def job_target_node(manifest: Dict[str, Any]) -> Optional[str]:
    """
    Read back the node a rendered manifest is pinned to.

    Returns the single node named by the required matchFields term, or None
    if the manifest is not pinned to exactly one node.
    """
    pod_spec = (((manifest.get("spec") or {}).get("template") or {}).get("spec")) or {}
    terms = (
        ((pod_spec.get("affinity") or {}).get("nodeAffinity") or {})
        .get("requiredDuringSchedulingIgnoredDuringExecution", {})
        .get("nodeSelectorTerms", [])
    )
    nodes = set()
    for term in terms:
        for req in term.get("matchFields") or []:
            if req.get("key") == "metadata.name" and req.get("operator") == "In":
                nodes.update(req.get("values") or [])
    return next(iter(nodes)) if len(nodes) == 1 else None


def build_job(
    workload: GatedWorkload,
    node: str,
    attempt: int,
    settings: ControllerSettings,
) -> DelegationJobSpec:
    """
    Build the fetch job for one delegation attempt.

    Args:
        workload: The gated pod. Must carry a dataset_ref.
        node:     Node to pin to. Must equal workload.target_node when the
                  workload has one.
        attempt:  1-based attempt number.
        settings: Image, cache root, TTLs and resource sizing.

    Raises:
        PlacementError: empty node, node mismatch, or no dataset to fetch.
    """
    if not node:
        raise PlacementError(f"{workload.key}: refusing to build a fetch job without a target node")
    if workload.target_node is not None and workload.target_node != node:
        raise PlacementError(
            f"{workload.key}: fetch job node {node!r} does not match workload node "
            f"{workload.target_node!r}"
        )
    if not workload.dataset_ref:
        raise PlacementError(f"{workload.key}: no dataset reference to fetch")
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")

    identity = workload.identity
    name = delegation_job_name(identity, attempt)
    key = dataset_key(workload.dataset_ref)
    target_dir = cache_dir(settings.cache_root, node, workload.dataset_ref)
    target_marker = marker_path(settings.cache_root, node, workload.dataset_ref)

    job_labels = {
        labels.MANAGED_BY_LABEL: labels.MANAGED_BY_VALUE,
        labels.COMPONENT_LABEL: labels.COMPONENT_VALUE,
        labels.OWNER_UID_LABEL: identity.uid,
        labels.OWNER_NAME_LABEL: labels.label_value(identity.name),
        labels.ATTEMPT_LABEL: str(attempt),
        labels.DATASET_KEY_LABEL: key,
    }
    job_annotations = {
        labels.DATASET_REF_ANNOTATION: workload.dataset_ref,
        labels.TARGET_NODE_ANNOTATION: node,
        labels.OWNER_NAME_ANNOTATION: identity.name,
    }

    metadata: Dict[str, Any] = {
        "name": name,
        "namespace": identity.namespace,
        "labels": dict(job_labels),
        "annotations": dict(job_annotations),
    }
    if identity.uid:
        # Pod deletion garbage-collects the job even if the controller is down.
        metadata["ownerReferences"] = [
            {
                "apiVersion": "v1",
                "kind": "Pod",
                "name": identity.name,
                "uid": identity.uid,
                "controller": False,
                "blockOwnerDeletion": False,
            }
        ]

    pod_spec: Dict[str, Any] = {
        "restartPolicy": "Never",
        "affinity": _node_pin(node),
        "tolerations": [dict(t) for t in workload.tolerations],
        "containers": [
            {
                "name": FETCH_CONTAINER_NAME,
                "image": settings.fetcher_image,
                "args": [workload.dataset_ref, target_dir],
                "env": [
                    {"name": "DATASET_REF", "value": workload.dataset_ref},
                    {"name": "DATASET_KEY", "value": key},
                    {"name": "CACHE_ROOT", "value": settings.cache_root},
                    {"name": "CACHE_DIR", "value": target_dir},
                    {"name": "CACHE_MARKER", "value": target_marker},
                    {"name": "TARGET_NODE", "value": node},
                ],
                "resources": {
                    "requests": {"cpu": settings.fetcher_cpu, "memory": settings.fetcher_memory},
                    "limits": {"memory": settings.fetcher_memory},
                },
                "volumeMounts": [{"name": CACHE_VOLUME_NAME, "mountPath": settings.cache_root}],
            }
        ],
        "volumes": [
            {
                "name": CACHE_VOLUME_NAME,
                "hostPath": {"path": settings.cache_root, "type": "DirectoryOrCreate"},
            }
        ],
    }
    if settings.service_account:
        pod_spec["serviceAccountName"] = settings.service_account

    manifest = {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": metadata,
        "spec": {
            # Retries belong to the controller, which owns the backoff curve.
            "backoffLimit": 0,
            "ttlSecondsAfterFinished": settings.job_ttl_s,
            "activeDeadlineSeconds": settings.job_active_deadline_s,
            "template": {
                "metadata": {"labels": dict(job_labels), "annotations": dict(job_annotations)},
                "spec": pod_spec,
            },
        },
    }

    return DelegationJobSpec(
        name=name,
        namespace=identity.namespace,
        owner=identity,
        target_node=node,
        dataset_ref=workload.dataset_ref,
        attempt=attempt,
        manifest=manifest,
    )
