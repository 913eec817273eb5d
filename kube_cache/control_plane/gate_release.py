"""
kube_cache/control_plane/gate_release.py
────────────────────────────────────────
Gate Release Executor: the one irreversible side effect in the system.

Removing the gate hands the pod to the scheduler. It must therefore happen
only against the exact pod state the reconciler judged, and only for our
own gate.

How
────
  1. The caller passes the GatedWorkload it just derived its decision from,
     carrying resourceVersion and the index of our gate.
  2. ClusterStateClient.remove_scheduling_gate() sends a JSON patch that
     tests resourceVersion and the gate name at that index before
     removing it. If anything about the pod changed, the server rejects the
     whole patch → ConflictError. No blind overwrite, and other gates
     (owned by other controllers) are never touched.
  3. A gate that is already absent is a successful no-op, so a retry after
     an ambiguous failure (timeout after the server applied the patch) is
     harmless.

Errors
───────
  ConflictError → propagated. The reconciler re-reads and retries.
  NotFoundError → propagated. The pod is gone; tracking is dropped.
"""

from __future__ import annotations

import logging

from kube_cache.cluster.client import ClusterStateClient
from kube_cache.cluster.errors import ClusterApiError
from kube_cache.shared.models import GatedWorkload, ReleaseResult
from kube_cache.telemetry.metrics import record_prewarm_success

logger = logging.getLogger(__name__)

RELEASED_EVENT_REASON = "DatasetReady"


class GateReleaser:
    """Removes this controller's scheduling gate with optimistic concurrency."""

    def __init__(self, cluster: ClusterStateClient) -> None:
        self._cluster = cluster

    def release_gate(self, workload: GatedWorkload, reason: str = "") -> ReleaseResult:
        """
        Remove our gate from the pod described by `workload`.

        Args:
            workload: Freshly read workload. Its resource_version and
                      gate_index condition the patch.
            reason:   Short note for the pod event ("cache-hit", "job-succeeded").

        Returns:
            ReleaseResult(released=True) when the gate was removed by this call,
            or already_released=True when it was already absent.

        Raises:
            ConflictError: the pod changed since it was read.
            NotFoundError: the pod no longer exists.
        """
        if not workload.gate_present:
            logger.debug("Gate already absent on %s; nothing to release", workload.key)
            return ReleaseResult(key=workload.key, released=False, already_released=True)

        patched = self._cluster.remove_scheduling_gate(
            namespace=workload.identity.namespace,
            name=workload.identity.name,
            gate_index=workload.gate_index,
            gate_name=workload.gate_name,
            resource_version=workload.resource_version,
        )
        new_rv = ((patched or {}).get("metadata") or {}).get("resourceVersion")
        logger.info(
            "Released gate %s on %s (node=%s, dataset=%s, reason=%s)",
            workload.gate_name, workload.key, workload.target_node, workload.dataset_ref, reason,
        )
        if workload.dataset_ref:
            record_prewarm_success(workload.dataset_ref)
        self._emit_event(workload, reason)
        return ReleaseResult(key=workload.key, released=True, resource_version=new_rv)

    def _emit_event(self, workload: GatedWorkload, reason: str) -> None:
        message = (
            f"Dataset {workload.dataset_ref} is present on node {workload.target_node}; "
            f"scheduling gate {workload.gate_name} removed ({reason or 'ready'})"
        )
        try:
            self._cluster.create_event(workload.identity, RELEASED_EVENT_REASON, message, "Normal")
        except ClusterApiError:
            # The gate is already gone; a lost event must not turn a success into a retry.
            logger.warning("Could not record release event for %s", workload.key, exc_info=True)
