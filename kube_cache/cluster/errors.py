"""
kube_cache/cluster/errors.py
────────────────────────────
Error taxonomy for everything that crosses the cluster API boundary.

The reconciler never inspects HTTP status codes. The client adapter
translates every kubernetes ApiException into one of the classes below,
and each class maps to exactly one handling rule:

  NotFoundError       → the object is gone. For pods: drop tracking.
                        For jobs: absence is not an error.
  AlreadyExistsError  → a job with the deterministic name already exists.
                        Adopt it (crash-recovery path).
  ConflictError       → optimistic-concurrency rejection. Re-read and retry.
                        Never fatal.
  TransientApiError   → throttling, 5xx, network. Retried with backoff and
                        never surfaced as a workload failure.
  ResourceExpiredError→ a watch fell too far behind (410). Relist.
  ClusterApiError     → anything else the API refused. Logged, counted and
                        requeued through the rate limiter.

Two non-API errors live here too so callers have a single import:
  PlacementError      → the job factory refused to pin a job to a node that
                        does not match the workload's node.
  ConfigurationError  → settings or kubeconfig could not be loaded.
"""

from __future__ import annotations

import json
from typing import Optional

from kubernetes.client.exceptions import ApiException


class ClusterApiError(Exception):
    """
    Base class for cluster API failures.

    Attributes:
        status: HTTP status code (None for network-level failures).
        reason: Human-readable explanation, including the API's message
                when the response body carried one.
    """

    def __init__(self, reason: str, status: Optional[int] = None) -> None:
        self.reason = reason
        self.status = status
        super().__init__(reason)


class NotFoundError(ClusterApiError):
    pass


class AlreadyExistsError(ClusterApiError):
    pass


class ConflictError(ClusterApiError):
    pass


class TransientApiError(ClusterApiError):
    pass


class ResourceExpiredError(ClusterApiError):
    """410 Gone on a watch: the resourceVersion is too old. Relist."""


class PlacementError(Exception):
    """
    Raised by the job factory when the requested node cannot be used.

    Attributes:
        reason: Why the placement was refused.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class ConfigurationError(Exception):
    """Raised when controller settings or cluster credentials cannot be loaded."""


_TRANSIENT_STATUSES = frozenset({429, 500, 502, 503, 504})


def translate_api_exception(exc: ApiException, *, patch: bool = False) -> ClusterApiError:
    """
    Map a kubernetes ApiException onto the taxonomy above.

    Args:
        exc:   The exception raised by the generated client.
        patch: True when the failing call was a JSON patch. A failed "test"
               operation comes back as 422, which for us means the pod
               changed underneath the patch, i.e. a conflict.

    Returns:
        The translated exception (not raised; callers do `raise ... from exc`).
    """
    status = exc.status
    message = f"K8s API error: {exc.reason} (status: {status})"
    api_reason = None
    if exc.body:
        try:
            details = json.loads(exc.body)
            api_reason = details.get("reason")
            message += f" Details: {details.get('message', exc.body)}"
        except (json.JSONDecodeError, AttributeError, TypeError):
            pass

    if status == 404:
        return NotFoundError(message, status)
    if status == 409:
        if api_reason == "AlreadyExists":
            return AlreadyExistsError(message, status)
        return ConflictError(message, status)
    if status == 410:
        return ResourceExpiredError(message, status)
    if status == 422 and patch:
        return ConflictError(message, status)
    if status in _TRANSIENT_STATUSES or not status:
        return TransientApiError(message, status)
    return ClusterApiError(message, status)
