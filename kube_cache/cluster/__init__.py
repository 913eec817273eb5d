"""
kube_cache/cluster — the boundary to the Kubernetes API.

Public API:
    ClusterStateClient        — protocol consumed by the control plane
    KubernetesClusterClient   — implementation over the `kubernetes` client
    load_cluster_config()     — kubeconfig → in-cluster fallback
    ClusterApiError and subclasses — translated API failures
"""

from kube_cache.cluster.client import (
    ClusterStateClient,
    KubernetesClusterClient,
    load_cluster_config,
)
from kube_cache.cluster.errors import (
    AlreadyExistsError,
    ClusterApiError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    PlacementError,
    ResourceExpiredError,
    TransientApiError,
)

__all__ = [
    "ClusterStateClient",
    "KubernetesClusterClient",
    "load_cluster_config",
    "ClusterApiError",
    "AlreadyExistsError",
    "ConflictError",
    "NotFoundError",
    "TransientApiError",
    "ResourceExpiredError",
    "PlacementError",
    "ConfigurationError",
]
