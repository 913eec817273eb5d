"""
kube_cache/control_plane/cache_oracle.py
────────────────────────────────────────
Cache Presence Oracle: "is dataset D fully materialised on node N?"

Contract
─────────
  has_data(node, dataset_ref) -> bool

  • Side-effect free and cheap; safe to call on every reconcile.
  • True ONLY for a complete, durable copy. A partial download must read as
    False. A false positive would release a pod onto a node without its
    data, which is the one outcome the whole controller exists to prevent.

The controller never writes the cache record. Only the delegated fetch job
does, and it writes the completion signal last (marker file after an atomic
rename, or the node label after the marker).

One on-disk layout is shared by both sides: cache_dir() is where the job
factory tells the fetcher to write (CACHE_DIR) and where MarkerFileOracle
looks for the marker (CACHE_MARKER).

    <cache_root>/<node>/<dataset_key>/.complete

Implementations
────────────────
  MarkerFileOracle  → <root>/<node>/<dataset_key>/.complete exists.
                      For deployments where the controller can see node
                      cache directories (shared volume or node-local agent
                      mount).
  NodeLabelOracle   → node label cache.kube-cache.io/<dataset_key>=ready.
                      Needs only the node read permission the controller
                      already has.

Errors
───────
probe() wraps any oracle. An exception is a cache MISS: a false negative
costs one redundant fetch, a false positive releases an unready pod.
"""

from __future__ import annotations

import hashlib
import logging
import os
import posixpath
from typing import TYPE_CHECKING, Protocol

from kube_cache.cluster.client import ClusterStateClient
from kube_cache.shared import labels
from kube_cache.telemetry.metrics import record_cache_lookup

if TYPE_CHECKING:
    from kube_cache.shared.config import ControllerSettings

logger = logging.getLogger(__name__)

COMPLETE_MARKER: str = ".complete"
"""Marker file name written by the fetcher after the dataset is in place."""

DATASET_KEY_LENGTH: int = 16


def dataset_key(dataset_ref: str) -> str:
    """Stable, label-safe key for a dataset URI: first 16 hex chars of sha256."""
    return hashlib.sha256(dataset_ref.encode("utf-8")).hexdigest()[:DATASET_KEY_LENGTH]


def cache_dir(cache_root: str, node: str, dataset_ref: str) -> str:
    """Directory holding one dataset on one node: <cache_root>/<node>/<dataset_key>."""
    return posixpath.join(cache_root, node, dataset_key(dataset_ref))


def marker_path(cache_root: str, node: str, dataset_ref: str) -> str:
    """The completion marker the fetcher writes last, inside cache_dir()."""
    return posixpath.join(cache_dir(cache_root, node, dataset_ref), COMPLETE_MARKER)


class CacheOracle(Protocol):
    def has_data(self, node: str, dataset_ref: str) -> bool: ...


class MarkerFileOracle:
    """Reads <root>/<node>/<dataset_key>/.complete."""

    def __init__(self, root: str) -> None:
        self._root = root

    def marker_path(self, node: str, dataset_ref: str) -> str:
        return marker_path(self._root, node, dataset_ref)

    def has_data(self, node: str, dataset_ref: str) -> bool:
        return os.path.isfile(self.marker_path(node, dataset_ref))

    def __repr__(self) -> str:
        return f"MarkerFileOracle(root={self._root!r})"


class NodeLabelOracle:
    """Reads the cache.kube-cache.io/<dataset_key> label on the Node object."""

    def __init__(self, cluster: ClusterStateClient) -> None:
        self._cluster = cluster

    @staticmethod
    def label_for(dataset_ref: str) -> str:
        return labels.NODE_CACHE_LABEL_PREFIX + dataset_key(dataset_ref)

    def has_data(self, node: str, dataset_ref: str) -> bool:
        obj = self._cluster.get_node(node)
        if obj is None:
            return False
        node_labels = (obj.get("metadata") or {}).get("labels") or {}
        return node_labels.get(self.label_for(dataset_ref)) == labels.NODE_CACHE_READY_VALUE

    def __repr__(self) -> str:
        return "NodeLabelOracle()"


def probe(oracle: CacheOracle, node: str, dataset_ref: str) -> bool:
    """
    Query the oracle, counting hit/miss/error. Never raises.

    Returns:
        True only if the oracle positively answered True.
    """
    try:
        hit = oracle.has_data(node, dataset_ref) is True
    except Exception:
        logger.warning(
            "Cache oracle %r failed for node=%s dataset=%s; treating as miss",
            oracle, node, dataset_ref, exc_info=True,
        )
        record_cache_lookup("error")
        return False
    record_cache_lookup("hit" if hit else "miss")
    return hit


def build_oracle(settings: "ControllerSettings", cluster: ClusterStateClient) -> CacheOracle:
    """Pick the oracle named by settings.cache_oracle."""
    if settings.cache_oracle == "node-label":
        return NodeLabelOracle(cluster)
    return MarkerFileOracle(settings.cache_root)
