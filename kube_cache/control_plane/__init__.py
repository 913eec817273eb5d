"""
kube_cache/control_plane — the delegation controller.

Public API:

    Cache presence:
        CacheOracle        — protocol: has_data(node, dataset_ref) → bool
        MarkerFileOracle   — <root>/<node>/<dataset_key>/.complete
        NodeLabelOracle    — cache.kube-cache.io/<dataset_key>=ready on the Node
        probe()            — oracle call where any error counts as a miss

    Delegation:
        build_job()            — node-pinned fetch Job for one attempt
        delegation_job_name()  — deterministic job name

    Release:
        GateReleaser       — conditional removal of our scheduling gate

    Runtime:
        Reconciler             — reconcile(key) → ReconcileOutcome
        DelegationController   — watches, sweep, worker pool
        WorkQueue / KeyedMutex — single-flight per workload
        PhaseTracker           — phase memory for metrics and logs
"""

from kube_cache.control_plane.cache_oracle import (
    CacheOracle,
    MarkerFileOracle,
    NodeLabelOracle,
    build_oracle,
    dataset_key,
    probe,
)
from kube_cache.control_plane.job_factory import build_job, delegation_job_name
from kube_cache.control_plane.gate_release import GateReleaser
from kube_cache.control_plane.tracker import PhaseTracker
from kube_cache.control_plane.workqueue import KeyedMutex, WorkQueue
from kube_cache.control_plane.reconciler import Reconciler
from kube_cache.control_plane.controller import DelegationController

__all__ = [
    "CacheOracle",
    "MarkerFileOracle",
    "NodeLabelOracle",
    "build_oracle",
    "dataset_key",
    "probe",
    "build_job",
    "delegation_job_name",
    "GateReleaser",
    "PhaseTracker",
    "KeyedMutex",
    "WorkQueue",
    "Reconciler",
    "DelegationController",
]
