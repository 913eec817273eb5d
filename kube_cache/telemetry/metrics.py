"""Prometheus metrics for the delegation controller.

Counters and histograms are module-level so every component records into
the same instances without passing a registry around. Export is the
standard prometheus_client HTTP exporter, started by the runtime only when
a metrics port is configured.
"""

from __future__ import annotations

from typing import Final

from prometheus_client import Counter, Gauge, Histogram

CACHE_LOOKUPS: Final[Counter] = Counter(
    "kube_cache_cache_lookups_total",
    "Cache presence oracle lookups, labeled by outcome (hit, miss, error).",
    labelnames=("outcome",),
)

PHASE_TRANSITIONS: Final[Counter] = Counter(
    "kube_cache_phase_transitions_total",
    "Workload phase transitions, labeled by the phase entered.",
    labelnames=("phase",),
)

PHASE_DURATION: Final[Histogram] = Histogram(
    "kube_cache_phase_duration_seconds",
    "Time a workload spent in a phase before leaving it, labeled by phase.",
    labelnames=("phase",),
    buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0, 3600.0),
)

WORKLOAD_FAILURES: Final[Counter] = Counter(
    "kube_cache_workload_failures_total",
    "Workloads that reached terminal Failed, labeled by reason.",
    labelnames=("reason",),
)

DELEGATION_ATTEMPTS: Final[Counter] = Counter(
    "kube_cache_delegation_attempts_total",
    "Concluded delegation attempts, labeled by outcome (succeeded, failed).",
    labelnames=("outcome",),
)

DELEGATION_JOBS: Final[Counter] = Counter(
    "kube_cache_delegation_jobs_total",
    "Delegation jobs put in place, labeled by action (created, adopted).",
    labelnames=("action",),
)

DELEGATION_DURATION: Final[Histogram] = Histogram(
    "kube_cache_delegation_duration_seconds",
    "Wall time of a delegation job from start to terminal condition.",
    buckets=(5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0, 3600.0),
)

RECONCILE_ERRORS: Final[Counter] = Counter(
    "kube_cache_reconcile_errors_total",
    "Reconcile calls that ended in an error and were requeued, labeled by kind.",
    labelnames=("kind",),
)

TRACKED_WORKLOADS: Final[Gauge] = Gauge(
    "kube_cache_tracked_workloads",
    "Gated workloads currently tracked in controller memory.",
)

# Kept under its historical name so existing dashboards keep working.
PREWARM_SUCCESS: Final[Counter] = Counter(
    "gpu_prewarm_success_total",
    "Total number of GPU pods pre-warmed and released, labeled by dataset.",
    labelnames=("dataset",),
)


def record_cache_lookup(outcome: str) -> None:
    CACHE_LOOKUPS.labels(outcome=outcome).inc()


def record_prewarm_success(dataset: str) -> None:
    PREWARM_SUCCESS.labels(dataset=dataset).inc()
