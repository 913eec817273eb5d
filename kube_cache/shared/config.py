"""
kube_cache/shared/config.py
───────────────────────────
Controller policy and wiring, as one validated settings object.

The policy numbers (attempt ceiling, backoff curve, poll / sweep / node-wait
intervals) live only here. The reconciler, the job factory and the controller
runtime all read them from a ControllerSettings instance, and tests build
their own instance with the values a scenario needs.

Defaults are module-level so tests can import and assert against them
directly.

Environment
────────────
ControllerSettings.from_env() reads KUBE_CACHE_<FIELD_NAME_UPPER>, e.g.

    KUBE_CACHE_MAX_ATTEMPTS=5
    KUBE_CACHE_NAMESPACE=training
    KUBE_CACHE_FETCHER_IMAGE=registry.local/fetcher:1.4

Unset variables keep their defaults. Invalid values raise ConfigurationError.
"""

from __future__ import annotations

import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from kube_cache.cluster.errors import ConfigurationError

# ── Trigger contract ──────────────────────────────────────────────────────────

DEFAULT_GATE_NAME: str = "kube-cache.io/dataset-prefetch"
"""The scheduling gate this controller owns. Other gates are never touched."""

DEFAULT_DATASET_ANNOTATION: str = "kube-cache.io/dataset"
"""Pod annotation holding the dataset URI, e.g. "s3://bucket/imagenet"."""

DEFAULT_TARGET_NODE_ANNOTATION: str = "kube-cache.io/target-node"
"""Optional admission-time hint naming the node the pod will run on."""

DEFAULT_FAILURE_ANNOTATION: str = "kube-cache.io/prefetch-failed"
"""Written on terminal failure. Removing it re-arms delegation for the pod."""

# ── Retry policy ──────────────────────────────────────────────────────────────

DEFAULT_MAX_ATTEMPTS: int = 3
"""Delegation attempts before a workload is marked Failed (gate kept)."""

DEFAULT_BACKOFF_BASE_S: float = 10.0
"""Delay before the 2nd attempt. Doubles per attempt: 10s, 20s, 40s, ..."""

DEFAULT_BACKOFF_CAP_S: float = 300.0
"""Upper bound on the retry delay between two delegation attempts."""

# ── Cadence ───────────────────────────────────────────────────────────────────

DEFAULT_JOB_POLL_INTERVAL_S: float = 15.0
"""How often a running job is re-checked when no watch event arrives."""

DEFAULT_NODE_WAIT_INTERVAL_S: float = 5.0
"""Requeue delay while a pod's target node is still unknown."""

DEFAULT_NODE_RESOLUTION_WARN_AFTER_S: float = 300.0
"""Log a warning once a pod has waited this long for a node. It is still
requeued, never failed."""

DEFAULT_SWEEP_INTERVAL_S: float = 60.0
"""Safety-net sweep period. Covers watch events that were missed or
coalesced."""

DEFAULT_WORKER_COUNT: int = 4
"""Reconcile worker threads. Distinct workloads run in parallel; one workload
is never reconciled by two workers at once."""

# ── Fetch job template ────────────────────────────────────────────────────────

DEFAULT_FETCHER_IMAGE: str = "ghcr.io/kube-cache/fetcher:latest"
DEFAULT_CACHE_ROOT: str = "/var/lib/kube-cache"
DEFAULT_JOB_TTL_S: int = 600
"""Finished jobs are garbage-collected after this long. Must exceed
backoff_cap_s so a failed job outlives the backoff that follows it."""

DEFAULT_JOB_ACTIVE_DEADLINE_S: int = 3600


class ControllerSettings(BaseModel):
    """
    Everything the controller can be told, with validated bounds.

    Construct directly in tests:
        settings = ControllerSettings(max_attempts=3, backoff_base_s=0.0)

    Construct from the environment in the runtime:
        settings = ControllerSettings.from_env()
    """

    # Trigger contract
    gate_name: str = Field(DEFAULT_GATE_NAME, min_length=1)
    dataset_annotation: str = Field(DEFAULT_DATASET_ANNOTATION, min_length=1)
    target_node_annotation: str = Field(DEFAULT_TARGET_NODE_ANNOTATION, min_length=1)
    failure_annotation: str = Field(DEFAULT_FAILURE_ANNOTATION, min_length=1)
    namespace: Optional[str] = Field(
        None,
        description="Restrict watches to one namespace. None = all namespaces.",
    )

    # Retry policy
    max_attempts: int = Field(DEFAULT_MAX_ATTEMPTS, ge=1)
    backoff_base_s: float = Field(DEFAULT_BACKOFF_BASE_S, ge=0.0)
    backoff_cap_s: float = Field(DEFAULT_BACKOFF_CAP_S, ge=0.0)

    # Cadence
    job_poll_interval_s: float = Field(DEFAULT_JOB_POLL_INTERVAL_S, gt=0.0)
    node_wait_interval_s: float = Field(DEFAULT_NODE_WAIT_INTERVAL_S, gt=0.0)
    node_resolution_warn_after_s: float = Field(DEFAULT_NODE_RESOLUTION_WARN_AFTER_S, ge=0.0)
    sweep_interval_s: float = Field(DEFAULT_SWEEP_INTERVAL_S, gt=0.0)
    worker_count: int = Field(DEFAULT_WORKER_COUNT, ge=1, le=64)

    # Fetch job template
    fetcher_image: str = Field(DEFAULT_FETCHER_IMAGE, min_length=1)
    cache_root: str = Field(DEFAULT_CACHE_ROOT, min_length=1)
    fetcher_cpu: str = "250m"
    fetcher_memory: str = "256Mi"
    job_ttl_s: int = Field(DEFAULT_JOB_TTL_S, ge=1)
    job_active_deadline_s: int = Field(DEFAULT_JOB_ACTIVE_DEADLINE_S, ge=1)
    service_account: Optional[str] = None

    # Cache oracle
    cache_oracle: str = Field(
        "marker",
        pattern="^(marker|node-label)$",
        description="'marker' probes <cache_root>/<node>/<key>/.complete; "
                    "'node-label' reads cache.kube-cache.io/<key>=ready on the node.",
    )

    # Observability
    log_level: str = "INFO"
    metrics_port: Optional[int] = Field(None, ge=1, le=65535)
    trace_exporter: str = Field(
        "none",
        pattern="^(none|console|otlp)$",
        description="Where delegation spans go. 'otlp' needs otlp_endpoint.",
    )
    otlp_endpoint: Optional[str] = None
    service_name: str = Field("kube-cache", min_length=1)

    @model_validator(mode="after")
    def _check_job_ttl(self) -> "ControllerSettings":
        if self.job_ttl_s <= self.backoff_cap_s:
            raise ValueError(
                f"job_ttl_s ({self.job_ttl_s}) must exceed backoff_cap_s "
                f"({self.backoff_cap_s})"
            )
        return self

    @model_validator(mode="after")
    def _check_otlp_endpoint(self) -> "ControllerSettings":
        if self.trace_exporter == "otlp" and not self.otlp_endpoint:
            raise ValueError("trace_exporter 'otlp' requires otlp_endpoint")
        return self

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        prefix: str = "KUBE_CACHE_",
    ) -> "ControllerSettings":
        """
        Build settings from KUBE_CACHE_* environment variables.

        Empty strings are treated as unset. Pydantic performs the type
        coercion ("5" → 5, "2.5" → 2.5).

        Raises:
            ConfigurationError: if any variable fails validation.
        """
        environ = os.environ if environ is None else environ
        values = {}
        for field_name in cls.model_fields:
            raw = environ.get(prefix + field_name.upper())
            if raw is not None and raw.strip() != "":
                values[field_name] = raw.strip()
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(f"invalid controller settings: {e}") from e
