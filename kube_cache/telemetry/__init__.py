"""
kube_cache/telemetry — metrics and delegation spans.

Public API:
    DelegationSpanRecorder  — one OpenTelemetry span per concluded delegation attempt
    setup_tracing           — install the process-wide tracer provider and exporter
    metrics                 — prometheus_client counters / histograms
"""

from kube_cache.telemetry import metrics
from kube_cache.telemetry.tracing import DelegationSpanRecorder, setup_tracing

__all__ = ["DelegationSpanRecorder", "metrics", "setup_tracing"]
