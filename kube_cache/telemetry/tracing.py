"""
kube_cache/telemetry/tracing.py
───────────────────────────────
One OpenTelemetry span per delegation attempt.

A delegation attempt outlives any single reconcile call: the job is created
in one call and its outcome is consumed in a later one, possibly by a
restarted controller. So the span is not held open in memory. It is
started and ended in one go when the reconciler consumes the attempt's
terminal condition, with explicit start/end times taken from the job's own
status timestamps.

setup_tracing() installs the process-wide TracerProvider and exporter; it is
called once from the controller entrypoint. Until it runs, the OpenTelemetry
API hands out no-op tracers, so recording spans costs nothing in tests or
when tracing is off.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanProcessor
from opentelemetry.trace import SpanKind, Status, StatusCode

from kube_cache.shared.models import DelegationJob, JobCompletion
from kube_cache.telemetry.metrics import DELEGATION_ATTEMPTS, DELEGATION_DURATION

logger = logging.getLogger(__name__)

TRACER_NAME = "kube_cache.delegation"
SPAN_NAME = "delegation.attempt"

MAX_REMEMBERED_SPANS: int = 10_000
"""Span dedup memory. Only bounds memory; a restart may re-emit a span."""


def setup_tracing(
    service_name: str = "kube-cache",
    exporter: str = "none",
    otlp_endpoint: Optional[str] = None,
) -> Optional[TracerProvider]:
    """
    Install a global TracerProvider exporting to `exporter`.

    Args:
        service_name:  Resource service.name on every span.
        exporter:      "none", "console" or "otlp".
        otlp_endpoint: gRPC collector endpoint, required for "otlp".

    Returns:
        The installed provider, or None when exporter is "none".
    """
    if exporter == "none":
        logger.info("Tracing exporter set to 'none'; spans are not exported")
        return None

    processor = _create_span_processor(exporter, otlp_endpoint)
    provider = TracerProvider(resource=Resource.create({SERVICE_NAME: service_name}))
    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)
    logger.info("OpenTelemetry tracing initialized: service=%s, exporter=%s", service_name, exporter)
    return provider


def _create_span_processor(exporter: str, otlp_endpoint: Optional[str]) -> SpanProcessor:
    if exporter == "console":
        return BatchSpanProcessor(ConsoleSpanExporter())
    if exporter == "otlp":
        if not otlp_endpoint:
            raise ValueError("otlp exporter requires an endpoint")
        return BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint))
    raise ValueError(f"unknown trace exporter: {exporter!r}")


def _to_ns(moment: datetime) -> int:
    return int(moment.timestamp() * 1_000_000_000)


class DelegationSpanRecorder:
    """Emits at most one span per concluded job (keyed by namespace/name/attempt)."""

    def __init__(
        self,
        tracer: Optional[trace.Tracer] = None,
        max_remembered: int = MAX_REMEMBERED_SPANS,
    ) -> None:
        self._tracer = tracer
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._max = max_remembered
        self._lock = threading.Lock()

    @property
    def tracer(self) -> trace.Tracer:
        # Resolved lazily so a provider installed after construction is used.
        if self._tracer is None:
            return trace.get_tracer(TRACER_NAME)
        return self._tracer

    def record(self, job: DelegationJob, now: Optional[datetime] = None) -> bool:
        """
        Emit the span for a concluded job. Returns False if it was already
        emitted or the job has not concluded.
        """
        if job.completion == JobCompletion.RUNNING:
            return False
        span_key = f"{job.namespace}/{job.name}/{job.attempt}"
        with self._lock:
            if span_key in self._seen:
                return False
            self._seen[span_key] = None
            if len(self._seen) > self._max:
                self._seen.popitem(last=False)

        end = job.finished_at or now or datetime.now(timezone.utc)
        start = min(job.started_at or end, end)
        outcome = job.completion.value.lower()

        span = self.tracer.start_span(
            SPAN_NAME,
            kind=SpanKind.INTERNAL,
            start_time=_to_ns(start),
            attributes={
                "kube_cache.workload": job.owner.key,
                "kube_cache.workload.uid": job.owner.uid,
                "kube_cache.node": job.target_node,
                "kube_cache.dataset": job.dataset_ref,
                "kube_cache.attempt": job.attempt,
                "kube_cache.job": job.name,
                "kube_cache.outcome": outcome,
            },
        )
        if job.completion == JobCompletion.SUCCEEDED:
            span.set_status(Status(StatusCode.OK))
        else:
            span.set_status(Status(StatusCode.ERROR, f"delegation job {job.name} failed"))
        span.end(end_time=_to_ns(end))

        DELEGATION_ATTEMPTS.labels(outcome=outcome).inc()
        DELEGATION_DURATION.observe((end - start).total_seconds())
        return True
