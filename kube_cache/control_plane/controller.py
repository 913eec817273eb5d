"""
kube_cache/control_plane/controller.py
──────────────────────────────────────
Controller runtime: turns cluster notifications into reconcile calls.

    pod watch ─┐
    job watch ─┼──► WorkQueue ──► worker pool ──► Reconciler.reconcile(key)
    sweep     ─┘        ▲                               │
                        └──── requeue_after / errors ◄──┘

Sources of keys
────────────────
  Pod watch   → any pod carrying our gate, plus any pod we are tracking
                (so deletions and external gate removal are noticed).
  Job watch   → managed jobs only (label selector). A job event enqueues its
                owner pod's key, which is how job completion wakes the pod.
  Sweep       → every sweep_interval_s: all gated pods plus every tracked
                key. Covers missed watch events and controller restarts.

Both watches relist on 410 Gone and back off on any other error. None of
them ever reconciles inline; they only enqueue.

Outcomes
─────────
  requeue_after None  → forget the key's failure backoff; wait for events.
  requeue_after 0     → rate-limited requeue (conflicts, races).
  requeue_after > 0   → forget backoff, revisit after that delay.
  exception           → counted, logged, rate-limited requeue. A failing
                        workload never stops the others.
"""

from __future__ import annotations

import logging
import signal
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from prometheus_client import start_http_server

from kube_cache.cluster.client import ClusterStateClient, KubernetesClusterClient, WatchEvent
from kube_cache.cluster.convert import delegation_job_from_object, identity_of, is_candidate
from kube_cache.cluster.errors import ClusterApiError, ConfigurationError, ResourceExpiredError
from kube_cache.control_plane.cache_oracle import build_oracle
from kube_cache.control_plane.reconciler import Reconciler
from kube_cache.control_plane.workqueue import WorkQueue
from kube_cache.shared import labels
from kube_cache.shared.config import ControllerSettings
from kube_cache.shared.models import ReconcileOutcome
from kube_cache.telemetry.metrics import RECONCILE_ERRORS
from kube_cache.telemetry.tracing import setup_tracing

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

WATCH_TIMEOUT_S: int = 300
"""Server-side watch timeout; the stream is reopened from the last resourceVersion."""

WATCH_ERROR_BACKOFF_S: float = 5.0
"""Pause before reopening a watch that failed with a non-410 error."""

WORKER_POLL_S: float = 1.0
"""How long an idle worker blocks on the queue before re-checking for shutdown."""


class DelegationController:
    """
    Owns the work queue, the worker pool, both watches and the sweep.

    Args:
        cluster:    ClusterStateClient.
        reconciler: Reconciler bound to the same cluster.
        settings:   Controller settings (namespace scope, worker count, sweep).
        queue:      Work queue. Created if omitted.
    """

    def __init__(
        self,
        cluster: ClusterStateClient,
        reconciler: Reconciler,
        settings: ControllerSettings,
        queue: Optional[WorkQueue] = None,
    ) -> None:
        self._cluster = cluster
        self._reconciler = reconciler
        self._settings = settings
        self._queue = queue if queue is not None else WorkQueue()
        self._stop = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._threads: List[threading.Thread] = []

    @property
    def queue(self) -> WorkQueue:
        return self._queue

    # ─────────────────────────────────────────────────────────────────────────
    # Event handlers
    # ─────────────────────────────────────────────────────────────────────────

    def handle_pod_event(self, event_type: str, pod: Dict[str, Any]) -> bool:
        """Enqueue the pod if it is ours. Returns True if it was enqueued."""
        key = identity_of(pod).key
        tracked = self._reconciler.tracker.phase_of(key) is not None
        if event_type == "DELETED":
            if not tracked:
                return False
        elif not (tracked or is_candidate(pod, self._settings)):
            return False
        self._queue.add(key)
        return True

    def handle_job_event(self, event_type: str, job: Dict[str, Any]) -> bool:
        """Enqueue the owner pod of a managed job."""
        converted = delegation_job_from_object(job)
        if converted is None:
            return False
        self._queue.add(converted.owner.key)
        return True

    def sweep_once(self) -> int:
        """Enqueue every gated pod and every tracked key. Returns how many keys."""
        pods, _ = self._cluster.list_pods(self._settings.namespace)
        keys = {identity_of(p).key for p in pods if is_candidate(p, self._settings)}
        keys.update(self._reconciler.tracker.tracked_keys())
        for key in sorted(keys):
            self._queue.add(key)
        logger.debug("Sweep enqueued %d workloads", len(keys))
        return len(keys)

    # ─────────────────────────────────────────────────────────────────────────
    # Workers
    # ─────────────────────────────────────────────────────────────────────────

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """
        Reconcile one key from the queue.

        Returns:
            False if no key arrived within `timeout` (or the queue is shut
            down), True otherwise.
        """
        key = self._queue.get(timeout)
        if key is None:
            return False
        try:
            outcome = self._reconciler.reconcile(key)
        except ClusterApiError as e:
            RECONCILE_ERRORS.labels(kind=type(e).__name__).inc()
            delay = self._queue.add_rate_limited(key)
            logger.warning("%s: reconcile failed (%s); retrying in %.1fs", key, e, delay)
        except Exception:
            RECONCILE_ERRORS.labels(kind="Unexpected").inc()
            delay = self._queue.add_rate_limited(key)
            logger.exception("%s: unexpected reconcile error; retrying in %.1fs", key, delay)
        else:
            self._apply_outcome(key, outcome)
        finally:
            self._queue.done(key)
        return True

    def _apply_outcome(self, key: str, outcome: ReconcileOutcome) -> None:
        if outcome.requeue_after is None:
            self._queue.forget(key)
        elif outcome.requeue_after <= 0:
            self._queue.add_rate_limited(key)
        else:
            self._queue.forget(key)
            self._queue.add_after(key, outcome.requeue_after)

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            self.process_next(timeout=WORKER_POLL_S)

    # ─────────────────────────────────────────────────────────────────────────
    # Watches and sweep
    # ─────────────────────────────────────────────────────────────────────────

    def _run_watch(
        self,
        name: str,
        list_fn: Callable[[], Tuple[List[Dict[str, Any]], str]],
        watch_fn: Callable[[str], Iterator[WatchEvent]],
        handler: Callable[[str, Dict[str, Any]], bool],
    ) -> None:
        resource_version = ""
        while not self._stop.is_set():
            try:
                if not resource_version:
                    items, resource_version = list_fn()
                    for obj in items:
                        handler("ADDED", obj)
                    logger.info("%s watch: listed %d objects at rv=%s", name, len(items), resource_version)
                for event_type, obj in watch_fn(resource_version):
                    if self._stop.is_set():
                        return
                    rv = (obj.get("metadata") or {}).get("resourceVersion")
                    if rv:
                        resource_version = rv
                    if event_type != "BOOKMARK":
                        handler(event_type, obj)
            except ResourceExpiredError:
                logger.info("%s watch: resourceVersion expired; relisting", name)
                resource_version = ""
            except ClusterApiError as e:
                logger.warning("%s watch failed (%s); retrying in %.0fs", name, e, WATCH_ERROR_BACKOFF_S)
                self._stop.wait(WATCH_ERROR_BACKOFF_S)

    def _watch_pods(self) -> None:
        namespace = self._settings.namespace
        self._run_watch(
            "pod",
            lambda: self._cluster.list_pods(namespace),
            lambda rv: self._cluster.watch_pods(namespace, rv, WATCH_TIMEOUT_S),
            self.handle_pod_event,
        )

    def _watch_jobs(self) -> None:
        namespace = self._settings.namespace
        selector = labels.MANAGED_JOB_SELECTOR
        self._run_watch(
            "job",
            lambda: self._cluster.list_jobs(namespace, selector),
            lambda rv: self._cluster.watch_jobs(namespace, selector, rv, WATCH_TIMEOUT_S),
            self.handle_job_event,
        )

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self._settings.sweep_interval_s):
            try:
                self.sweep_once()
            except ClusterApiError as e:
                logger.warning("Sweep failed (%s); next sweep in %.0fs", e, self._settings.sweep_interval_s)

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self) -> None:
        workers = self._settings.worker_count
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="reconcile")
        for _ in range(workers):
            self._executor.submit(self._worker_loop)
        for name, target in (
            ("pod-watch", self._watch_pods),
            ("job-watch", self._watch_jobs),
            ("sweep", self._sweep_loop),
        ):
            thread = threading.Thread(target=target, name=name, daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(
            "Controller started: gate=%s namespace=%s workers=%d",
            self._settings.gate_name, self._settings.namespace or "<all>", workers,
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self._queue.shutdown()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        for thread in self._threads:
            # Watch threads may sit in a long-poll until the server times out.
            thread.join(timeout)
        self._threads.clear()
        logger.info("Controller stopped")

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()


def main() -> int:
    """Process entrypoint: settings from the environment, run until SIGTERM/SIGINT."""
    try:
        settings = ControllerSettings.from_env()
    except ConfigurationError as e:
        logging.basicConfig(format=LOG_FORMAT)
        logger.error("Invalid configuration: %s", e)
        return 2

    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)

    if settings.metrics_port:
        start_http_server(settings.metrics_port)
        logger.info("Serving metrics on :%d", settings.metrics_port)

    tracer_provider = setup_tracing(
        service_name=settings.service_name,
        exporter=settings.trace_exporter,
        otlp_endpoint=settings.otlp_endpoint,
    )

    try:
        cluster = KubernetesClusterClient()
    except ConfigurationError as e:
        logger.error("%s", e)
        return 1

    oracle = build_oracle(settings, cluster)
    reconciler = Reconciler(cluster, oracle, settings)
    controller = DelegationController(cluster, reconciler, settings)

    shutdown = threading.Event()

    def _on_signal(signum, _frame) -> None:
        logger.info("Received signal %d; shutting down", signum)
        shutdown.set()

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)

    controller.start()
    while not shutdown.wait(1.0):
        pass
    controller.stop()
    if tracer_provider is not None:
        tracer_provider.shutdown()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
