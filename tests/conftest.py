"""
tests/conftest.py
─────────────────
Shared fixtures: an in-memory cluster, a controllable cache oracle and a
manual clock. Nothing here talks to a real API server.

FakeCluster implements ClusterStateClient with the write semantics the real
API server enforces and the controller relies on:

  • every pod write bumps resourceVersion,
  • remove_scheduling_gate tests resourceVersion and the gate name at the
    index before removing (→ ConflictError),
  • annotate_pod honours the resourceVersion precondition and removes
    annotations given as None,
  • create_job rejects a duplicate name (→ AlreadyExistsError),
  • missing pods / jobs raise NotFoundError on writes and return None on reads.

Failures can be injected per method with fail_next("method", exc).
"""

from __future__ import annotations

import copy
import threading
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

import pytest

from kube_cache.cluster.errors import AlreadyExistsError, ConflictError, NotFoundError
from kube_cache.control_plane.reconciler import Reconciler
from kube_cache.shared.config import ControllerSettings
from kube_cache.shared.models import WorkloadIdentity

GATE = "kube-cache.io/dataset-prefetch"
DATASET = "s3://bucket/x"
T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def _ts(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeOracle:
    """has_data() answers from a set of (node, dataset) pairs."""

    def __init__(self) -> None:
        self.cached: Set[Tuple[str, str]] = set()
        self.error: Optional[Exception] = None
        self.calls: List[Tuple[str, str]] = []

    def has_data(self, node: str, dataset_ref: str) -> bool:
        self.calls.append((node, dataset_ref))
        if self.error is not None:
            raise self.error
        return (node, dataset_ref) in self.cached


def _matches(selector: str, obj_labels: Dict[str, str]) -> bool:
    for term in filter(None, selector.split(",")):
        key, _, value = term.partition("=")
        if obj_labels.get(key) != value:
            return False
    return True


class FakeCluster:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._rv = 100
        self.pods: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.jobs: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.nodes: Dict[str, Dict[str, Any]] = {}
        self.events: List[Tuple[WorkloadIdentity, str, str, str]] = []
        self.created_jobs: List[str] = []
        self.deleted_jobs: List[str] = []
        self.gate_patches: int = 0
        self.stale_job_list: bool = False
        self._failures: Dict[str, List[Exception]] = defaultdict(list)

    # ── Test helpers ──────────────────────────────────────────────────────────

    def _next_rv(self) -> str:
        self._rv += 1
        return str(self._rv)

    def fail_next(self, method: str, exc: Exception) -> None:
        self._failures[method].append(exc)

    def _maybe_fail(self, method: str) -> None:
        if self._failures[method]:
            raise self._failures[method].pop(0)

    def add_node(self, name: str, labels: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """Register a node. Its hostname label defaults to its name, as kubelet sets it."""
        node_labels = {"kubernetes.io/hostname": name}
        node_labels.update(labels or {})
        node = {"metadata": {"name": name, "labels": node_labels}}
        self.nodes[name] = node
        return node

    def add_pod(
        self,
        name: str,
        namespace: str = "default",
        dataset: Optional[str] = DATASET,
        node: Optional[str] = "node-a",
        gates: Optional[List[str]] = None,
        annotations: Optional[Dict[str, str]] = None,
        tolerations: Optional[List[Dict[str, Any]]] = None,
        uid: Optional[str] = None,
    ) -> Dict[str, Any]:
        pod_annotations = dict(annotations or {})
        if dataset is not None:
            pod_annotations["kube-cache.io/dataset"] = dataset
        spec: Dict[str, Any] = {
            "schedulingGates": [{"name": g} for g in (gates if gates is not None else [GATE])],
            "containers": [{"name": "train", "image": "trainer:1"}],
        }
        if node is not None:
            spec["nodeSelector"] = {"kubernetes.io/hostname": node}
        if tolerations:
            spec["tolerations"] = tolerations
        pod = {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": {
                "name": name,
                "namespace": namespace,
                "uid": uid or str(uuid.uuid4()),
                "resourceVersion": self._next_rv(),
                "annotations": pod_annotations,
                "creationTimestamp": _ts(T0),
            },
            "spec": spec,
        }
        with self._lock:
            self.pods[(namespace, name)] = pod
        return copy.deepcopy(pod)

    def update_pod(self, namespace: str, name: str, mutate) -> None:
        """Apply mutate(pod) and bump resourceVersion, like any other writer."""
        with self._lock:
            pod = self.pods[(namespace, name)]
            mutate(pod)
            pod["metadata"]["resourceVersion"] = self._next_rv()

    def delete_pod(self, namespace: str, name: str) -> None:
        with self._lock:
            self.pods.pop((namespace, name), None)

    def gate_names(self, namespace: str, name: str) -> List[str]:
        pod = self.pods[(namespace, name)]
        return [g["name"] for g in pod["spec"].get("schedulingGates") or []]

    def finish_job(
        self, name: str, succeeded: bool, at: datetime, namespace: str = "default"
    ) -> None:
        with self._lock:
            job = self.jobs[(namespace, name)]
            cond_type = "Complete" if succeeded else "Failed"
            job["status"] = {
                "startTime": job["status"].get("startTime"),
                "conditions": [
                    {"type": cond_type, "status": "True", "lastTransitionTime": _ts(at)}
                ],
            }
            if succeeded:
                job["status"]["completionTime"] = _ts(at)
                job["status"]["succeeded"] = 1
            else:
                job["status"]["failed"] = 1

    def job_names(self, namespace: str = "default") -> List[str]:
        return sorted(n for (ns, n) in self.jobs if ns == namespace)

    # ── ClusterStateClient ────────────────────────────────────────────────────

    def get_pod(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._maybe_fail("get_pod")
            pod = self.pods.get((namespace, name))
            return copy.deepcopy(pod) if pod is not None else None

    def list_pods(self, namespace: Optional[str] = None) -> Tuple[List[Dict[str, Any]], str]:
        with self._lock:
            self._maybe_fail("list_pods")
            items = [
                copy.deepcopy(p) for (ns, _), p in self.pods.items() if namespace in (None, ns)
            ]
            return items, str(self._rv)

    def watch_pods(self, namespace, resource_version, timeout_seconds) -> Iterator:
        return iter(())

    def remove_scheduling_gate(
        self, namespace: str, name: str, gate_index: int, gate_name: str, resource_version: str
    ) -> Dict[str, Any]:
        with self._lock:
            self._maybe_fail("remove_scheduling_gate")
            pod = self.pods.get((namespace, name))
            if pod is None:
                raise NotFoundError(f"pod {namespace}/{name} not found", 404)
            if pod["metadata"]["resourceVersion"] != resource_version:
                raise ConflictError("test failed: resourceVersion", 422)
            gates = pod["spec"].get("schedulingGates") or []
            if gate_index >= len(gates) or gates[gate_index].get("name") != gate_name:
                raise ConflictError("test failed: gate name", 422)
            del gates[gate_index]
            pod["metadata"]["resourceVersion"] = self._next_rv()
            self.gate_patches += 1
            return copy.deepcopy(pod)

    def annotate_pod(
        self, namespace: str, name: str, annotations: Dict[str, Optional[str]], resource_version: str
    ) -> Dict[str, Any]:
        with self._lock:
            self._maybe_fail("annotate_pod")
            pod = self.pods.get((namespace, name))
            if pod is None:
                raise NotFoundError(f"pod {namespace}/{name} not found", 404)
            if resource_version and pod["metadata"]["resourceVersion"] != resource_version:
                raise ConflictError("resourceVersion precondition failed", 409)
            current = pod["metadata"].setdefault("annotations", {})
            for key, value in annotations.items():
                if value is None:
                    current.pop(key, None)
                else:
                    current[key] = value
            pod["metadata"]["resourceVersion"] = self._next_rv()
            return copy.deepcopy(pod)

    def list_jobs(self, namespace: Optional[str], label_selector: str) -> Tuple[List[Dict[str, Any]], str]:
        with self._lock:
            self._maybe_fail("list_jobs")
            if self.stale_job_list:
                return [], str(self._rv)
            items = [
                copy.deepcopy(j)
                for (ns, _), j in self.jobs.items()
                if namespace in (None, ns)
                and _matches(label_selector, j["metadata"].get("labels") or {})
            ]
            return items, str(self._rv)

    def watch_jobs(self, namespace, label_selector, resource_version, timeout_seconds) -> Iterator:
        return iter(())

    def get_job(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            job = self.jobs.get((namespace, name))
            return copy.deepcopy(job) if job is not None else None

    def create_job(self, namespace: str, manifest: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self._maybe_fail("create_job")
            name = manifest["metadata"]["name"]
            if (namespace, name) in self.jobs:
                raise AlreadyExistsError(f"jobs.batch {name!r} already exists", 409)
            job = copy.deepcopy(manifest)
            job["metadata"]["uid"] = str(uuid.uuid4())
            job["metadata"]["resourceVersion"] = self._next_rv()
            job["status"] = {"startTime": _ts(T0), "active": 1}
            self.jobs[(namespace, name)] = job
            self.created_jobs.append(name)
            return copy.deepcopy(job)

    def delete_job(self, namespace: str, name: str) -> None:
        with self._lock:
            self._maybe_fail("delete_job")
            if self.jobs.pop((namespace, name), None) is not None:
                self.deleted_jobs.append(name)

    def get_node(self, name: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._maybe_fail("get_node")
            node = self.nodes.get(name)
            return copy.deepcopy(node) if node is not None else None

    def list_nodes(self, label_selector: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._maybe_fail("list_nodes")
            return [
                copy.deepcopy(n)
                for n in self.nodes.values()
                if _matches(label_selector, n["metadata"].get("labels") or {})
            ]

    def create_event(
        self, involved: WorkloadIdentity, reason: str, message: str, event_type: str = "Normal"
    ) -> None:
        with self._lock:
            self._maybe_fail("create_event")
            self.events.append((involved, reason, message, event_type))

    def event_reasons(self) -> List[str]:
        return [reason for _, reason, _, _ in self.events]


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def cluster() -> FakeCluster:
    fake = FakeCluster()
    fake.add_node("node-a")
    fake.add_node("node-b")
    return fake


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> ControllerSettings:
    return ControllerSettings(max_attempts=3, backoff_base_s=10.0, backoff_cap_s=300.0)


@pytest.fixture
def reconciler(cluster, oracle, settings, clock) -> Reconciler:
    return Reconciler(cluster, oracle, settings, clock=clock)
