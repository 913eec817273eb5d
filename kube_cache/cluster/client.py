"""
kube_cache/cluster/client.py
────────────────────────────
The Cluster State Client: the only code that talks to the API server.

Two pieces:

  ClusterStateClient        — the protocol the reconciler depends on.
                              Plain dicts in, plain dicts out; every failure
                              is one of the classes in cluster/errors.py.

  KubernetesClusterClient   — the implementation over the official
                              `kubernetes` Python client (CoreV1Api +
                              BatchV1Api + watch.Watch).

Tests substitute an in-memory implementation of the protocol
(tests/conftest.py), so nothing above this module ever imports `kubernetes`.

Write semantics
────────────────
Every pod mutation is conditional on the resourceVersion the caller read:

  remove_scheduling_gate → JSON patch with two `test` ops (resourceVersion
                           and the gate's name at its index) before the
                           `remove`. Any change to the pod fails the test
                           (422) and surfaces as ConflictError.
  annotate_pod           → strategic merge patch carrying
                           metadata.resourceVersion, which the API server
                           enforces as a precondition (409 → ConflictError).
                           A None value removes that annotation.

Job creation relies on the server's name uniqueness: a second create of the
same deterministic name fails with AlreadyExistsError.
"""

from __future__ import annotations

import functools
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple

from kubernetes import client, config, watch
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from kube_cache.cluster.errors import (
    ConfigurationError,
    ResourceExpiredError,
    TransientApiError,
    translate_api_exception,
)
from kube_cache.shared.models import WorkloadIdentity

logger = logging.getLogger(__name__)

EVENT_COMPONENT = "kube-cache"

WatchEvent = Tuple[str, Dict[str, Any]]


class ClusterStateClient(Protocol):
    """What the reconciler and controller runtime need from the cluster."""

    def get_pod(self, namespace: str, name: str) -> Optional[Dict[str, Any]]: ...

    def list_pods(self, namespace: Optional[str] = None) -> Tuple[List[Dict[str, Any]], str]: ...

    def watch_pods(
        self, namespace: Optional[str], resource_version: str, timeout_seconds: int
    ) -> Iterator[WatchEvent]: ...

    def remove_scheduling_gate(
        self, namespace: str, name: str, gate_index: int, gate_name: str, resource_version: str
    ) -> Dict[str, Any]: ...

    def annotate_pod(
        self, namespace: str, name: str, annotations: Dict[str, Optional[str]], resource_version: str
    ) -> Dict[str, Any]: ...

    def list_jobs(self, namespace: Optional[str], label_selector: str) -> Tuple[List[Dict[str, Any]], str]: ...

    def watch_jobs(
        self, namespace: Optional[str], label_selector: str, resource_version: str, timeout_seconds: int
    ) -> Iterator[WatchEvent]: ...

    def get_job(self, namespace: str, name: str) -> Optional[Dict[str, Any]]: ...

    def create_job(self, namespace: str, manifest: Dict[str, Any]) -> Dict[str, Any]: ...

    def delete_job(self, namespace: str, name: str) -> None: ...

    def get_node(self, name: str) -> Optional[Dict[str, Any]]: ...

    def list_nodes(self, label_selector: str) -> List[Dict[str, Any]]: ...

    def create_event(
        self, involved: WorkloadIdentity, reason: str, message: str, event_type: str = "Normal"
    ) -> None: ...


# ── Kubernetes config loader ──────────────────────────────────────────────────

def load_cluster_config() -> None:
    """
    Load credentials: local kubeconfig first, then in-cluster service account.

    Raises:
        ConfigurationError: if neither source is available.
    """
    try:
        logger.info("Trying to load local kubeconfig...")
        config.load_kube_config()
        logger.info("Loaded local kubeconfig.")
    except ConfigException:
        logger.warning("Local kubeconfig not found. Trying in-cluster config...")
        try:
            config.load_incluster_config()
            logger.info("Loaded in-cluster config.")
        except ConfigException as e:
            logger.error("Failed to load any Kubernetes config.")
            raise ConfigurationError("Kubernetes configuration could not be loaded.") from e


def _api_call(patch: bool = False):
    """Translate ApiException / urllib3 failures into the cluster error taxonomy."""

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except ApiException as e:
                raise translate_api_exception(e, patch=patch) from e
            except Urllib3HTTPError as e:
                raise TransientApiError(f"network error talking to API server: {e}") from e
        return wrapper

    return decorator


def event_body(
    involved: WorkloadIdentity, reason: str, message: str, event_type: str = "Normal"
) -> Dict[str, Any]:
    """core/v1 Event manifest attached to a pod."""
    now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    return {
        "apiVersion": "v1",
        "kind": "Event",
        "metadata": {"generateName": f"{involved.name}.", "namespace": involved.namespace},
        "involvedObject": {
            "apiVersion": "v1",
            "kind": "Pod",
            "namespace": involved.namespace,
            "name": involved.name,
            "uid": involved.uid,
        },
        "reason": reason,
        "message": message[:1024],
        "type": event_type,
        "source": {"component": EVENT_COMPONENT},
        "reportingComponent": EVENT_COMPONENT,
        "firstTimestamp": now,
        "lastTimestamp": now,
        "count": 1,
    }


class KubernetesClusterClient:
    """
    ClusterStateClient over the official kubernetes client.

    All returned objects are sanitized to camelCase dicts, so callers see the
    same shape whether the object came from a GET, a LIST or a watch.
    """

    def __init__(self, api_client: Optional[client.ApiClient] = None) -> None:
        if api_client is None:
            load_cluster_config()
            api_client = client.ApiClient()
        self._api_client = api_client
        self._core = client.CoreV1Api(api_client)
        self._batch = client.BatchV1Api(api_client)

    def _to_dict(self, obj: Any) -> Dict[str, Any]:
        return self._api_client.sanitize_for_serialization(obj)

    # ── Pods ──────────────────────────────────────────────────────────────────

    @_api_call()
    def get_pod(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        try:
            return self._to_dict(self._core.read_namespaced_pod(name=name, namespace=namespace))
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    @_api_call()
    def list_pods(self, namespace: Optional[str] = None) -> Tuple[List[Dict[str, Any]], str]:
        if namespace:
            result = self._core.list_namespaced_pod(namespace=namespace)
        else:
            result = self._core.list_pod_for_all_namespaces()
        items = [self._to_dict(p) for p in result.items]
        return items, result.metadata.resource_version or ""

    def watch_pods(
        self, namespace: Optional[str], resource_version: str, timeout_seconds: int
    ) -> Iterator[WatchEvent]:
        if namespace:
            return self._stream(
                self._core.list_namespaced_pod,
                resource_version,
                timeout_seconds,
                namespace=namespace,
            )
        return self._stream(self._core.list_pod_for_all_namespaces, resource_version, timeout_seconds)

    @_api_call(patch=True)
    def remove_scheduling_gate(
        self, namespace: str, name: str, gate_index: int, gate_name: str, resource_version: str
    ) -> Dict[str, Any]:
        body = [
            {"op": "test", "path": "/metadata/resourceVersion", "value": resource_version},
            {"op": "test", "path": f"/spec/schedulingGates/{gate_index}/name", "value": gate_name},
            {"op": "remove", "path": f"/spec/schedulingGates/{gate_index}"},
        ]
        return self._to_dict(self._core.patch_namespaced_pod(name=name, namespace=namespace, body=body))

    @_api_call(patch=True)
    def annotate_pod(
        self, namespace: str, name: str, annotations: Dict[str, Optional[str]], resource_version: str
    ) -> Dict[str, Any]:
        body = {"metadata": {"resourceVersion": resource_version, "annotations": annotations}}
        return self._to_dict(self._core.patch_namespaced_pod(name=name, namespace=namespace, body=body))

    # ── Jobs ──────────────────────────────────────────────────────────────────

    @_api_call()
    def list_jobs(self, namespace: Optional[str], label_selector: str) -> Tuple[List[Dict[str, Any]], str]:
        if namespace:
            result = self._batch.list_namespaced_job(namespace=namespace, label_selector=label_selector)
        else:
            result = self._batch.list_job_for_all_namespaces(label_selector=label_selector)
        return [self._to_dict(j) for j in result.items], result.metadata.resource_version or ""

    def watch_jobs(
        self, namespace: Optional[str], label_selector: str, resource_version: str, timeout_seconds: int
    ) -> Iterator[WatchEvent]:
        if namespace:
            return self._stream(
                self._batch.list_namespaced_job,
                resource_version,
                timeout_seconds,
                namespace=namespace,
                label_selector=label_selector,
            )
        return self._stream(
            self._batch.list_job_for_all_namespaces,
            resource_version,
            timeout_seconds,
            label_selector=label_selector,
        )

    @_api_call()
    def get_job(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        try:
            return self._to_dict(self._batch.read_namespaced_job(name=name, namespace=namespace))
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    @_api_call()
    def create_job(self, namespace: str, manifest: Dict[str, Any]) -> Dict[str, Any]:
        return self._to_dict(self._batch.create_namespaced_job(namespace=namespace, body=manifest))

    @_api_call()
    def delete_job(self, namespace: str, name: str) -> None:
        try:
            self._batch.delete_namespaced_job(
                name=name, namespace=namespace, propagation_policy="Background"
            )
        except ApiException as e:
            if e.status != 404:
                raise

    # ── Nodes & events ────────────────────────────────────────────────────────

    @_api_call()
    def get_node(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            return self._to_dict(self._core.read_node(name=name))
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    @_api_call()
    def list_nodes(self, label_selector: str) -> List[Dict[str, Any]]:
        return [self._to_dict(n) for n in self._core.list_node(label_selector=label_selector).items]

    @_api_call()
    def create_event(
        self, involved: WorkloadIdentity, reason: str, message: str, event_type: str = "Normal"
    ) -> None:
        self._core.create_namespaced_event(
            namespace=involved.namespace,
            body=event_body(involved, reason, message, event_type),
        )

    # ── Watch plumbing ────────────────────────────────────────────────────────

    def _stream(self, list_fn, resource_version: str, timeout_seconds: int, **kwargs) -> Iterator[WatchEvent]:
        """
        Yield (event_type, raw_object) pairs until the server closes the watch.

        Raises:
            ResourceExpiredError: the resourceVersion is too old (410); relist.
            TransientApiError / ClusterApiError: any other failure.
        """
        w = watch.Watch()
        try:
            for event in w.stream(
                list_fn,
                resource_version=resource_version or None,
                timeout_seconds=timeout_seconds,
                **kwargs,
            ):
                event_type = event.get("type")
                raw = event.get("raw_object") or {}
                if event_type == "ERROR":
                    code = raw.get("code")
                    if code == 410:
                        raise ResourceExpiredError(raw.get("message", "watch expired"), 410)
                    raise TransientApiError(raw.get("message", "watch error"), code)
                yield event_type, raw
        except ApiException as e:
            raise translate_api_exception(e) from e
        except Urllib3HTTPError as e:
            raise TransientApiError(f"watch connection lost: {e}") from e
        finally:
            w.stop()
