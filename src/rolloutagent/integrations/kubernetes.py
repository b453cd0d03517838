"""Read-only cluster inspection used by the kubernetes MCP server.

Every public coroutine returns a JSON-serializable dict: the result, or
{"error": ...} when the API call fails.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional

from kubernetes_asyncio import client, config
from kubernetes_asyncio.client.rest import ApiException

logger = logging.getLogger(__name__)

METRICS_GROUP = "metrics.k8s.io"
METRICS_VERSION = "v1beta1"
RESOURCE_TYPES = ("pods", "deployments", "replicasets", "services")


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _api_error(action: str, e: ApiException) -> Dict[str, Any]:
    logger.warning("Kubernetes API error while %s: %s %s", action, e.status, e.reason)
    return {"error": f"Failed {action}: {e.status} {e.reason}", "status": e.status}


def _container_state(state: Any) -> str:
    if state is None:
        return "unknown"
    if state.running is not None:
        return "running"
    if state.waiting is not None:
        return f"waiting: {state.waiting.reason or ''}".rstrip(": ")
    if state.terminated is not None:
        return f"terminated: {state.terminated.reason or ''} (exit {state.terminated.exit_code})"
    return "unknown"


def summarize_pod(pod: Any) -> Dict[str, Any]:
    statuses = pod.status.container_statuses or []
    return {
        "kind": "Pod",
        "name": pod.metadata.name,
        "labels": pod.metadata.labels or {},
        "phase": pod.status.phase,
        "ready": bool(statuses) and all(s.ready for s in statuses),
        "restarts": sum(s.restart_count or 0 for s in statuses),
        "node": pod.spec.node_name,
        "startTime": _ts(pod.status.start_time),
        "containers": [
            {
                "name": s.name,
                "image": s.image,
                "ready": s.ready,
                "restartCount": s.restart_count,
                "state": _container_state(s.state),
                "lastState": _container_state(s.last_state) if s.last_state else None,
            }
            for s in statuses
        ],
    }


def summarize_deployment(deployment: Any) -> Dict[str, Any]:
    status = deployment.status
    return {
        "kind": "Deployment",
        "name": deployment.metadata.name,
        "labels": deployment.metadata.labels or {},
        "replicas": deployment.spec.replicas,
        "readyReplicas": status.ready_replicas or 0,
        "availableReplicas": status.available_replicas or 0,
        "updatedReplicas": status.updated_replicas or 0,
        "selector": (deployment.spec.selector.match_labels or {}) if deployment.spec.selector else {},
        "conditions": [
            {"type": c.type, "status": c.status, "reason": c.reason, "message": c.message}
            for c in (status.conditions or [])
        ],
    }


def _summarize_other(item: Any, kind: str) -> Dict[str, Any]:
    return {"kind": kind, "name": item.metadata.name, "labels": item.metadata.labels or {}}


class KubernetesInspector:
    """Async access to the handful of read-only queries the diagnostic stage needs.

    Configuration is loaded on first use: in-cluster first, then the local
    kubeconfig (kube_config_path, or the default location).
    """

    def __init__(self, kube_config_path: Optional[str] = None) -> None:
        self._kube_config_path = kube_config_path
        self._configured = False

    async def _ensure_config(self) -> None:
        if self._configured:
            return
        try:
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes configuration")
        except config.ConfigException:
            await config.load_kube_config(config_file=self._kube_config_path)
            logger.info("Loaded Kubernetes configuration from kubeconfig file")
        self._configured = True

    @asynccontextmanager
    async def _api(self) -> AsyncIterator[client.ApiClient]:
        await self._ensure_config()
        async with client.ApiClient() as api:
            yield api

    async def get_workload_status(self, namespace: str, name: str) -> Dict[str, Any]:
        """Status of a pod, or of a deployment when no pod has that name."""
        async with self._api() as api:
            try:
                pod = await client.CoreV1Api(api).read_namespaced_pod(name=name, namespace=namespace)
                return summarize_pod(pod)
            except ApiException as e:
                if e.status != 404:
                    return _api_error(f"reading pod {namespace}/{name}", e)
            try:
                deployment = await client.AppsV1Api(api).read_namespaced_deployment(name=name, namespace=namespace)
                return summarize_deployment(deployment)
            except ApiException as e:
                if e.status == 404:
                    return {"error": f"No pod or deployment named {name} in namespace {namespace}"}
                return _api_error(f"reading deployment {namespace}/{name}", e)

    async def get_logs(self, namespace: str, name: str, tail_lines: int = 100, previous: bool = False) -> Dict[str, Any]:
        async with self._api() as api:
            try:
                logs = await client.CoreV1Api(api).read_namespaced_pod_log(
                    name=name,
                    namespace=namespace,
                    tail_lines=tail_lines,
                    previous=previous,
                )
            except ApiException as e:
                return _api_error(f"reading logs for {namespace}/{name}", e)
        return {"pod": name, "namespace": namespace, "previous": previous, "tailLines": tail_lines, "logs": logs or ""}

    async def get_events(self, namespace: str, pod_name: str = "", limit: int = 50) -> Dict[str, Any]:
        """Most recent events in the namespace, optionally only those about one object."""
        field_selector = f"involvedObject.name={pod_name}" if pod_name else None
        async with self._api() as api:
            try:
                result = await client.CoreV1Api(api).list_namespaced_event(
                    namespace=namespace, field_selector=field_selector
                )
            except ApiException as e:
                return _api_error(f"listing events in {namespace}", e)

        def when(event: Any) -> str:
            return _ts(event.last_timestamp or event.event_time or event.metadata.creation_timestamp) or ""

        events = sorted(result.items, key=when, reverse=True)[:limit]
        return {
            "namespace": namespace,
            "events": [
                {
                    "type": e.type,
                    "reason": e.reason,
                    "message": e.message,
                    "object": f"{e.involved_object.kind}/{e.involved_object.name}",
                    "count": e.count,
                    "lastTimestamp": when(e) or None,
                }
                for e in events
            ],
        }

    async def get_metrics(self, namespace: str, name: str) -> Dict[str, Any]:
        """CPU and memory usage of a pod from the metrics API."""
        async with self._api() as api:
            try:
                metrics = await client.CustomObjectsApi(api).get_namespaced_custom_object(
                    group=METRICS_GROUP,
                    version=METRICS_VERSION,
                    namespace=namespace,
                    plural="pods",
                    name=name,
                )
            except ApiException as e:
                if e.status == 404:
                    return {"error": f"No metrics available for pod {namespace}/{name} (is metrics-server installed?)"}
                return _api_error(f"reading metrics for {namespace}/{name}", e)
        return {
            "pod": name,
            "namespace": namespace,
            "timestamp": metrics.get("timestamp"),
            "containers": [
                {"name": c.get("name"), "usage": c.get("usage", {})} for c in metrics.get("containers", [])
            ],
        }

    async def list_related_resources(
        self,
        namespace: str,
        resource_type: str = "",
        name: str = "",
        label_selector: str = "",
    ) -> Dict[str, Any]:
        """List resources of one type, filtered by label selector and/or name prefix.

        resource_type defaults to pods. When only a deployment name is given for
        pods, the deployment's selector is used to find its pods.
        """
        kind = (resource_type or "pods").lower()
        if kind not in RESOURCE_TYPES:
            return {"error": f"Unsupported resource type {resource_type}; expected one of {', '.join(RESOURCE_TYPES)}"}

        async with self._api() as api:
            core = client.CoreV1Api(api)
            apps = client.AppsV1Api(api)
            selector = label_selector or None
            try:
                if kind == "pods" and name and not label_selector:
                    selector = await self._deployment_selector(apps, namespace, name)
                if kind == "pods":
                    result = await core.list_namespaced_pod(namespace=namespace, label_selector=selector)
                    items = [summarize_pod(p) for p in result.items]
                elif kind == "deployments":
                    result = await apps.list_namespaced_deployment(namespace=namespace, label_selector=selector)
                    items = [summarize_deployment(d) for d in result.items]
                elif kind == "replicasets":
                    result = await apps.list_namespaced_replica_set(namespace=namespace, label_selector=selector)
                    items = [_summarize_other(r, "ReplicaSet") for r in result.items]
                else:
                    result = await core.list_namespaced_service(namespace=namespace, label_selector=selector)
                    items = [_summarize_other(s, "Service") for s in result.items]
            except ApiException as e:
                return _api_error(f"listing {kind} in {namespace}", e)

        if name and not selector:
            items = [i for i in items if i["name"].startswith(name)]
        return {"namespace": namespace, "resourceType": kind, "labelSelector": selector, "count": len(items), "items": items}

    @staticmethod
    async def _deployment_selector(apps: client.AppsV1Api, namespace: str, name: str) -> Optional[str]:
        try:
            deployment = await apps.read_namespaced_deployment(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        labels: Dict[str, str] = {}
        if deployment.spec.selector is not None:
            labels = deployment.spec.selector.match_labels or {}
        return ",".join(f"{k}={v}" for k, v in sorted(labels.items())) or None
