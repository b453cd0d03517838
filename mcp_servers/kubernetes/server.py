"""Read-only Kubernetes inspection MCP server."""

import json

from fastmcp import FastMCP

from rolloutagent.integrations.kubernetes import KubernetesInspector
from rolloutagent.settings import get_settings

inspector = KubernetesInspector(get_settings().kube_config_path)

mcp = FastMCP("Kubernetes Inspection")


@mcp.tool()
async def get_workload_status(namespace: str, name: str) -> str:
    """Get the status of a pod or deployment (phase, readiness, restarts, container states)."""
    return json.dumps(await inspector.get_workload_status(namespace, name), indent=2)


@mcp.tool()
async def get_logs(namespace: str, name: str, tail_lines: int = 100, previous: bool = False) -> str:
    """Get the last tail_lines log lines of a pod. Set previous=true for the last crashed container."""
    return json.dumps(await inspector.get_logs(namespace, name, tail_lines, previous), indent=2)


@mcp.tool()
async def get_events(namespace: str, pod_name: str = "", limit: int = 50) -> str:
    """Get recent events in a namespace, newest first.

    Pass an empty string for `pod_name` to get events for every object in the
    namespace.
    """
    return json.dumps(await inspector.get_events(namespace, pod_name, limit), indent=2)


@mcp.tool()
async def get_metrics(namespace: str, name: str) -> str:
    """Get current CPU and memory usage of a pod (requires metrics-server)."""
    return json.dumps(await inspector.get_metrics(namespace, name), indent=2)


@mcp.tool()
async def list_related_resources(
    namespace: str,
    resource_type: str = "",
    name: str = "",
    label_selector: str = "",
) -> str:
    """List pods (default), deployments, replicasets or services.

    Filter with a label selector such as "role=canary", or give a deployment
    name to list its pods. Empty strings mean "no filter".
    """
    return json.dumps(
        await inspector.list_related_resources(namespace, resource_type, name, label_selector),
        indent=2,
    )


if __name__ == "__main__":
    mcp.run(transport="stdio")
