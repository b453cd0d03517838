import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List

from mcp import StdioServerParameters
from mcp.client.session import ClientSession
from mcp.client.stdio import stdio_client

from ..settings import get_settings

logger = logging.getLogger(__name__)


PROJECT_ROOT = Path(__file__).resolve().parents[3]

INSPECTION_TOOLS = frozenset(
    {
        "get_workload_status",
        "get_logs",
        "get_events",
        "get_metrics",
        "list_related_resources",
    }
)
REMEDIATION_TOOLS = frozenset({"create_pull_request", "create_issue"})


@dataclass(frozen=True)
class McpServerConfig:
    name: str
    command: str | None


def default_server_configs() -> List[McpServerConfig]:
    settings = get_settings()
    return [
        McpServerConfig(name="kubernetes", command=settings.mcp_kubernetes_cmd),
        McpServerConfig(name="github", command=settings.mcp_github_cmd),
    ]


def _server_params(config: McpServerConfig) -> StdioServerParameters | None:
    """Build stdio parameters for a configured server, or None if it cannot be started."""
    if not config.command:
        return None
    cmd_parts = config.command.split()
    if len(cmd_parts) < 2:
        logger.warning("Invalid MCP command format for '%s': %s", config.name, config.command)
        return None
    env = {**os.environ, "PYTHONPATH": str(PROJECT_ROOT / "src")}
    return StdioServerParameters(command=cmd_parts[0], args=cmd_parts[1:], env=env)


class McpToolbox:
    """Tool schemas and execution for the MCP servers the stages may use.

    Schemas are loaded once and cached in OpenAI function format. Each
    execution opens a short stdio session to the server that owns the tool.
    """

    def __init__(self, servers: Iterable[McpServerConfig] | None = None) -> None:
        self._servers = list(servers) if servers is not None else default_server_configs()
        self._schemas: List[Dict[str, Any]] | None = None
        self._owners: Dict[str, McpServerConfig] = {}

    async def load_tools(self) -> List[Dict[str, Any]]:
        """Load tools from all MCP servers (cached).

        Returns:
            List[Dict[str, Any]]: Tool schemas as {"type": "function", "function": {...}}.
        """
        if self._schemas is not None:
            return self._schemas

        all_tools: List[Dict[str, Any]] = []
        for config in self._servers:
            params = _server_params(config)
            if params is None:
                logger.info("MCP server '%s' has no startup command configured; skipping", config.name)
                continue
            try:
                async with stdio_client(params) as (read, write):
                    async with ClientSession(read, write) as session:
                        await session.initialize()
                        tools_result = await session.list_tools()
                        for tool_info in tools_result.tools:
                            self._owners[tool_info.name] = config
                            all_tools.append(
                                {
                                    "type": "function",
                                    "function": {
                                        "name": tool_info.name,
                                        "description": tool_info.description or "",
                                        "parameters": tool_info.inputSchema or {},
                                    },
                                }
                            )
            except (OSError, ConnectionError, TimeoutError) as e:
                logger.warning("Failed to connect to MCP server '%s': %s", config.name, e)
                continue

        self._schemas = all_tools
        logger.info("Loaded %d MCP tools", len(all_tools))
        return all_tools

    async def schemas_for(self, names: Iterable[str]) -> List[Dict[str, Any]]:
        """Schemas restricted to the given tool names."""
        wanted = set(names)
        return [t for t in await self.load_tools() if t["function"]["name"] in wanted]

    async def execute(self, name: str, arguments: Dict[str, Any]) -> str:
        """Run a tool on the server that owns it.

        Returns:
            str: The tool's text result, or a JSON error object.
        """
        await self.load_tools()
        config = self._owners.get(name)
        params = _server_params(config) if config is not None else None
        if params is None:
            logger.error("Tool %s not found on any MCP server", name)
            return json.dumps({"error": f"Tool {name} not found"})

        logger.info("Calling MCP tool %s on server %s", name, config.name)
        try:
            async with stdio_client(params) as (read, write):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    result = await session.call_tool(name, arguments)
        except (OSError, ConnectionError, TimeoutError) as e:
            logger.error("MCP tool %s failed on server %s: %s", name, config.name, e)
            return json.dumps({"error": str(e)})

        if result.content:
            return getattr(result.content[0], "text", "") or ""
        return json.dumps({"error": f"Tool {name} returned no content"})
