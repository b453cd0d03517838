"""Agent package for the rollout analysis service.

The pipeline pieces (governor, retry wrapper, stages, workflow, MCP
toolbox) live in separate modules; RolloutAgentService wires them together.
"""

from .agent import RolloutAgentService, build_prompt, safe_default
from .toolbox import McpToolbox
from .workflow import WorkflowState

__all__ = [
    "McpToolbox",
    "RolloutAgentService",
    "WorkflowState",
    "build_prompt",
    "safe_default",
]
