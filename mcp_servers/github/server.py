"""Remediation MCP server: GitHub pull requests and issues."""

import json

from fastmcp import FastMCP

from rolloutagent.integrations.github import GitHubClient
from rolloutagent.settings import get_settings

_settings = get_settings()
github = GitHubClient(_settings.github_token, _settings.github_api_url)

mcp = FastMCP("GitHub Remediation")


@mcp.tool()
async def create_pull_request(
    repo_url: str,
    file_changes: dict[str, str],
    description: str,
    root_cause: str = "",
    namespace: str = "",
    pod_name: str = "",
    testing_notes: str = "",
) -> str:
    """Create a GitHub pull request with code fixes.

    file_changes maps repository file paths to their complete new content.
    The result contains prUrl on success; that URL is the only valid link to
    report.
    """
    result = await github.create_pull_request(
        repo_url, file_changes, description, root_cause, namespace, pod_name, testing_notes
    )
    return json.dumps(result, indent=2)


@mcp.tool()
async def create_issue(
    repo_url: str,
    title: str,
    description: str,
    root_cause: str = "",
    namespace: str = "",
    pod_name: str = "",
    labels: str = "",
    assignees: str = "",
) -> str:
    """Create a GitHub issue for a problem that needs human attention.

    labels and assignees are comma-separated lists.
    """
    result = await github.create_issue(
        repo_url, title, description, root_cause, namespace, pod_name, labels, assignees
    )
    return json.dumps(result, indent=2)


if __name__ == "__main__":
    mcp.run(transport="stdio")
