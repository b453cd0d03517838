"""GitHub REST access for the remediation tools (pull requests and issues)."""

import base64
import logging
import time
from typing import Any, Dict, Iterable, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_TIMEOUT = 30.0


class GitHubError(Exception):
    """A GitHub request failed or the input could not be turned into one."""


def parse_repo_url(repo_url: str) -> Tuple[str, str]:
    """Owner and repository name from https://github.com/owner/repo(.git), git@github.com:owner/repo or owner/repo."""
    cleaned = repo_url.strip()
    for prefix in ("https://github.com/", "http://github.com/", "git@github.com:", "github.com/"):
        if cleaned.startswith(prefix):
            cleaned = cleaned[len(prefix):]
            break
    cleaned = cleaned.rstrip("/")
    if cleaned.endswith(".git"):
        cleaned = cleaned[: -len(".git")]
    parts = cleaned.split("/")
    if len(parts) < 2 or not parts[0] or not parts[1]:
        raise GitHubError(f"Cannot parse owner/repo from repository URL: {repo_url}")
    return parts[0], parts[1]


def _split_csv(value: Optional[str]) -> list[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def pull_request_body(
    root_cause: Optional[str],
    description: str,
    testing_notes: Optional[str],
    namespace: Optional[str],
    pod_name: Optional[str],
    changed_files: Iterable[str],
) -> str:
    files = ", ".join(changed_files) or "No files changed"
    return (
        f"## Root Cause Analysis\n{root_cause or 'Not available'}\n\n"
        f"## Changes Made\nModified files: {files}\n\n{description}\n\n"
        f"## Testing Recommendations\n{testing_notes or 'Run existing test suite'}\n\n"
        "## Related Kubernetes Resources\n"
        f"- **Namespace**: `{namespace or 'unknown'}`\n"
        f"- **Pod**: `{pod_name or 'unknown'}`\n\n"
        "---\n"
        "*This PR was automatically generated by the rollout agent*\n"
        "*Review carefully before merging*\n"
    )


def issue_body(description: str, root_cause: Optional[str], namespace: Optional[str], pod_name: Optional[str]) -> str:
    return (
        f"## Problem Description\n{description}\n\n"
        f"## Root Cause Analysis\n{root_cause or 'Not available'}\n\n"
        "## Related Kubernetes Resources\n"
        f"- **Namespace**: `{namespace or 'unknown'}`\n"
        f"- **Pod**: `{pod_name or 'unknown'}`\n\n"
        "---\n"
        "*This issue was automatically created by the rollout agent*\n"
        "*Please review and take appropriate action*\n"
    )


class GitHubClient:
    """Creates fix branches, pull requests and issues through the GitHub REST API.

    Files are committed with the contents API, one commit per file, on a new
    fix/k8s-issue-<millis> branch cut from the repository's default branch.
    Results are dicts shaped for the model: {"success": True, ...} or
    {"success": False, "error": ...}.
    """

    def __init__(
        self,
        token: Optional[str],
        api_url: str = DEFAULT_API_URL,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._token = token
        self._api_url = api_url.rstrip("/")
        self._http = http_client
        if not token:
            logger.warning("GITHUB_TOKEN not set; remediation tools will refuse to run")

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self._api_url,
                timeout=DEFAULT_TIMEOUT,
                headers={
                    "Authorization": f"Bearer {self._token}",
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": "2022-11-28",
                },
            )
        return self._http

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        response = await self._client().request(method, path, **kwargs)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise GitHubError(f"{method} {path} failed: {response.status_code} {response.text[:200]}") from e
        return response.json() if response.content else {}

    async def _file_sha(self, owner: str, repo: str, path: str, branch: str) -> Optional[str]:
        response = await self._client().get(f"/repos/{owner}/{repo}/contents/{path}", params={"ref": branch})
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json().get("sha")

    async def create_pull_request(
        self,
        repo_url: str,
        file_changes: Dict[str, str],
        description: str,
        root_cause: Optional[str] = None,
        namespace: Optional[str] = None,
        pod_name: Optional[str] = None,
        testing_notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not self._token:
            return {"success": False, "error": "GITHUB_TOKEN environment variable is required"}
        if not repo_url or not file_changes or not description:
            return {"success": False, "error": "Missing required parameters: repo_url, file_changes, description"}

        logger.info("Creating PR for repository: %s", repo_url)
        branch = f"fix/k8s-issue-{int(time.time() * 1000)}"
        try:
            owner, repo = parse_repo_url(repo_url)
            repository = await self._request("GET", f"/repos/{owner}/{repo}")
            base = repository["default_branch"]
            ref = await self._request("GET", f"/repos/{owner}/{repo}/git/ref/heads/{base}")
            await self._request(
                "POST",
                f"/repos/{owner}/{repo}/git/refs",
                json={"ref": f"refs/heads/{branch}", "sha": ref["object"]["sha"]},
            )

            for path, content in file_changes.items():
                payload: Dict[str, Any] = {
                    "message": f"fix: {description}",
                    "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
                    "branch": branch,
                }
                sha = await self._file_sha(owner, repo, path, branch)
                if sha:
                    payload["sha"] = sha
                await self._request("PUT", f"/repos/{owner}/{repo}/contents/{path}", json=payload)

            pr = await self._request(
                "POST",
                f"/repos/{owner}/{repo}/pulls",
                json={
                    "title": f"Fix: {description}",
                    "head": branch,
                    "base": base,
                    "body": pull_request_body(root_cause, description, testing_notes, namespace, pod_name, file_changes),
                },
            )
        except (GitHubError, httpx.HTTPError, KeyError) as e:
            logger.error("Failed to create PR for %s: %s", repo_url, e)
            return {"success": False, "error": str(e)}

        logger.info("Successfully created PR: %s", pr.get("html_url"))
        return {"success": True, "prUrl": pr["html_url"], "prNumber": pr["number"], "branch": branch}

    async def create_issue(
        self,
        repo_url: str,
        title: str,
        description: str,
        root_cause: Optional[str] = None,
        namespace: Optional[str] = None,
        pod_name: Optional[str] = None,
        labels: Optional[str] = None,
        assignees: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not self._token:
            return {"success": False, "error": "GITHUB_TOKEN environment variable is required"}
        if not repo_url or not title or not description:
            return {"success": False, "error": "Missing required parameters: repo_url, title, description"}

        logger.info("Creating issue for repository: %s", repo_url)
        try:
            owner, repo = parse_repo_url(repo_url)
            issue = await self._request(
                "POST",
                f"/repos/{owner}/{repo}/issues",
                json={
                    "title": title,
                    "body": issue_body(description, root_cause, namespace, pod_name),
                    "labels": _split_csv(labels),
                    "assignees": _split_csv(assignees),
                },
            )
            issue_url, issue_number = issue["html_url"], issue["number"]
        except (GitHubError, httpx.HTTPError, KeyError) as e:
            logger.error("Failed to create issue for %s: %s", repo_url, e)
            return {"success": False, "error": str(e)}

        logger.info("Successfully created issue: %s", issue_url)
        return {"success": True, "issueUrl": issue_url, "issueNumber": issue_number}
