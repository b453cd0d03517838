import logging
from typing import Optional, Union
from urllib.parse import urlparse

from ..models import AnalysisResult, FinalResponse
from .response_parser import parse_free_text

logger = logging.getLogger(__name__)

PLACEHOLDER_HOSTS = (
    "example.com",
    "example.org",
    "example.net",
    "example.io",
    "localhost",
    "127.0.0.1",
)
PLACEHOLDER_OWNERS = {"example", "owner", "your-org", "your-username", "org", "user", "username", "placeholder"}
PLACEHOLDER_REPOS = {"repo", "your-repo", "repository", "placeholder"}
TEMPLATE_CHARS = ("<", ">", "{", "}")


def _normalize(link: str) -> str:
    link = link.strip().rstrip(".,;)")
    if not link.lower().startswith(("http://", "https://")) and link.lower().startswith("github.com/"):
        link = f"https://{link}"
    return link


def fabrication_reason(link: str) -> Optional[str]:
    """Why a link looks invented rather than returned by a tool, or None if it looks real."""
    if any(ch in link for ch in TEMPLATE_CHARS):
        return "template placeholder"
    parsed = urlparse(link)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return "not an http(s) URL"
    host = parsed.hostname or ""
    for placeholder in PLACEHOLDER_HOSTS:
        if host == placeholder or host.endswith(f".{placeholder}"):
            return f"placeholder host {host}"
    segments = [s for s in parsed.path.split("/") if s]
    if len(segments) >= 2:
        owner, repo = segments[0].lower(), segments[1].lower()
        if owner in PLACEHOLDER_OWNERS:
            return f"placeholder owner {segments[0]}"
        if repo in PLACEHOLDER_REPOS:
            return f"placeholder repository {segments[1]}"
    return None


def screen_link(link: Optional[str]) -> Optional[str]:
    if not link:
        return None
    normalized = _normalize(link)
    reason = fabrication_reason(normalized)
    if reason is not None:
        logger.warning("Discarding external link %s: %s", link, reason)
        return None
    return normalized


def finalize(raw: Union[AnalysisResult, str]) -> FinalResponse:
    """Turn pipeline output into the response sent to callers.

    Structured results only go through the link screen; plain text is parsed
    first.
    """
    result = parse_free_text(raw) if isinstance(raw, str) else raw
    response = FinalResponse.from_result(result)
    response.external_link = screen_link(response.external_link)
    return response
