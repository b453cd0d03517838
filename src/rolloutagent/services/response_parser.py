"""Free-text extraction for model replies that are not structured JSON.

Pure string functions; kept for model backends that answer in Markdown.
"""

import re
from typing import Optional

from ..models import AnalysisResult

DEFAULT_SECTION_TEXT = "See analysis"
SECTION_END_MARKERS = ("\n## ", "\n# ", "\n\n## ")

# promote: false / promote**: `false` / "promote": false / - **promote**: false
EXPLICIT_PROMOTE = re.compile(r"promote(?:\*\*|\")?\s*[:=]\s*[`\"']?\s*(true|false)\b", re.IGNORECASE)
EXPLICIT_CONFIDENCE = re.compile(r"confidence(?:\*\*|\")?\s*[:=]\s*[`\"']?\s*(\d{1,3})\s*%?", re.IGNORECASE)
NEGATIVE_KEYWORDS = (
    "do not promote",
    "should not promote",
    "should not be promoted",
    "should be halted",
    "abort",
    "rollback",
)
PR_LINK_PATTERNS = (
    re.compile(r"(?:https?://)?github\.com/[^\s/]+/[^\s/]+/pull/\d+"),
    re.compile(r"PR: (https?://\S+)"),
)


def extract_section(text: str, label: str) -> Optional[str]:
    """Text from the first case-insensitive occurrence of label up to the next header."""
    start = text.lower().find(label.lower())
    if start == -1:
        return None
    end = len(text)
    for marker in SECTION_END_MARKERS:
        pos = text.find(marker, start + len(label))
        if pos != -1 and pos < end:
            end = pos
    return text[start:end].strip()


def extract_promote(text: str) -> bool:
    """Explicit promote assignments win, then negative keywords; default is to promote."""
    explicit = [m.group(1).lower() for m in EXPLICIT_PROMOTE.finditer(text)]
    if "false" in explicit:
        return False
    if "true" in explicit:
        return True
    lowered = text.lower()
    return not any(keyword in lowered for keyword in NEGATIVE_KEYWORDS)


def extract_confidence(text: str, promote: bool) -> int:
    match = EXPLICIT_CONFIDENCE.search(text)
    if match:
        return min(100, int(match.group(1)))
    return 80 if promote else 50


def extract_pr_link(text: str) -> Optional[str]:
    for pattern in PR_LINK_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(match.lastindex or 0)
    return None


def parse_free_text(text: str) -> AnalysisResult:
    promote = extract_promote(text)
    return AnalysisResult(
        promote=promote,
        confidence=extract_confidence(text, promote),
        analysis=text.strip(),
        root_cause=extract_section(text, "root cause") or DEFAULT_SECTION_TEXT,
        remediation=extract_section(text, "remediation") or DEFAULT_SECTION_TEXT,
        external_link=extract_pr_link(text),
    )
