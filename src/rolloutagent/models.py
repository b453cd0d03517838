from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


def _clamp_percent(value: Any) -> int:
    try:
        number = int(round(float(value)))
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, number))


def _as_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "1"):
            return True
        if lowered in ("false", "no", "0"):
            return False
    return default


def _as_text(value: Any) -> str:
    return "" if value is None else str(value).strip()


@dataclass
class SessionState:
    """Per-session conversation state (messages and the last decision summary)."""

    session_id: str
    messages: List[Dict[str, str]] = field(default_factory=list)
    last_summary: str = ""
    analyses_count: int = 0


@dataclass
class AnalysisResult:
    """Structured promotion decision produced by the Analysis and Remediation stages."""

    promote: bool
    confidence: int
    analysis: str = ""
    root_cause: str = ""
    remediation: str = ""
    external_link: Optional[str] = None

    def __post_init__(self) -> None:
        self.confidence = _clamp_percent(self.confidence)
        if self.external_link is not None:
            self.external_link = self.external_link.strip() or None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisResult":
        """Build from model JSON. Accepts camelCase or snake_case keys and the legacy prLink."""
        link = data.get("externalLink", data.get("external_link", data.get("prLink")))
        return cls(
            promote=_as_bool(data.get("promote"), default=True),
            confidence=data.get("confidence", 0),
            analysis=_as_text(data.get("analysis")),
            root_cause=_as_text(data.get("rootCause", data.get("root_cause"))),
            remediation=_as_text(data.get("remediation")),
            external_link=link if isinstance(link, str) else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "promote": self.promote,
            "confidence": self.confidence,
            "analysis": self.analysis,
            "rootCause": self.root_cause,
            "remediation": self.remediation,
            "externalLink": self.external_link,
        }


@dataclass
class ScoringResult:
    """Verdict on an AnalysisResult; needs_retry asks the loop to analyze again."""

    score: int
    needs_retry: bool
    reason: str = ""

    def __post_init__(self) -> None:
        self.score = _clamp_percent(self.score)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScoringResult":
        return cls(
            score=data.get("score", 0),
            needs_retry=_as_bool(data.get("needsRetry", data.get("needs_retry")), default=False),
            reason=_as_text(data.get("reason")),
        )


@dataclass
class FinalResponse(AnalysisResult):
    """AnalysisResult after validation; failure names the error class behind a safe default."""

    failure: Optional[str] = None

    @classmethod
    def from_result(cls, result: AnalysisResult, failure: Optional[str] = None) -> "FinalResponse":
        values = asdict(result)
        values.pop("failure", None)
        return cls(**values, failure=failure)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.failure is not None:
            data["failure"] = self.failure
        return data
