import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from openai import AsyncOpenAI

from ..models import FinalResponse, SessionState
from ..services.context_service import ContextService
from ..services.response_validator import finalize
from ..settings import Settings, get_settings
from .governor import CallGovernor
from .retry import RetryPolicy
from .stages import AnalysisStage, DiagnosticStage, RemediationStage, ScoringStage, StageRunner
from .toolbox import McpToolbox
from .workflow import AnalysisLoop, KubernetesWorkflow, TransitionHook

logger = logging.getLogger(__name__)

SAFE_DEFAULT_REMEDIATION = "Unable to provide remediation due to API error. Please try again."


def build_prompt(prompt: str, context: Optional[Mapping[str, Any]] = None, max_tool_calls: int = 4) -> str:
    """Request text handed to the workflow: prompt, context bullets, then instructions."""
    lines = [prompt, ""]
    entries = [(k, v) for k, v in (context or {}).items() if v is not None]
    if entries:
        lines.append("Context:")
        lines.extend(f"- {key}: {value}" for key, value in entries)
    lines += [
        "",
        "CRITICAL INSTRUCTIONS:",
        f"1. Gather each piece of data ONCE (max {max_tool_calls} tool calls total)",
        "2. Do NOT call the same tool multiple times with the same parameters",
        "3. After gathering data, STOP and analyze what you have",
        "4. Make a decision based on the data collected",
        "",
        "Provide a structured response with:",
        "- analysis: Detailed analysis text",
        "- rootCause: Identified root cause",
        "- remediation: Suggested remediation steps",
        "- externalLink: pull request or issue link returned by a tool (can be null)",
        "- promote: true to promote canary, false to abort",
        "- confidence: Confidence level 0-100",
    ]
    return "\n".join(lines)


def safe_default(error: Exception) -> FinalResponse:
    name = type(error).__name__
    return FinalResponse(
        promote=True,
        confidence=0,
        analysis=f"Error: {error}",
        root_cause=f"Analysis failed: {name}",
        remediation=SAFE_DEFAULT_REMEDIATION,
        external_link=None,
        failure=name,
    )


class RolloutAgentService:
    """Entry point for rollout analyses.

    Owns the per-session state, the two call governors (inspection and
    remediation budgets share the session key but not the ceiling) and the
    workflow. Requests on the same session key run one at a time.
    """

    def __init__(
        self,
        client: AsyncOpenAI,
        toolbox: Optional[McpToolbox] = None,
        settings: Optional[Settings] = None,
        context_service: Optional[ContextService] = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._context_service = context_service
        self._sessions: Dict[str, SessionState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

        warn_after = self._settings.governor_session_warning_threshold
        self.diagnostic_governor = CallGovernor(
            self._settings.diagnostic_max_tool_calls, name="diagnostic", warn_after_sessions=warn_after
        )
        self.remediation_governor = CallGovernor(
            self._settings.remediation_max_tool_calls, name="remediation", warn_after_sessions=warn_after
        )

        policy = RetryPolicy.from_settings(self._settings)
        runner = StageRunner(client, toolbox, self._settings, policy, sleep)
        self._workflow = KubernetesWorkflow(
            DiagnosticStage(runner, self.diagnostic_governor, self._settings),
            AnalysisLoop(
                AnalysisStage(runner, self._settings),
                ScoringStage(runner, self._settings),
                max_iterations=self._settings.analysis_max_iterations,
            ),
            RemediationStage(runner, self.remediation_governor, self._settings),
        )

    async def get_session(self, session_id: str) -> SessionState:
        """Return the session for session_id, restoring it from Redis or creating it."""
        session = self._sessions.get(session_id)
        if session is not None:
            return session
        if self._context_service is not None:
            session = await self._context_service.load(session_id)
            if session is not None:
                logger.info("Restored session %s with %d messages", session_id, len(session.messages))
        if session is None:
            session = SessionState(session_id=session_id)
        self._sessions[session_id] = session
        return session

    def reset_governors(self, session_id: str) -> None:
        self.diagnostic_governor.reset(session_id)
        self.remediation_governor.reset(session_id)
        logger.info("Reset tool call budgets for session: %s", session_id)

    async def analyze(
        self,
        user_id: str,
        prompt: str,
        context: Optional[Mapping[str, Any]] = None,
        memory_id: Optional[str] = None,
        on_transition: Optional[TransitionHook] = None,
    ) -> FinalResponse:
        """Run one full analysis.

        Args:
            user_id: Caller identity; the session key when memory_id is absent.
            prompt: What to analyze.
            context: Extra key/value facts (namespace, pod names, repoUrl, ...).
            memory_id: Explicit session key.
            on_transition: Called with each WorkflowState as the pipeline advances.

        Returns:
            FinalResponse: The validated decision, or a safe default with
            failure set if the pipeline raised.
        """
        session_id = memory_id or user_id
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                return await self._run_analysis(session_id, user_id, prompt, context, on_transition)
        finally:
            self._lock_users[session_id] -= 1
            if not self._lock_users[session_id]:
                del self._lock_users[session_id]
                del self._locks[session_id]

    async def _run_analysis(
        self,
        session_id: str,
        user_id: str,
        prompt: str,
        context: Optional[Mapping[str, Any]],
        on_transition: Optional[TransitionHook],
    ) -> FinalResponse:
        self.reset_governors(session_id)
        session = await self.get_session(session_id)
        request_text = build_prompt(prompt, context, self._settings.diagnostic_max_tool_calls)
        logger.debug("Built prompt for session %s: %s", session_id, request_text)

        try:
            result = await self._workflow.execute(session, request_text, on_transition)
            response = finalize(result)
            logger.info(
                "Analysis completed for session %s: promote=%s confidence=%d",
                session_id,
                response.promote,
                response.confidence,
            )
        except Exception as e:
            logger.exception("Error processing request from user %s (session %s)", user_id, session_id)
            response = safe_default(e)
        finally:
            # tracking lives only as long as the analysis
            self.diagnostic_governor.reset(session_id)
            self.remediation_governor.reset(session_id)

        session.analyses_count += 1
        session.last_summary = f"promote={response.promote} confidence={response.confidence}: {response.root_cause}"
        if self._context_service is not None:
            await self._context_service.save(session)
        return response

    async def close(self) -> None:
        if self._context_service is not None:
            await self._context_service.close()
