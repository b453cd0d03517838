import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from openai import AsyncOpenAI

from ..models import AnalysisResult, ScoringResult, SessionState
from ..settings import Settings, get_settings
from .governor import CallGovernor, canonical_args
from .retry import MalformedResponseError, RetryPolicy, with_retry
from .toolbox import INSPECTION_TOOLS, REMEDIATION_TOOLS, McpToolbox

logger = logging.getLogger(__name__)

CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)

REJECTED_TOOL_CALL = json.dumps(
    {
        "error": (
            "Tool call rejected: the call budget for this analysis is exhausted or "
            "this exact call was already made. Do not call more tools; conclude "
            "with the data already gathered."
        )
    }
)

ToolResultHook = Callable[[str, str], None]

# snake_case and legacy keys a model may use in its final reply
REPLY_KEYS = {"root_cause": "rootCause", "external_link": "externalLink", "prLink": "externalLink"}


def parse_json_object(content: Optional[str]) -> Dict[str, Any]:
    """Pull the JSON object out of a model reply (bare, fenced or embedded in prose).

    Raises:
        MalformedResponseError: no JSON object could be decoded.
    """
    text = CODE_FENCE.sub("", (content or "").strip())
    candidates = [text]
    match = re.search(r"\{.*\}", text, re.DOTALL)
    if match:
        candidates.append(match.group(0))
    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    raise MalformedResponseError(f"expected a JSON object, got: {text[:200]!r}")


def _first_message(response: Any) -> Any:
    choices = getattr(response, "choices", None)
    if not choices:
        raise MalformedResponseError("response has no choices")
    message = getattr(choices[0], "message", None)
    if message is None:
        raise MalformedResponseError("response choice has no message")
    if not message.content and not getattr(message, "tool_calls", None):
        raise MalformedResponseError("response message is empty")
    return message


def _assistant_tool_message(message: Any) -> Dict[str, Any]:
    return {
        "role": "assistant",
        "content": message.content or None,
        "tool_calls": [
            {
                "id": tc.id,
                "type": "function",
                "function": {"name": tc.function.name, "arguments": tc.function.arguments or ""},
            }
            for tc in message.tool_calls
        ],
    }


class StageRunner:
    """One request/response exchange with the model service, with optional governed tools."""

    def __init__(
        self,
        client: AsyncOpenAI,
        toolbox: Optional[McpToolbox] = None,
        settings: Optional[Settings] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._toolbox = toolbox
        self._settings = settings or get_settings()
        self._retry_policy = retry_policy or RetryPolicy.from_settings()
        self._sleep = sleep

    @property
    def toolbox(self) -> Optional[McpToolbox]:
        return self._toolbox

    def conversation(self, session: SessionState, system_prompt: str, user_content: str) -> List[Dict[str, Any]]:
        """System prompt, recent session history, then the new user message."""
        messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        window = self._settings.history_window
        if window > 0:
            for msg in session.messages[-window:]:
                messages.append({"role": msg["role"], "content": msg["content"]})
        messages.append({"role": "user", "content": user_content})
        return messages

    @staticmethod
    def remember(session: SessionState, user_content: str, reply: str) -> None:
        session.messages.append({"role": "user", "content": user_content})
        session.messages.append({"role": "assistant", "content": reply})

    async def _create(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        json_mode: bool = False,
    ) -> Any:
        kwargs: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": messages,
            "temperature": self._settings.temperature,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
            kwargs["parallel_tool_calls"] = False
        elif json_mode and self._settings.json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = await self._client.chat.completions.create(**kwargs)
        return _first_message(response)

    async def complete(
        self,
        label: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> Any:
        return await with_retry(lambda: self._create(messages, tools), label, self._retry_policy, self._sleep)

    async def complete_json(self, label: str, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Model call whose reply must be a JSON object; a bad reply is retried as transient."""

        async def call() -> Dict[str, Any]:
            message = await self._create(messages, json_mode=True)
            return parse_json_object(message.content)

        return await with_retry(call, label, self._retry_policy, self._sleep)

    async def _dispatch(
        self,
        session_id: str,
        governor: CallGovernor,
        allowed: Iterable[str],
        tool_call: Any,
    ) -> str:
        name = tool_call.function.name
        if name not in allowed:
            logger.warning("Session %s: model asked for unavailable tool %s", session_id, name)
            return json.dumps({"error": f"Tool {name} is not available in this stage"})
        try:
            arguments = json.loads(tool_call.function.arguments) if tool_call.function.arguments else {}
        except json.JSONDecodeError as e:
            logger.error("Invalid tool arguments for %s: %s", name, e)
            return json.dumps({"error": f"invalid arguments - {e}"})
        if not isinstance(arguments, dict):
            return json.dumps({"error": "arguments must be a JSON object"})

        if not governor.allow(session_id, name, canonical_args(arguments)):
            return REJECTED_TOOL_CALL
        if self._toolbox is None:
            return json.dumps({"error": "no tool servers configured"})
        return await self._toolbox.execute(name, arguments)

    async def run_with_tools(
        self,
        label: str,
        session_id: str,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        governor: CallGovernor,
        on_tool_result: Optional[ToolResultHook] = None,
    ) -> str:
        """Tool-calling loop. Tool calls run one at a time, each checked by the governor.

        Returns:
            str: The model's final text once it stops calling tools.
        """
        allowed = {t["function"]["name"] for t in tools}
        tool_names_in_order: List[str] = []

        for _ in range(self._settings.max_tool_turns):
            message = await self.complete(label, messages, tools or None)
            tool_calls = getattr(message, "tool_calls", None) or []
            if not tool_calls:
                if tool_names_in_order:
                    logger.info("Session %s: %s called tools in order: %s", session_id, label, ", ".join(tool_names_in_order))
                return message.content or ""

            messages.append(_assistant_tool_message(message))
            for tc in tool_calls:
                result = await self._dispatch(session_id, governor, allowed, tc)
                tool_names_in_order.append(tc.function.name)
                messages.append({"role": "tool", "tool_call_id": tc.id, "content": result})
                if on_tool_result is not None:
                    on_tool_result(tc.function.name, result)

        logger.warning("Session %s: %s hit the tool turn limit (%d)", session_id, label, self._settings.max_tool_turns)
        messages.append(
            {
                "role": "system",
                "content": "Stop calling tools. Answer now using only the data already gathered.",
            }
        )
        message = await self.complete(label, messages)
        return message.content or ""


class DiagnosticStage:
    """Gathers a diagnostic report with inspection tools. Does not analyze."""

    label = "diagnostic stage"

    def __init__(self, runner: StageRunner, governor: CallGovernor, settings: Optional[Settings] = None) -> None:
        self._runner = runner
        self._governor = governor
        self._settings = settings or get_settings()

    async def run(self, session: SessionState, request_text: str) -> str:
        user_content = f"Gather diagnostic data for: {request_text}"
        system_prompt = self._settings.diagnostic_system_prompt.replace(
            "{max_tool_calls}", str(self._settings.diagnostic_max_tool_calls)
        )
        messages = self._runner.conversation(session, system_prompt, user_content)
        tools: List[Dict[str, Any]] = []
        if self._runner.toolbox is not None:
            tools = await self._runner.toolbox.schemas_for(INSPECTION_TOOLS)
        report = await self._runner.run_with_tools(
            self.label, session.session_id, messages, tools, self._governor
        )
        logger.info(
            "Session %s: diagnostic report ready after %d tool calls",
            session.session_id,
            self._governor.call_count(session.session_id),
        )
        self._runner.remember(session, user_content, report)
        return report


class AnalysisStage:
    label = "analysis stage"

    def __init__(self, runner: StageRunner, settings: Optional[Settings] = None) -> None:
        self._runner = runner
        self._settings = settings or get_settings()

    async def run(self, session: SessionState, report: str, feedback: Optional[str] = None) -> AnalysisResult:
        user_content = report
        if feedback:
            user_content = f"{report}\n\nA reviewer rejected the previous analysis: {feedback}\nImprove it."
        messages = self._runner.conversation(session, self._settings.analysis_system_prompt, user_content)
        data = await self._runner.complete_json(self.label, messages)
        result = AnalysisResult.from_dict(data)
        self._runner.remember(session, user_content, json.dumps(result.to_dict()))
        return result


class ScoringStage:
    label = "scoring stage"

    def __init__(self, runner: StageRunner, settings: Optional[Settings] = None) -> None:
        self._runner = runner
        self._settings = settings or get_settings()

    async def run(self, session: SessionState, analysis: AnalysisResult) -> ScoringResult:
        user_content = f"Evaluate this analysis:\n{json.dumps(analysis.to_dict(), indent=2)}"
        messages = self._runner.conversation(session, self._settings.scoring_system_prompt, user_content)
        data = await self._runner.complete_json(self.label, messages)
        score = ScoringResult.from_dict(data)
        self._runner.remember(session, user_content, json.dumps(data))
        return score


class RemediationStage:
    """Opens a pull request or issue when warranted.

    The returned external_link comes only from a successful creation tool
    result; whatever link the model writes in its reply is ignored.
    """

    label = "remediation stage"
    LINK_KEYS = {"create_pull_request": "prUrl", "create_issue": "issueUrl"}

    def __init__(self, runner: StageRunner, governor: CallGovernor, settings: Optional[Settings] = None) -> None:
        self._runner = runner
        self._governor = governor
        self._settings = settings or get_settings()

    def _link_from(self, tool_name: str, raw_result: str) -> Optional[str]:
        key = self.LINK_KEYS.get(tool_name)
        if key is None:
            return None
        try:
            data = json.loads(raw_result)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict) or data.get("success") is not True:
            return None
        link = data.get(key)
        return link if isinstance(link, str) and link.strip() else None

    async def run(self, session: SessionState, analysis: AnalysisResult, request_text: str) -> AnalysisResult:
        links: Dict[str, str] = {}

        def record(tool_name: str, raw_result: str) -> None:
            link = self._link_from(tool_name, raw_result)
            if link is not None:
                logger.info("Session %s: %s returned %s", session.session_id, tool_name, link)
                links.setdefault(tool_name, link)

        user_content = (
            f"Original request:\n{request_text}\n\n"
            f"Analysis result:\n{json.dumps(analysis.to_dict(), indent=2)}"
        )
        messages = self._runner.conversation(session, self._settings.remediation_system_prompt, user_content)
        tools: List[Dict[str, Any]] = []
        if self._runner.toolbox is not None:
            tools = await self._runner.toolbox.schemas_for(REMEDIATION_TOOLS)
        reply = await self._runner.run_with_tools(
            self.label, session.session_id, messages, tools, self._governor, on_tool_result=record
        )
        self._runner.remember(session, user_content, reply)

        merged = analysis.to_dict()
        try:
            merged.update({REPLY_KEYS.get(k, k): v for k, v in parse_json_object(reply).items()})
        except MalformedResponseError:
            logger.warning("Session %s: remediation reply was not JSON; keeping the analysis as-is", session.session_id)

        result = AnalysisResult.from_dict(merged)
        claimed = result.external_link
        result.external_link = links.get("create_pull_request") or links.get("create_issue")
        if claimed and claimed != result.external_link:
            logger.warning("Session %s: dropped link %s not returned by any tool", session.session_id, claimed)
        return result
