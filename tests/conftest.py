import json
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, Iterable, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from rolloutagent.agent.toolbox import INSPECTION_TOOLS, REMEDIATION_TOOLS, McpToolbox  # noqa: E402
from rolloutagent.settings import Settings  # noqa: E402


def text_reply(content: Optional[str]) -> SimpleNamespace:
    """A chat completion whose message carries plain content."""
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content, tool_calls=None))])


def json_reply(data: Dict[str, Any]) -> SimpleNamespace:
    return text_reply(json.dumps(data))


def tool_reply(*calls: tuple) -> SimpleNamespace:
    """A chat completion requesting tool calls, given as (name, arguments) pairs."""
    tool_calls = [
        SimpleNamespace(
            id=f"call-{i}-{name}",
            type="function",
            function=SimpleNamespace(name=name, arguments=json.dumps(args)),
        )
        for i, (name, args) in enumerate(calls)
    ]
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=None, tool_calls=tool_calls))])


class FakeCompletions:
    """Scripted stand-in for AsyncOpenAI().chat.completions; exceptions in the script are raised."""

    def __init__(self, script: Iterable[Any]) -> None:
        self.script: List[Any] = list(script)
        self.calls: List[Dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append({**kwargs, "messages": list(kwargs["messages"])})
        if not self.script:
            raise AssertionError("model called more times than scripted")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def fake_client(script: Iterable[Any]) -> SimpleNamespace:
    return SimpleNamespace(chat=SimpleNamespace(completions=FakeCompletions(script)))


def _schema(name: str) -> Dict[str, Any]:
    return {"type": "function", "function": {"name": name, "description": name, "parameters": {"type": "object"}}}


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, openai_api_key="test-key", redis_url=None)


@pytest.fixture
def toolbox() -> MagicMock:
    """McpToolbox double exposing every inspection and remediation tool."""
    box = MagicMock(spec=McpToolbox)

    async def schemas_for(names: Iterable[str]) -> List[Dict[str, Any]]:
        wanted = set(names)
        return [_schema(n) for n in sorted(INSPECTION_TOOLS | REMEDIATION_TOOLS) if n in wanted]

    box.schemas_for = AsyncMock(side_effect=schemas_for)
    box.execute = AsyncMock(return_value=json.dumps({"status": "Running"}))
    return box
