import json
from typing import Any, Dict, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from rolloutagent.agent import WorkflowState
from rolloutagent.agent.retry import ExhaustedRetries, RetryPolicy
from rolloutagent.agent.stages import StageRunner
from rolloutagent.main import CONSOLE_MEMORY_ID, agent_card, app, build_model_client, console_loop
from rolloutagent.models import FinalResponse
from rolloutagent.settings import Settings


class StubService:
    """Stands in for RolloutAgentService; records calls and replays workflow states."""

    def __init__(self, response: FinalResponse) -> None:
        self.response = response
        self.calls: List[Dict[str, Any]] = []

    async def analyze(self, user_id, prompt, context=None, memory_id=None, on_transition=None) -> FinalResponse:
        self.calls.append({"user_id": user_id, "prompt": prompt, "context": context, "memory_id": memory_id})
        if on_transition is not None:
            for state in (WorkflowState.START, WorkflowState.DIAGNOSTIC, WorkflowState.DONE):
                on_transition(state)
        return self.response


def make_client(response: FinalResponse) -> tuple[TestClient, StubService]:
    stub = StubService(response)
    app.state.service = stub
    return TestClient(app), stub


ROLLBACK = FinalResponse(
    promote=False,
    confidence=85,
    analysis="Canary crashes",
    root_cause="OOMKilled",
    remediation="Raise memory limit",
    external_link="https://github.com/acme/billing-service/pull/42",
)


def test_health() -> None:
    client, _ = make_client(ROLLBACK)
    assert client.get("/health").json() == {"status": "ok"}
    assert client.get("/a2a/health").json()["status"] == "ok"


def test_analyze_returns_decision() -> None:
    client, stub = make_client(ROLLBACK)
    resp = client.post(
        "/a2a/analyze",
        json={"userId": "argo", "prompt": "Check canary", "context": {"namespace": "prod"}, "memoryId": "rollout-1"},
    )
    assert resp.status_code == 200
    assert resp.json() == {
        "promote": False,
        "confidence": 85,
        "analysis": "Canary crashes",
        "rootCause": "OOMKilled",
        "remediation": "Raise memory limit",
        "externalLink": "https://github.com/acme/billing-service/pull/42",
    }
    assert stub.calls == [
        {"user_id": "argo", "prompt": "Check canary", "context": {"namespace": "prod"}, "memory_id": "rollout-1"}
    ]


def test_analyze_safe_default_is_500() -> None:
    failure = FinalResponse(
        promote=True,
        confidence=0,
        analysis="Error: boom",
        root_cause="Analysis failed: ExhaustedRetries",
        remediation="Unable to provide remediation due to API error. Please try again.",
        failure="ExhaustedRetries",
    )
    client, _ = make_client(failure)
    resp = client.post("/a2a/analyze", json={"userId": "argo", "prompt": "Check canary"})
    assert resp.status_code == 500
    body = resp.json()
    assert body["promote"] is True
    assert body["confidence"] == 0
    assert body["failure"] == "ExhaustedRetries"


@pytest.mark.parametrize("payload", [{"prompt": "x"}, {"userId": "argo"}, {"userId": "", "prompt": "x"}])
def test_analyze_rejects_invalid_body(payload: Dict[str, Any]) -> None:
    client, stub = make_client(ROLLBACK)
    assert client.post("/a2a/analyze", json=payload).status_code == 422
    assert stub.calls == []


def test_ws_streams_stages_then_result() -> None:
    client, _ = make_client(ROLLBACK)
    with client.websocket_connect("/ws/analyze") as ws:
        ws.send_text(json.dumps({"userId": "argo", "prompt": "Check canary"}))
        messages = [ws.receive_json() for _ in range(5)]

    assert [m["type"] for m in messages] == ["stage", "stage", "stage", "result", "done"]
    assert [m["data"] for m in messages[:3]] == ["start", "diagnostic", "done"]
    assert messages[3]["data"]["rootCause"] == "OOMKilled"
    assert "**Decision:** ROLLBACK" in messages[3]["report"]
    assert messages[4]["session_id"] == "argo"


def test_ws_rejects_invalid_json() -> None:
    client, _ = make_client(ROLLBACK)
    with client.websocket_connect("/ws/analyze") as ws:
        ws.send_text("not json")
        assert ws.receive_json() == {"type": "error", "data": "Invalid JSON payload"}


def test_ws_rejects_missing_fields() -> None:
    client, stub = make_client(ROLLBACK)
    with client.websocket_connect("/ws/analyze") as ws:
        ws.send_text(json.dumps({"prompt": "Check canary"}))
        message: Optional[Dict[str, Any]] = ws.receive_json()
    assert message["type"] == "error"
    assert stub.calls == []


def test_agent_card_is_published() -> None:
    client, _ = make_client(ROLLBACK)
    card = client.get("/.well-known/agent.json").json()
    assert card["skills"][0]["id"] == "kubernetes-analysis"
    assert card["capabilities"]["streaming"] is False


def test_agent_card_built_from_settings() -> None:
    cfg = Settings(_env_file=None, public_url="https://rollouts.acme.io/", port=9090, agent_version="2.1.0")
    card = agent_card(cfg)
    assert card["name"] == "Rollout Agent"
    assert card["url"] == "https://rollouts.acme.io:9090/"
    assert card["version"] == "2.1.0"
    assert card["additionalInterfaces"] == [
        {"transport": "HTTP+JSON", "url": "https://rollouts.acme.io:9090/a2a/analyze"}
    ]


@pytest.mark.asyncio
async def test_model_client_leaves_retries_to_the_wrapper(settings: Settings) -> None:
    requests: List[httpx.Request] = []

    def rate_limited(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(429, json={"error": {"message": "Resource has been exhausted", "code": 429}})

    waits: List[float] = []

    async def sleep(seconds: float) -> None:
        waits.append(seconds)

    client = build_model_client(settings, http_client=httpx.AsyncClient(transport=httpx.MockTransport(rate_limited)))
    runner = StageRunner(client, None, settings, RetryPolicy(max_attempts=3), sleep)

    with pytest.raises(ExhaustedRetries) as info:
        await runner.complete("model call", [{"role": "user", "content": "Check canary"}])

    assert info.value.attempts == 3
    assert len(requests) == 3
    assert waits == [1.0, 2.0]
    await client.close()


@pytest.mark.asyncio
async def test_console_loop_uses_fixed_session_until_quit() -> None:
    stub = StubService(ROLLBACK)
    lines = iter(["Check canary health", "   ", "QUIT", "never read"])
    output: List[str] = []

    await console_loop(stub, read=lambda prompt: next(lines), write=output.append)

    assert stub.calls == [
        {"user_id": CONSOLE_MEMORY_ID, "prompt": "Check canary health", "context": None, "memory_id": CONSOLE_MEMORY_ID}
    ]
    assert len(output) == 1
    assert output[0].startswith("\nAgent > ## Analysis Result")
    assert next(lines) == "never read"


@pytest.mark.asyncio
async def test_console_loop_stops_at_end_of_input() -> None:
    stub = StubService(ROLLBACK)

    def closed_stdin(prompt: str) -> str:
        raise EOFError

    await console_loop(stub, read=closed_stdin, write=lambda text: None)
    assert stub.calls == []
