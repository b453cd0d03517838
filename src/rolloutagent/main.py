import asyncio
import json
import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import httpx
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .agent import McpToolbox, RolloutAgentService, WorkflowState
from .services.context_service import connect_context_service
from .services.formatter import format_report
from .settings import Settings, get_settings


def setup_server_logging(level: str = "INFO") -> logging.Logger:
    """Configure the package logger: console plus a rotating file under logs/."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("rolloutagent")
    if logger.handlers:
        return logger

    logger.setLevel(level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    return logger


def _cors_origins_list(origins: str) -> list[str]:
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


settings = get_settings()
setup_server_logging(settings.log_level)
LOGGER = logging.getLogger("rolloutagent.server")


class AnalyzeRequest(BaseModel):
    """Body of POST /a2a/analyze and of the first WebSocket message."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)
    prompt: str = Field(min_length=1)
    context: Optional[Dict[str, Any]] = None
    memory_id: Optional[str] = Field(default=None, alias="memoryId")


def build_model_client(cfg: Settings, http_client: Optional[httpx.AsyncClient] = None) -> AsyncOpenAI:
    """Model client with SDK retries off; with_retry is the only retry layer."""
    return AsyncOpenAI(
        api_key=cfg.openai_api_key,
        base_url=cfg.openai_base_url,
        timeout=cfg.request_timeout_seconds,
        max_retries=0,
        http_client=http_client,
    )


async def create_service(client: AsyncOpenAI) -> RolloutAgentService:
    """Agent service over the given client: MCP tools plus optional Redis persistence."""
    toolbox = McpToolbox()
    LOGGER.info("Loading MCP tools at startup...")
    try:
        tools = await toolbox.load_tools()
        LOGGER.info("MCP tools loaded: %s", ", ".join(t["function"]["name"] for t in tools) or "none")
    except (OSError, ConnectionError, TimeoutError) as e:
        LOGGER.warning("MCP tools partially or fully unavailable: %s", e)
    except Exception as e:
        LOGGER.exception("Unexpected error loading MCP tools: %s", e)

    context_service = await connect_context_service()
    if context_service is not None:
        LOGGER.info("Session persistence (Redis) ready")

    return RolloutAgentService(client, toolbox, settings, context_service)


def agent_card(cfg: Settings) -> Dict[str, Any]:
    """A2A agent card describing this service and where to call it."""
    base_url = f"{cfg.public_url.rstrip('/')}:{cfg.port}"
    return {
        "name": cfg.agent_name,
        "description": (
            "An expert Kubernetes SRE specializing in canary deployment analysis. It analyzes "
            "the provided metrics and logs to determine if a canary deployment is healthy."
        ),
        "url": f"{base_url}/",
        "version": cfg.agent_version,
        "protocolVersion": "1.0.0",
        "capabilities": {"streaming": False, "pushNotifications": False, "stateTransitionHistory": False},
        "defaultInputModes": ["text"],
        "defaultOutputModes": ["text"],
        "skills": [
            {
                "id": "kubernetes-analysis",
                "name": "Kubernetes Analysis",
                "description": (
                    "Analyzes canary deployment logs and metrics to determine if a canary deployment is healthy."
                ),
                "tags": ["analysis", "kubernetes", "canary"],
            }
        ],
        "preferredTransport": "HTTP+JSON",
        "additionalInterfaces": [{"transport": "HTTP+JSON", "url": f"{base_url}/a2a/analyze"}],
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the agent service at startup: model client, MCP tools and optional Redis."""
    client = build_model_client(settings)
    app.state.service = await create_service(client)
    yield

    LOGGER.info("Shutting down...")
    await app.state.service.close()
    await client.close()


app = FastAPI(
    title="Rollout Agent",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health() -> dict[str, Any]:
    return {"status": "ok"}


@app.get("/a2a/health")
async def a2a_health() -> dict[str, Any]:
    return {"status": "ok", "agent": "rollout-agent"}


@app.get("/.well-known/agent.json")
async def well_known_agent_card() -> dict[str, Any]:
    return agent_card(settings)


@app.post("/a2a/analyze")
async def analyze(body: AnalyzeRequest, request: Request) -> JSONResponse:
    """Run one analysis and return the decision.

    Returns:
        JSONResponse: FinalResponse JSON; status 500 when the pipeline failed
        and a safe default was returned instead.
    """
    LOGGER.info("Received analysis request from user: %s", body.user_id)
    service: RolloutAgentService = request.app.state.service
    response = await service.analyze(body.user_id, body.prompt, body.context, body.memory_id)
    status = 500 if response.failure else 200
    return JSONResponse(status_code=status, content=response.to_dict())


@app.websocket("/ws/analyze")
async def analyze_ws(websocket: WebSocket) -> None:
    """WebSocket analysis: client sends an AnalyzeRequest, server streams progress.

    Response Format:
        - {"type": "stage", "data": str} - workflow state entered
        - {"type": "result", "data": dict, "report": str} - final decision and Markdown report
        - {"type": "done", "session_id": str}
        - {"type": "error", "data": str} - invalid request
    """
    await websocket.accept()
    try:
        raw = await websocket.receive_text()
        try:
            body = AnalyzeRequest.model_validate(json.loads(raw))
        except json.JSONDecodeError as e:
            LOGGER.error("Invalid WS payload (not JSON): %s", e)
            await websocket.send_json({"type": "error", "data": "Invalid JSON payload"})
            await websocket.close()
            return
        except ValidationError as e:
            await websocket.send_json({"type": "error", "data": str(e)})
            await websocket.close()
            return

        session_id = body.memory_id or body.user_id
        LOGGER.info("WS analysis start session_id=%s", session_id)

        events: asyncio.Queue[WorkflowState] = asyncio.Queue()
        service: RolloutAgentService = websocket.app.state.service
        task = asyncio.create_task(
            service.analyze(body.user_id, body.prompt, body.context, body.memory_id, on_transition=events.put_nowait)
        )
        try:
            while not task.done() or not events.empty():
                getter = asyncio.ensure_future(events.get())
                done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    await websocket.send_json({"type": "stage", "data": getter.result().value})
                else:
                    getter.cancel()
            response = task.result()
        finally:
            if not task.done():
                task.cancel()

        await websocket.send_json({"type": "result", "data": response.to_dict(), "report": format_report(response)})
        await websocket.send_json({"type": "done", "session_id": session_id})
        await websocket.close()

    except WebSocketDisconnect:
        LOGGER.info("WS disconnect")


def run() -> None:
    """Serve the app with uvicorn on the configured host and port."""
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


CONSOLE_MEMORY_ID = "console-session"


async def console_loop(
    service: RolloutAgentService,
    read: Callable[[str], str] = input,
    write: Callable[[str], object] = print,
) -> None:
    """Interactive prompt loop on one fixed session; 'quit' or end of input stops it."""
    LOGGER.info("Console session memory ID: %s", CONSOLE_MEMORY_ID)
    while True:
        try:
            line = (await asyncio.to_thread(read, "\nYou > ")).strip()
        except EOFError:
            break
        if line.lower() == "quit":
            break
        if not line:
            continue
        response = await service.analyze(CONSOLE_MEMORY_ID, line, memory_id=CONSOLE_MEMORY_ID)
        write(f"\nAgent > {format_report(response)}")


async def _console_main() -> None:
    client = build_model_client(settings)
    service = await create_service(client)
    LOGGER.info("Rollout agent started in console mode. Type 'quit' to exit.")
    try:
        await console_loop(service)
    finally:
        await service.close()
        await client.close()
        LOGGER.info("Exiting rollout agent. Goodbye!")


def console() -> None:
    """Run the agent as an interactive console instead of an HTTP server."""
    asyncio.run(_console_main())
