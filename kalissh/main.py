#!/usr/bin/env python3
"""
KaliSSH - Main Entry Point

This is the thin orchestration layer that:
1. Loads configuration
2. Initializes modules
3. Serves the HTTP API

All business logic is in the modules, following black box principles.
"""

import asyncio
import json
import logging
import logging.config as log_config
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, List, Optional

import httpx
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

load_dotenv()

from kalissh import __version__
from kalissh.config.provider import ConfigProvider, EnvConfigProvider
from kalissh.logging_config import get_logging_config
from kalissh.modules.api import (
    AIModelInfo,
    CancelResponse,
    ChatMetadata,
    ChatMode,
    ChatRequest,
    ChatResponse,
    HistoryEntryResponse,
    SessionResponse,
    SSHStatusResponse,
)
from kalissh.modules.config import get_config, get_prompt
from kalissh.modules.errors import (
    ChannelBusyError,
    InvalidTransitionError,
    RemoteConnectionError,
    SessionBusyError,
    SessionNotFoundError,
)
from kalissh.modules.events import EventStream
from kalissh.modules.executor import SSHRemoteExecutor
from kalissh.modules.history import CommandHistory
from kalissh.modules.llm import ModelClient, ModelRegistry, ModelStatsTracker
from kalissh.modules.orchestrator import ExecutionMode, Orchestrator, ResultCache
from kalissh.modules.pipeline import CommandPipeline, CommandSession, SessionState

# Get configuration
config = get_config()

log_config.dictConfig(get_logging_config(config.get("log_level")))
logger = logging.getLogger(__name__)

# Configuration provider (centralized config access)
config_provider: ConfigProvider = EnvConfigProvider()

# Module instances (initialized at startup)
registry: ModelRegistry = ModelRegistry()
model_stats: Optional[ModelStatsTracker] = None
http_client: Optional[httpx.AsyncClient] = None
orchestrator: Optional[Orchestrator] = None
ssh_executor: Optional[SSHRemoteExecutor] = None
history: Optional[CommandHistory] = None
pipeline: Optional[CommandPipeline] = None
connect_task: Optional[asyncio.Task] = None


async def initial_connect(executor: SSHRemoteExecutor) -> None:
    """Open the remote channel in the background; failures are only logged."""
    try:
        await executor.connect()
    except RemoteConnectionError as e:
        logger.warning(f"Initial SSH connection failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle - initialize and cleanup resources.
    """
    global model_stats, http_client, orchestrator, ssh_executor, history, pipeline, connect_task

    logger.info("Starting KaliSSH API...")

    backend_config = config_provider.get_backend_config()
    ssh_config = config_provider.get_ssh_config()

    history = CommandHistory()
    ssh_executor = SSHRemoteExecutor(ssh_config)
    model_stats = ModelStatsTracker()

    if backend_config.is_configured:
        http_client = httpx.AsyncClient()
        client = ModelClient(
            backend_config.api_key,
            backend_config.api_url,
            http_client=http_client,
            stats=model_stats,
        )
        cache = ResultCache(
            ttl_seconds=config.get("cache_ttl_seconds"),
            max_entries=config.get("cache_max_entries"),
        )
        orchestrator = Orchestrator(client, registry, cache)
        pipeline = CommandPipeline(
            orchestrator,
            ssh_executor,
            history,
            stream_queue_size=config.get("stream_queue_size"),
            temperature=config.get("default_temperature"),
        )
        logger.info(f"Model backend configured: {backend_config.api_url}")
    else:
        logger.warning("OPENROUTER_API_KEY not set - model-dependent endpoints are disabled")

    connect_task = asyncio.create_task(initial_connect(ssh_executor))

    logger.info("KaliSSH API started successfully")

    yield

    logger.info("Shutting down KaliSSH API...")

    if connect_task and not connect_task.done():
        connect_task.cancel()
    if ssh_executor:
        ssh_executor.disconnect()
    if http_client:
        await http_client.aclose()
    logger.info("KaliSSH API shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="KaliSSH API",
    description="KaliSSH - Multi-model security operations over SSH",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config_provider.get_api_config().cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Helpers


def require_pipeline() -> CommandPipeline:
    if not orchestrator or not pipeline:
        raise HTTPException(503, "AI service not available - missing API key")
    return pipeline


def session_chat_response(session: CommandSession, mode: ChatMode, started: float) -> ChatResponse:
    """Build the chat reply for a session that went through execution."""
    if session.state is SessionState.CANCELLED:
        text = "Command cancelled by operator."
    else:
        text = session.analysis or ""

    return ChatResponse(
        response=text,
        metadata=ChatMetadata(
            mode=mode.value,
            models_used=session.models_used,
            consensus=session.consensus,
            response_time_seconds=round(time.monotonic() - started, 3),
            ssh_executed=True,
            command_output=session.output,
            generated_commands=[session.generated_command] if session.generated_command else None,
            session_id=session.id,
            session_state=session.state.value,
            error=session.error,
        ),
    )


async def feedback_events(stream: Optional[EventStream]) -> AsyncGenerator[dict, None]:
    """Translate an EventStream into SSE frames."""
    if stream is None:
        yield {"event": "end", "data": json.dumps({"status": "idle"})}
        return

    try:
        async for event in stream.subscribe():
            yield {"event": event.event, "data": json.dumps(event.data)}
    except asyncio.CancelledError:
        logger.info(f"Feedback subscriber for {stream.session_id} disconnected")
        raise


# Chat Endpoints


@app.post("/chat", response_model=ChatResponse, response_model_exclude_none=True)
async def chat(request: ChatRequest):
    """
    Chat, run a command, or turn an intent into a command awaiting approval.

    Returns:
        200: Answer (possibly a degraded apology when every model failed)
        409: Another command is executing
        422: Malformed body
        503: No model backend configured
    """
    active_pipeline = require_pipeline()
    started = time.monotonic()

    if request.mode is ChatMode.SSH:
        # Submitting a literal command is the operator's approval
        session = active_pipeline.submit_command(request.message)
        try:
            session = await active_pipeline.approve(session.id)
        except SessionBusyError:
            active_pipeline.reject(session.id)
            raise
        return session_chat_response(session, ChatMode.SSH, started)

    if request.mode is ChatMode.SSH_INTENT:
        session = await active_pipeline.submit_intent(request.message)
        if session.state is SessionState.FAILED:
            text = "I couldn't generate a command for that intent. Please rephrase and try again."
        else:
            text = session.generated_command
        return ChatResponse(
            response=text,
            metadata=ChatMetadata(
                mode=ChatMode.SSH_INTENT.value,
                models_used=session.models_used,
                consensus=session.consensus,
                response_time_seconds=round(time.monotonic() - started, 3),
                ssh_executed=False,
                generated_commands=[session.generated_command] if session.generated_command else None,
                session_id=session.id,
                session_state=session.state.value,
                error=session.error,
            ),
        )

    messages = [
        {"role": "system", "content": get_prompt("chat")},
        {"role": "user", "content": request.message},
    ]
    result = await orchestrator.execute_mode(
        ExecutionMode.SMART_CONSENSUS, messages, config.get("default_temperature")
    )

    return ChatResponse(
        response=result.content,
        metadata=ChatMetadata(
            mode=ChatMode.CHAT.value,
            models_used=list(result.models_used),
            consensus=result.consensus,
            response_time_seconds=round(time.monotonic() - started, 3),
            ssh_executed=False,
            from_cache=result.from_cache or None,
            error=result.error,
        ),
    )


# Approval Endpoints


@app.get("/ssh/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str):
    """
    Get a pending or executing session.

    Returns:
        200: Session snapshot
        404: Session not found (or already finished)
    """
    return SessionResponse(**require_pipeline().get_session(session_id).to_dict())


@app.post("/ssh/sessions/{session_id}/approve", response_model=ChatResponse, response_model_exclude_none=True)
async def approve_session(session_id: str):
    """
    Approve a generated command, run it and analyse the output.

    Returns:
        200: Execution output and analysis
        404: Session not found
        409: Another command is executing
    """
    active_pipeline = require_pipeline()
    started = time.monotonic()

    session = active_pipeline.get_session(session_id)
    if session.state is not SessionState.AWAITING_APPROVAL:
        raise HTTPException(409, f"Session is {session.state.value}, not awaiting approval")

    session = await active_pipeline.approve(session_id)
    return session_chat_response(session, ChatMode.SSH_INTENT, started)


@app.post("/ssh/sessions/{session_id}/reject", response_model=SessionResponse)
async def reject_session(session_id: str):
    """
    Reject a generated command. Nothing is executed or recorded.

    Returns:
        200: Rejected session
        400: Session is not awaiting approval
        404: Session not found
    """
    session = require_pipeline().reject(session_id)
    return SessionResponse(**session.to_dict())


# Model Endpoints


@app.get("/models", response_model=List[AIModelInfo])
async def list_models():
    """
    List the model registry with live statistics.

    Returns an empty list when no backend is configured.
    """
    if not orchestrator or not model_stats:
        return []

    models = []
    for key, model in registry.items():
        stats = model_stats.get(model.model_id)
        models.append(
            AIModelInfo(
                id=key,
                name=model.display_name,
                model_id=model.model_id,
                role=model.role.value,
                status=stats.status,
                avg_response_time=round(stats.avg_response_time, 3),
                success_rate=round(stats.success_rate, 1),
            )
        )
    return models


# SSH Endpoints


@app.get("/ssh/status", response_model=SSHStatusResponse, response_model_exclude_none=True)
async def ssh_status():
    """Report the remote channel's connection state."""
    if not ssh_executor:
        raise HTTPException(503, "Service not initialized")

    state = ssh_executor.state
    return SSHStatusResponse(
        connected=state.connected,
        host=ssh_executor.config.host,
        user=ssh_executor.config.user,
        latency_ms=state.latency_ms if state.connected else None,
        last_connected=state.last_connected,
    )


@app.post("/ssh/reconnect")
async def ssh_reconnect():
    """
    Force a fresh connection probe.

    Returns:
        200: Connected
        502: Reconnect failed
    """
    if not ssh_executor:
        raise HTTPException(503, "Service not initialized")

    try:
        await ssh_executor.connect()
    except RemoteConnectionError as e:
        logger.error(f"SSH reconnect error: {e}")
        return JSONResponse(status_code=502, content={"error": "Failed to reconnect SSH", "detail": str(e)})

    return {"success": True}


@app.get("/ssh/feedback")
async def ssh_feedback():
    """
    SSE stream of progress for the executing session.

    Emits progress events followed by one end event. When nothing is
    executing, a single end event with status "idle" is sent.

    The stream is bound to the session executing at subscription time, so
    clients must subscribe after execution has started (for example once
    the approve request is in flight) and re-subscribe for the next
    command. Subscribing earlier only yields the idle end event.
    """
    stream = pipeline.current_stream() if pipeline else None
    return EventSourceResponse(feedback_events(stream))


@app.post("/ssh/cancel", response_model=CancelResponse)
async def ssh_cancel():
    """Cancel the in-flight command. Idempotent."""
    if not pipeline:
        return CancelResponse(cancelled=False)
    return CancelResponse(cancelled=await pipeline.cancel())


# History Endpoints


@app.get("/command-history", response_model=List[HistoryEntryResponse])
async def command_history():
    """Completed command sessions, most recent first."""
    if not history:
        return []
    return [entry.to_dict() for entry in history.list()]


# Health/Monitoring Endpoints


@app.get("/healthz")
async def healthz():
    """
    Minimal liveness endpoint.

    Returns:
        200: Service is running
    """
    return {"status": "ok"}


@app.get("/health")
async def health_check():
    """
    Component readiness.

    Returns:
        200: Service healthy (SSH may still be disconnected)
        503: Modules not initialized
    """
    modules_ready = all([ssh_executor, history])
    body = {
        "status": "healthy" if modules_ready else "unhealthy",
        "models": "configured" if orchestrator else "not configured",
        "ssh": "connected" if ssh_executor and ssh_executor.is_connected() else "disconnected",
        "executing": bool(pipeline and pipeline.active_session),
        "version": __version__,
    }
    if not modules_ready:
        return JSONResponse(status_code=503, content=body)
    return body


# Error handlers


@app.exception_handler(SessionNotFoundError)
async def session_not_found_handler(request: Request, exc: SessionNotFoundError):
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(SessionBusyError)
async def session_busy_handler(request: Request, exc: SessionBusyError):
    logger.warning(f"Rejected concurrent execution: {exc}")
    return JSONResponse(status_code=409, content={"error": str(exc)})


@app.exception_handler(ChannelBusyError)
async def channel_busy_handler(request: Request, exc: ChannelBusyError):
    logger.warning(f"Remote channel busy: {exc}")
    return JSONResponse(status_code=409, content={"error": str(exc)})


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(ValueError)
async def validation_error_handler(request: Request, exc: ValueError):
    """Handle validation errors."""
    logger.error(f"Validation error: {exc}")
    return JSONResponse(status_code=400, content={"error": str(exc)})


if __name__ == "__main__":
    uvicorn.run(
        "kalissh.main:app",
        host=config.get("host"),
        port=config.get("port"),
        log_level=config.get("log_level").lower(),
        reload=config.get("debug"),
        log_config=get_logging_config(config.get("log_level")),
    )
