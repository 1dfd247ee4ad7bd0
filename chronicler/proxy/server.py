"""FastAPI proxy server: bridges the campaign UI ↔ agent loop ↔ Ollama."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from .agent import (
    AgentLoop,
    AgentSettings,
    ConversationState,
    ModelTiers,
    ProposalError,
    ProposalExecutor,
    ProposalTracker,
    WorkItemTracker,
    create_tool_registry,
    describe_skipped,
    estimate_content_length,
    get_model_display_name,
    proposal_to_dict,
    requires_reasoning,
    select_model,
)
from .agent.registry import PageContext
from .agent.session import ConversationStore, JsonConversationStore
from .agent.tasks import (
    ConsistencyCheckRequest,
    ExpansionRequest,
    GenerationRequest,
    TaskEnvironment,
    check_consistency,
    expand_content,
    generate_entity,
)
from .config import get_config
from .entities import CampaignSummaryCache, EntityGateway, EntityNotFoundError, create_gateway, format_summary
from .ollama import OllamaClient
from .system import get_system_prompt, infer_task_type

logger = logging.getLogger("chronicler.server")

ContextType = Literal["sidebar", "fullpage"]

# Global instances
ollama_client: OllamaClient | None = None
gateway: EntityGateway | None = None
store: ConversationStore | None = None
summary_cache: CampaignSummaryCache | None = None
_sessions: dict[tuple[str, str], ChatSession] = {}
_sessions_lock: asyncio.Lock | None = None


@dataclass
class ChatSession:
    """One conversation plus the guard that keeps its chats sequential."""

    state: ConversationState
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    cancel: asyncio.Event | None = None
    model: str | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle. Collaborators already set (tests) are kept."""
    global ollama_client, gateway, store, summary_cache, _sessions_lock

    cfg = get_config()
    logger.info(f"Starting Chronicler Proxy on {cfg.proxy_host}:{cfg.proxy_port}")
    logger.info(f"  Ollama: {cfg.ollama_url} (models: {cfg.model_fast} / {cfg.model_balanced} / {cfg.model_quality})")

    if ollama_client is None:
        ollama_client = OllamaClient()
    if gateway is None:
        gateway = create_gateway(cfg.entities_api_url, cfg.entities_seed_file)
    if store is None:
        store = JsonConversationStore.from_data_dir(cfg.data_path)
    if summary_cache is None:
        summary_cache = CampaignSummaryCache(gateway, ttl=cfg.campaign_summary_ttl)
    _sessions_lock = asyncio.Lock()

    ollama_ok = await ollama_client.health_check()
    logger.info(f"  Ollama status: {'✓ connected' if ollama_ok else '✗ unavailable'}")

    yield

    for session in _sessions.values():
        if session.cancel is not None:
            session.cancel.set()
    _sessions.clear()
    aclose = getattr(gateway, "aclose", None)
    if aclose is not None:
        await aclose()
    logger.info("Chronicler Proxy shutdown complete")


app = FastAPI(
    title="Chronicler Proxy",
    version="0.3.0",
    description="Campaign assistant agent over Ollama",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Request/Response Models ─────────────────────────────────────────

class ChatRequest(BaseModel):
    campaign_id: str
    message: str
    context_type: ContextType = "sidebar"
    page_context: dict[str, Any] | None = None
    stream: bool = True


class ConversationRequest(BaseModel):
    campaign_id: str
    context_type: ContextType = "sidebar"


class AcceptRequest(ConversationRequest):
    edited_data: dict[str, Any] | None = None


class UnloadRequest(BaseModel):
    model: str | None = None


class GenerateRequest(GenerationRequest):
    # conversation whose proposal list receives the draft
    context_type: ContextType = "sidebar"


# ─── Sessions ────────────────────────────────────────────────────────

async def _get_session(campaign_id: str, context_type: str) -> ChatSession:
    global _sessions_lock
    if _sessions_lock is None:
        _sessions_lock = asyncio.Lock()

    key = (campaign_id, context_type)
    async with _sessions_lock:
        session = _sessions.get(key)
        if session is None:
            cfg = get_config()
            state = await ConversationState.open(
                store,
                campaign_id,
                context_type,
                flush_interval_ms=cfg.stream_flush_interval_ms,
                ephemeral_fade_ms=cfg.ephemeral_fade_ms,
            )
            session = ChatSession(state=state)
            _sessions[key] = session
        return session


def _not_ready() -> JSONResponse | None:
    if ollama_client is None or gateway is None or store is None:
        return JSONResponse({"error": "Proxy not initialized"}, status_code=503)
    return None


def _event_payload(event_type: str, data: dict[str, Any]) -> dict[str, str]:
    return {"event": event_type, "data": json.dumps({"type": event_type, **data}, default=str)}


async def _campaign_overview(campaign_id: str) -> str | None:
    if summary_cache is None:
        return None
    try:
        return format_summary(await summary_cache.get(campaign_id))
    except EntityNotFoundError:
        logger.warning(f"Campaign {campaign_id} not found; continuing without an overview")
    except Exception as e:
        logger.warning(f"Campaign overview unavailable for {campaign_id}: {e}")
    return None


def _task_environment() -> TaskEnvironment:
    cfg = get_config()
    return TaskEnvironment(
        client=ollama_client,
        gateway=gateway,
        tiers=ModelTiers.from_config(cfg),
        preference=cfg.model_preference,
        tool_response_role=cfg.tool_response_role,
        options={"num_ctx": cfg.ollama_num_ctx, "temperature": cfg.ollama_temperature},
    )


async def _run_chat(request: ChatRequest) -> AsyncIterator[tuple[str, dict[str, Any]]]:
    """Run one agent turn under the session lock, yielding (event type, data)."""
    session = await _get_session(request.campaign_id, request.context_type)
    async with session.lock:
        cfg = get_config()
        state = session.state
        page_context = PageContext.from_dict(request.page_context)

        task_type = infer_task_type(request.message)
        tiers = ModelTiers.from_config(cfg)
        model = select_model(
            "chat",
            estimate_content_length(request.message),
            requires_reasoning(task_type),
            cfg.model_preference,
            tiers,
        )
        session.model = model
        logger.info(
            f"Chat [{request.campaign_id}/{request.context_type}] task={task_type} "
            f"model={get_model_display_name(model, tiers)}"
        )

        overview = await _campaign_overview(request.campaign_id)
        work_items = WorkItemTracker()
        registry = create_tool_registry(
            work_items, request.campaign_id, gateway, proposals=state.proposals, page_context=page_context
        )
        settings = AgentSettings(
            model=model,
            system_prompt=get_system_prompt(task_type, page_context, overview),
            max_iterations=cfg.agent_max_iterations,
            max_tokens=cfg.agent_max_tokens,
            tool_response_role=cfg.tool_response_role,
            options={"num_ctx": cfg.ollama_num_ctx, "temperature": cfg.ollama_temperature},
        )
        loop = AgentLoop(ollama_client, registry, settings, work_items)

        session.cancel = asyncio.Event()
        seen = {p.id for p in state.proposals.list()}
        # a client that disconnected mid-stream can leave a message open
        await state.finish_streaming()
        state.begin_turn(request.message)
        try:
            async for event in loop.run(request.message, history=state.agent_history, cancel=session.cancel):
                await state.handle_event(event)
                if event.type == "done":
                    continue
                yield event.type, event.data

                if event.type == "tool_end" and event.data.get("category") == "write":
                    for proposal in state.proposals.list():
                        if proposal.id not in seen:
                            seen.add(proposal.id)
                            yield "proposal", proposal_to_dict(proposal)

            if loop.result is not None:
                state.complete_run(loop.result)
                await state.drain()
                yield "done", {**loop.result.to_dict(), "model": model}
        finally:
            session.cancel = None


# ─── Routes ──────────────────────────────────────────────────────────

@app.get("/api/status")
async def get_status() -> JSONResponse:
    """Health check and connection status."""
    ollama_ok = await ollama_client.health_check() if ollama_client else False
    cfg = get_config()
    tiers = ModelTiers.from_config(cfg)

    return JSONResponse({
        "status": "ok" if ollama_ok else "degraded",
        "ollama": {
            "connected": ollama_ok,
            "url": cfg.ollama_url,
            "models": {
                "fast": tiers.fast,
                "balanced": tiers.balanced,
                "quality": tiers.quality,
            },
            "preference": cfg.model_preference,
        },
        "entities": {
            "backend": type(gateway).__name__ if gateway else None,
            "url": cfg.entities_api_url or None,
        },
        "sessions": [
            {
                "campaign_id": campaign_id,
                "context_type": context_type,
                "running": session.lock.locked(),
                "model": session.model,
                "usage": session.state.usage.to_dict(),
            }
            for (campaign_id, context_type), session in _sessions.items()
        ],
    })


@app.get("/api/tools")
async def list_tools() -> JSONResponse:
    """List the tools offered to the model."""
    if gateway is None:
        return JSONResponse({"tools": [], "error": "Proxy not initialized"}, status_code=503)

    registry = create_tool_registry(WorkItemTracker(), "", gateway, proposals=ProposalTracker())
    tools = [
        {**definition.to_ollama(), "category": definition.category}
        for definition in (registry.get(name) for name in registry.names)
    ]
    return JSONResponse({"count": len(tools), "tools": tools})


@app.post("/api/chat", response_model=None)
async def chat(request: ChatRequest) -> EventSourceResponse | JSONResponse:
    """Send a message and get streaming response."""
    not_ready = _not_ready()
    if not_ready is not None:
        return not_ready

    if request.stream:
        return EventSourceResponse(
            _stream_agent_events(request),
            media_type="text/event-stream",
        )

    # Non-streaming: collect all events
    events = []
    async for event_type, data in _run_chat(request):
        events.append({"type": event_type, **data})
    return JSONResponse(json.loads(json.dumps({"events": events}, default=str)))


async def _stream_agent_events(request: ChatRequest) -> AsyncIterator[dict]:
    """Stream agent events as SSE."""
    async for event_type, data in _run_chat(request):
        yield _event_payload(event_type, data)


@app.post("/api/stop")
async def stop_agent(request: ConversationRequest) -> JSONResponse:
    """Cancel the running chat for a conversation."""
    session = _sessions.get((request.campaign_id, request.context_type))
    if session is None or session.cancel is None:
        return JSONResponse({"status": "idle", "message": "No chat is running"})
    session.cancel.set()
    return JSONResponse({"status": "ok", "message": "Stop requested"})


@app.get("/api/history")
async def get_history(campaign_id: str, context_type: ContextType = "sidebar", include_hidden: bool = False) -> JSONResponse:
    """Transcript, token totals and pending proposals for a conversation."""
    not_ready = _not_ready()
    if not_ready is not None:
        return not_ready

    session = await _get_session(campaign_id, context_type)
    payload = session.state.to_dict(include_hidden=include_hidden)
    if session.model:
        payload["cost"] = session.state.cost(session.model)
    return JSONResponse(json.loads(json.dumps(payload, default=str)))


@app.post("/api/clear")
async def clear_conversation(request: ConversationRequest) -> JSONResponse:
    """Clear a conversation's transcript, history and token totals."""
    not_ready = _not_ready()
    if not_ready is not None:
        return not_ready

    session = await _get_session(request.campaign_id, request.context_type)
    if session.lock.locked():
        return JSONResponse({"error": "A chat is still running; stop it first"}, status_code=409)
    await session.state.clear()
    return JSONResponse({"status": "ok", "message": "Conversation cleared"})


@app.get("/api/proposals")
async def list_proposals(campaign_id: str, context_type: ContextType = "sidebar") -> JSONResponse:
    not_ready = _not_ready()
    if not_ready is not None:
        return not_ready

    session = await _get_session(campaign_id, context_type)
    tracker = session.state.proposals
    return JSONResponse(json.loads(json.dumps({
        "proposals": [proposal_to_dict(p) for p in tracker.list()],
        "pending": len(tracker.pending()),
        "summary": tracker.to_markdown(),
    }, default=str)))


def _proposal_error(tracker: ProposalTracker, proposal_id: str, error: ProposalError) -> JSONResponse:
    status_code = 404 if tracker.get(proposal_id) is None else 409
    return JSONResponse({"error": str(error)}, status_code=status_code)


@app.post("/api/proposals/{proposal_id}/accept")
async def accept_proposal(proposal_id: str, request: AcceptRequest) -> JSONResponse:
    """Apply a pending proposal to the campaign."""
    not_ready = _not_ready()
    if not_ready is not None:
        return not_ready

    session = await _get_session(request.campaign_id, request.context_type)
    state = session.state
    executor = ProposalExecutor(state.proposals, gateway, request.campaign_id, summary_cache)
    try:
        result = await executor.accept(proposal_id, request.edited_data)
    except ProposalError as e:
        return _proposal_error(state.proposals, proposal_id, e)

    if result.ok:
        state.mark_proposal(proposal_id, "accepted")
        if result.skipped_relationships:
            state.add_assistant_message(describe_skipped(result.skipped_relationships))
    else:
        state.add_error(f"Could not apply the proposal: {result.error}")
    await state.drain()
    return JSONResponse(result.to_dict(), status_code=200 if result.ok else 502)


@app.post("/api/proposals/{proposal_id}/reject")
async def reject_proposal(proposal_id: str, request: ConversationRequest) -> JSONResponse:
    not_ready = _not_ready()
    if not_ready is not None:
        return not_ready

    session = await _get_session(request.campaign_id, request.context_type)
    state = session.state
    executor = ProposalExecutor(state.proposals, gateway, request.campaign_id, summary_cache)
    try:
        executor.reject(proposal_id)
    except ProposalError as e:
        return _proposal_error(state.proposals, proposal_id, e)

    state.mark_proposal(proposal_id, "rejected")
    await state.drain()
    return JSONResponse({"status": "ok", "proposal_id": proposal_id})


@app.post("/api/check")
async def check_entity(request: ConsistencyCheckRequest) -> JSONResponse:
    """Audit entity content against established campaign lore."""
    not_ready = _not_ready()
    if not_ready is not None:
        return not_ready

    overview = await _campaign_overview(request.campaign_id)
    report = await check_consistency(_task_environment(), request, overview)
    return JSONResponse(report.to_dict(), status_code=200 if report.success else 502)


@app.post("/api/expand")
async def expand_text(request: ExpansionRequest) -> JSONResponse:
    """Expand a selected passage of an entity field."""
    not_ready = _not_ready()
    if not_ready is not None:
        return not_ready

    overview = await _campaign_overview(request.campaign_id)
    expansion = await expand_content(_task_environment(), request, overview)
    return JSONResponse(expansion.to_dict(), status_code=200 if expansion.success else 502)


@app.post("/api/generate")
async def generate(request: GenerateRequest) -> JSONResponse:
    """Draft a new entity and queue it as a pending proposal in the conversation."""
    not_ready = _not_ready()
    if not_ready is not None:
        return not_ready

    overview = await _campaign_overview(request.campaign_id)
    generation = await generate_entity(_task_environment(), request, overview)
    if generation.success:
        session = await _get_session(request.campaign_id, request.context_type)
        async with session.lock:
            generation.propose(session.state.proposals, request.parent_id)
            await session.state.drain()
    return JSONResponse(
        json.loads(json.dumps(generation.to_dict(), default=str)),
        status_code=200 if generation.success else 502,
    )


@app.post("/api/unload")
async def unload_model_endpoint(request: UnloadRequest) -> JSONResponse:
    """Unload a model from Ollama (release VRAM)."""
    if ollama_client is None:
        return JSONResponse({"status": "error", "message": "Ollama client not initialized"}, status_code=503)
    cfg = get_config()
    model = request.model or cfg.model_quality
    await ollama_client.unload_model(model)
    return JSONResponse({"status": "ok", "message": f"Model {model} unloaded"})


def create_app() -> FastAPI:
    """Factory function for creating the app."""
    return app


def run_server() -> None:
    """Run the proxy server."""
    import uvicorn

    cfg = get_config()
    uvicorn.run(
        "chronicler.proxy.server:app",
        host=cfg.proxy_host,
        port=cfg.proxy_port,
        log_level="warning",
        log_config=None,  # keep the logging set up by setup_logging()
        reload=False,
    )
