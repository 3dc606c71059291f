"""
FastAPI Application — REST API + Webhooks + Server-Sent Events.

Provides:
- REST API for batch calls (start, stats, history, cancel, retry)
- REST API for WhatsApp conversations and agents
- Webhook endpoint for inbound WhatsApp messages (Twilio, form-encoded)
- SSE endpoint streaming live events to observers
"""
from __future__ import annotations

import json
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Optional

import structlog

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from config.settings import get_settings
from core.errors import CampaignError
from core.orchestrator import CampaignOrchestrator, build_orchestrator
from database.session import close_db, init_db, ping_db
from database.store_factory import create_message_log, create_store
from models.schemas import ConversationLifecycle, EventTopic, SideEffectStatus
from providers.whatsapp import TwilioWhatsAppTransport

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    uses_sql = "sql" in (settings.database.store_backend, settings.database.message_log_backend)

    if getattr(app.state, "orchestrator", None) is None:
        if uses_sql:
            await init_db()
        app.state.orchestrator = build_orchestrator(
            create_store(asdict(settings.database)),
            create_message_log(asdict(settings.database)),
            settings,
        )
    orchestrator: CampaignOrchestrator = app.state.orchestrator
    await orchestrator.start()

    logger.info("campaign_relay_started", app=settings.app_name,
                store=settings.database.store_backend,
                message_log=settings.database.message_log_backend)
    yield

    await orchestrator.shutdown()
    if uses_sql:
        await close_db()
    logger.info("campaign_relay_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="CampaignRelay API",
    description="Outbound batch calls with WhatsApp follow-up conversations",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CampaignError)
async def campaign_error_handler(request: Request, exc: CampaignError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.kind, "detail": str(exc), "retryable": exc.retryable},
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=422, content={"error": "InvalidRequest", "detail": str(exc)})


def _orchestrator(request: Request) -> CampaignOrchestrator:
    return request.app.state.orchestrator


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class StartBatchRequest(BaseModel):
    recipients: list[dict[str, Any]] = Field(min_length=1)
    agent_phone_number_id: str = ""
    call_name: str = ""
    agent_id: str = ""
    whatsapp_agent_id: str = ""
    scheduled_time: Optional[datetime] = None
    metadata: dict[str, Any] = {}


class SendMessageRequest(BaseModel):
    text: str = Field(min_length=1)


class BindAgentRequest(BaseModel):
    agent_id: str


class InboundMessageRequest(BaseModel):
    contact_id: str
    text: str
    external_message_id: Optional[str] = None
    metadata: dict[str, Any] = {}


class AgentCreateRequest(BaseModel):
    name: str
    system_instruction: str = ""
    language: str = "es"
    owner_id: str = ""


class AgentUpdateRequest(BaseModel):
    name: Optional[str] = None
    system_instruction: Optional[str] = None
    language: Optional[str] = None
    is_active: Optional[bool] = None


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health(request: Request):
    orchestrator = _orchestrator(request)
    database = get_settings().database
    db_ok = True
    if "sql" in (database.store_backend, database.message_log_backend):
        db_ok = await ping_db()
    return {
        "status": "healthy" if db_ok else "degraded",
        "database": "ok" if db_ok else "unreachable",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "monitored_batches": orchestrator.monitor.active_batches(),
        "side_effects_in_flight": orchestrator.runner.in_flight,
        "event_subscribers": orchestrator.hub.subscriber_count(),
    }


# ══════════════════════════════════════════════════════════════
#  BATCH CALLS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/groups/{group_id}/batch", status_code=201)
async def start_batch(group_id: str, req: StartBatchRequest, request: Request):
    record = await _orchestrator(request).start_batch(
        group_id,
        req.recipients,
        agent_phone_number_id=req.agent_phone_number_id,
        call_name=req.call_name,
        agent_id=req.agent_id,
        whatsapp_agent_id=req.whatsapp_agent_id,
        scheduled_time=req.scheduled_time,
        metadata=req.metadata,
    )
    return record.model_dump(mode="json")


@app.get("/api/v1/groups/{group_id}/batch/stats")
async def batch_stats(group_id: str, request: Request):
    stats = await _orchestrator(request).get_batch_stats(group_id)
    return stats.model_dump(mode="json")


@app.get("/api/v1/groups/{group_id}/batch")
async def get_batch(group_id: str, request: Request):
    record = await _orchestrator(request).get_batch(group_id)
    return record.model_dump(mode="json")


@app.get("/api/v1/groups/{group_id}/batch/history")
async def batch_history(group_id: str, request: Request):
    records = await _orchestrator(request).list_batches(group_id)
    return [r.model_dump(mode="json") for r in records]


@app.post("/api/v1/groups/{group_id}/batch/refresh")
async def refresh_batch(group_id: str, request: Request):
    record = await _orchestrator(request).refresh_batch(group_id)
    return record.model_dump(mode="json")


@app.post("/api/v1/groups/{group_id}/batch/cancel")
async def cancel_batch(group_id: str, request: Request):
    record = await _orchestrator(request).cancel_batch(group_id)
    return record.model_dump(mode="json")


@app.post("/api/v1/groups/{group_id}/batch/retry")
async def retry_batch(group_id: str, request: Request):
    record = await _orchestrator(request).retry_batch(group_id)
    return record.model_dump(mode="json")


@app.get("/api/v1/batches/stale")
async def stale_batches(request: Request):
    records = await _orchestrator(request).list_stale_batches()
    return [r.model_dump(mode="json") for r in records]


@app.get("/api/v1/batches/provider")
async def provider_batches(request: Request):
    return await _orchestrator(request).list_provider_batches()


@app.get("/api/v1/batches/{batch_id}")
async def find_batch(batch_id: str, request: Request):
    record = await _orchestrator(request).find_batch(batch_id)
    if not record:
        raise HTTPException(404, "Batch not found")
    return record.model_dump(mode="json")


@app.get("/api/v1/batches/{batch_id}/side-effects")
async def list_side_effects(batch_id: str, request: Request, status: str = None):
    records = await _orchestrator(request).list_side_effects(
        batch_id, SideEffectStatus(status) if status else None,
    )
    return [r.model_dump(mode="json") for r in records]


@app.post("/api/v1/groups/{group_id}/batch/side-effects/retry")
async def retry_side_effects(group_id: str, request: Request):
    count = await _orchestrator(request).retry_failed_side_effects(group_id)
    return {"resubmitted": count}


# ══════════════════════════════════════════════════════════════
#  CONVERSATIONS
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/conversations")
async def list_conversations(
    request: Request,
    agent_id: str = "",
    lifecycle: str = None,
    limit: int = Query(50, le=200),
):
    records = await _orchestrator(request).list_conversations(
        agent_id=agent_id,
        lifecycle=ConversationLifecycle(lifecycle) if lifecycle else None,
        limit=limit,
    )
    return [r.model_dump(mode="json") for r in records]


@app.get("/api/v1/conversations/{contact_id}")
async def get_conversation(contact_id: str, request: Request, limit: int = Query(50, le=500)):
    result = await _orchestrator(request).get_conversation(contact_id, limit)
    return {
        "conversation": result["conversation"].model_dump(mode="json"),
        "messages": [m.model_dump(mode="json") for m in result["messages"]],
    }


@app.get("/api/v1/conversations/{contact_id}/agent")
async def get_bound_agent(contact_id: str, request: Request):
    agent = await _orchestrator(request).get_bound_agent(contact_id)
    return agent.model_dump(mode="json")


@app.put("/api/v1/conversations/{contact_id}/agent")
async def bind_agent(contact_id: str, req: BindAgentRequest, request: Request):
    record = await _orchestrator(request).bind_agent(contact_id, req.agent_id)
    return record.model_dump(mode="json")


@app.post("/api/v1/conversations/{contact_id}/messages")
async def send_message(contact_id: str, req: SendMessageRequest, request: Request):
    entry = await _orchestrator(request).send_message(contact_id, req.text)
    return entry.model_dump(mode="json")


@app.post("/api/v1/conversations/{contact_id}/session/reset")
async def reset_session(contact_id: str, request: Request):
    dropped = await _orchestrator(request).reset_session(contact_id)
    return {"sessions_dropped": dropped}


@app.post("/api/v1/conversations/{contact_id}/archive")
async def archive_conversation(contact_id: str, request: Request):
    record = await _orchestrator(request).archive_conversation(contact_id)
    return record.model_dump(mode="json")


@app.post("/api/v1/messages/inbound")
async def receive_inbound_message(req: InboundMessageRequest, request: Request):
    result = await _orchestrator(request).handle_inbound(
        req.contact_id, req.text, req.external_message_id, req.metadata,
    )
    return result.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════
#  AGENTS
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/agents")
async def list_agents(request: Request, owner_id: str = ""):
    return [a.model_dump(mode="json") for a in await _orchestrator(request).list_agents(owner_id)]


@app.post("/api/v1/agents", status_code=201)
async def create_agent(req: AgentCreateRequest, request: Request):
    agent = await _orchestrator(request).create_agent(
        req.name, req.system_instruction, req.language, req.owner_id,
    )
    return agent.model_dump(mode="json")


@app.get("/api/v1/agents/{agent_id}")
async def get_agent(agent_id: str, request: Request):
    return (await _orchestrator(request).get_agent(agent_id)).model_dump(mode="json")


@app.patch("/api/v1/agents/{agent_id}")
async def update_agent(agent_id: str, req: AgentUpdateRequest, request: Request):
    orchestrator = _orchestrator(request)
    fields = req.model_dump(exclude_none=True)
    active = fields.pop("is_active", None)
    agent = await orchestrator.get_agent(agent_id)
    if fields:
        agent = await orchestrator.update_agent(agent_id, **fields)
    if active is not None:
        agent = await orchestrator.set_agent_active(agent_id, active)
    return agent.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS: WhatsApp (Twilio)
# ══════════════════════════════════════════════════════════════

@app.post("/webhooks/whatsapp")
async def whatsapp_webhook(request: Request):
    """Twilio inbound message callback — form-encoded."""
    body = dict(await request.form())
    parsed = TwilioWhatsAppTransport.parse_inbound_webhook(body)
    if not parsed["contact_id"] or not parsed["text"]:
        logger.info("whatsapp_webhook_ignored", has_sender=bool(parsed["contact_id"]))
        return {"status": "ignored"}

    result = await _orchestrator(request).handle_inbound(
        parsed["contact_id"], parsed["text"],
        parsed["external_message_id"], parsed["metadata"],
    )
    return result.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════
#  EVENTS: Server-Sent Events
# ══════════════════════════════════════════════════════════════

async def _event_generator(request: Request, stream, heartbeat_s: float) -> AsyncGenerator[dict, None]:
    """Yield hub events as SSE messages, with a ping whenever the stream is idle."""
    try:
        yield {"event": "connected", "data": json.dumps({"topics": stream.topics})}
        while True:
            if await request.is_disconnected():
                break
            event = await stream.get(timeout=heartbeat_s)
            if event is None:
                yield {"event": "ping", "data": json.dumps({"dropped": stream.dropped})}
                continue
            yield {"event": event["topic"], "data": json.dumps(event, default=str)}
    finally:
        stream.close()


@app.get("/events/stream")
async def stream_events(request: Request, topics: Optional[str] = None):
    """
    Stream live events. `topics` is a comma-separated subset of
    new_conversation, conversation_update, new_message, batch_progress,
    batch_completed, batch_stale (default: all).
    """
    selected = [EventTopic(t.strip()) for t in topics.split(",") if t.strip()] if topics else None
    stream = _orchestrator(request).stream(selected)
    heartbeat_s = get_settings().events.heartbeat_s
    return EventSourceResponse(
        _event_generator(request, stream, heartbeat_s),
        media_type="text/event-stream",
    )


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
