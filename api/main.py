"""
FastAPI Application — HTTP surface of the flow engine.

Provides:
- Inbound events from the channel webhooks (already normalized)
- Flow registration, listing, activation, retirement and explicit start
- Execution inspection and history
- Operator override ("resume AI") that cancels a running flow
- Manual timer sweep for operations
"""
from __future__ import annotations

import structlog
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from channels.base import ChannelRegistry
from channels.messenger_adapter import MessengerAdapter
from channels.whatsapp_adapter import WhatsAppAdapter
from config.settings import get_settings
from database.session import close_db, describe_database, init_db
from database.store_factory import create_persistence
from engine.actions import create_action_dispatcher
from engine.locks import create_locks
from engine.scheduler import EngineOutcome, EngineResult, ExecutionScheduler
from models.errors import AuthoringError
from models.schemas import InboundEvent, Platform
from timers.manager import TimerManager

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = get_settings()

persistence = create_persistence(_settings_boot.database)
store = persistence.store
flow_repository = persistence.flows
channel_registry = ChannelRegistry()
action_dispatcher = create_action_dispatcher(_settings_boot.actions)
conversation_locks = create_locks(asdict(_settings_boot.locks))

channel_registry.register(MessengerAdapter())
channel_registry.register(WhatsAppAdapter())

scheduler = ExecutionScheduler(
    store=store,
    flows=flow_repository,
    channels=channel_registry,
    actions=action_dispatcher,
    locks=conversation_locks,
    settings=_settings_boot.engine,
)
timer_manager = TimerManager(store, scheduler, _settings_boot.timers)
scheduler.attach_timers(timer_manager)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    if persistence.uses_sql:
        await init_db()

    await channel_registry.initialize_all(settings.channels)

    if settings.database.flows_dir:
        await flow_repository.load_directory(settings.database.flows_dir)

    await timer_manager.recover()
    await timer_manager.start_background()

    logger.info("converse_flows_started",
                store_backend=settings.database.store_backend,
                flow_backend=settings.database.flow_backend,
                lock_backend=settings.locks.backend)
    yield

    await timer_manager.stop()
    await channel_registry.shutdown_all()
    await action_dispatcher.close()
    await conversation_locks.close()
    if persistence.uses_sql:
        await close_db()
    logger.info("converse_flows_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="ConverseFlows API",
    description="Chatbot flow execution engine",
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


@app.exception_handler(AuthoringError)
async def authoring_error_handler(request, exc: AuthoringError):
    return JSONResponse(status_code=422, content={
        "detail": "invalid flow", "flow_id": exc.flow_id, "errors": exc.errors,
    })


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class StartFlowRequest(BaseModel):
    conversation_id: str
    tenant_id: str
    platform: Platform
    sender_id: Optional[str] = None
    text: Optional[str] = None
    force: bool = False


class ToggleFlowRequest(BaseModel):
    active: Optional[bool] = None       # omitted = flip


def _result_body(result: EngineResult) -> dict[str, Any]:
    return {
        "outcome": result.outcome.value,
        "state": result.state.model_dump(by_alias=True, mode="json") if result.state else None,
        "sent": [m.model_dump(by_alias=True, mode="json") for m in result.sent],
        "finished": result.finished,
    }


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "platforms": [p.value for p in channel_registry.get_available()],
        "armed_timers": timer_manager.armed_count,
    }


@app.get("/api/v1/stats")
async def get_stats():
    stats = {
        "executions": await store.stats(),
        "channels": await channel_registry.health_check_all(),
    }
    if persistence.uses_sql:
        stats["database"] = await describe_database()
    return stats


# ══════════════════════════════════════════════════════════════
#  INBOUND EVENTS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/events/inbound")
async def receive_inbound_event(event: InboundEvent):
    result = await scheduler.handle_event(event)
    return _result_body(result)


# ══════════════════════════════════════════════════════════════
#  FLOWS
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/flows")
async def list_flows(tenant_id: str = None):
    flows = await flow_repository.list_flows(tenant_id)
    return [f.to_document() for f in flows]


@app.post("/api/v1/flows", status_code=201)
async def save_flow(document: dict[str, Any]):
    flow = await flow_repository.save_flow(document)
    return flow.to_document()


@app.get("/api/v1/flows/{flow_id}")
async def get_flow(flow_id: str, version: int = None):
    flow = await flow_repository.get_flow(flow_id, version)
    if not flow:
        raise HTTPException(404, "Flow not found")
    return flow.to_document()


@app.post("/api/v1/flows/{flow_id}/toggle")
async def toggle_flow(flow_id: str, req: ToggleFlowRequest = None):
    current = await flow_repository.get_flow(flow_id)
    if not current:
        raise HTTPException(404, "Flow not found")
    active = req.active if req and req.active is not None else not current.is_active
    flow = await flow_repository.set_active(flow_id, active)
    return {"flow_id": flow.id, "version": flow.version, "is_active": flow.is_active}


@app.delete("/api/v1/flows/{flow_id}")
async def delete_flow(flow_id: str):
    """Retire a flow; conversations already running it finish on their version."""
    if not await flow_repository.retire_flow(flow_id):
        raise HTTPException(404, "Flow not found")
    return {"flow_id": flow_id, "retired": True}


@app.post("/api/v1/flows/{flow_id}/start")
async def start_flow(flow_id: str, req: StartFlowRequest):
    event = InboundEvent(
        conversation_id=req.conversation_id,
        tenant_id=req.tenant_id,
        platform=req.platform,
        sender_id=req.sender_id,
        text=req.text,
    )
    result = await scheduler.start_flow(event, flow_id, force=req.force)
    if result.outcome == EngineOutcome.NOT_FOUND:
        raise HTTPException(404, "Flow not found or inactive")
    if result.outcome == EngineOutcome.BUSY:
        return JSONResponse(status_code=409, content=_result_body(result))
    return _result_body(result)


# ══════════════════════════════════════════════════════════════
#  EXECUTIONS
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/executions/{conversation_id}")
async def get_execution(conversation_id: str):
    state = await store.get(conversation_id)
    if not state:
        raise HTTPException(404, "No active flow for this conversation")
    return state.model_dump(by_alias=True, mode="json")


@app.get("/api/v1/executions/{conversation_id}/history")
async def get_execution_history(conversation_id: str, limit: int = Query(20, le=200)):
    records = await store.get_history(conversation_id, limit=limit)
    return [r.model_dump(by_alias=True, mode="json") for r in records]


@app.post("/api/v1/conversations/{conversation_id}/resume-ai")
async def resume_ai(conversation_id: str):
    """Operator override: stop the chatbot flow and hand the conversation back to the AI."""
    result = await scheduler.abort(conversation_id, reason="resume_ai")
    return {
        "conversation_id": conversation_id,
        "aborted": result.outcome == EngineOutcome.ABORTED,
    }


# ══════════════════════════════════════════════════════════════
#  TIMERS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/timers/sweep")
async def sweep_timers():
    fired = await timer_manager.sweep()
    return {"fired": fired}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
