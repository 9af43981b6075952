"""FastAPI route definitions for the voice receptionist."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request, WebSocket

from voice_receptionist.api.schemas import HealthResponse, TenantSummary
from voice_receptionist.api.transport import WebSocketAudioChannel
from voice_receptionist.persona import PersonaNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter()

# WebSocket close codes (RFC 6455)
WS_INTERNAL_ERROR = 1011
WS_TRY_AGAIN_LATER = 1013


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check endpoint."""
    active = getattr(request.app.state, "active_calls", set())
    return HealthResponse(active_calls=len(active))


@router.get("/tenants", response_model=list[TenantSummary])
async def list_tenants(request: Request):
    """Tenants this process can answer calls for."""
    store = getattr(request.app.state, "tenants", None)
    if store is None:
        raise HTTPException(
            status_code=503,
            detail="The service is still starting up. Please try again in a moment.",
        )
    return [
        TenantSummary(
            id=record.id,
            name=record.name,
            agent_name=record.agent.agent_name,
            timezone=record.timezone,
            enabled_tools=record.agent.enabled_tools,
        )
        for record in store.records()
    ]


@router.websocket("/calls")
async def call(websocket: WebSocket, tenant_id: str | None = None):
    """Bidirectional audio for one phone call.

    The persona is resolved once, at connect; if that fails the socket is
    closed with 1011 before any audio flows.
    """
    await websocket.accept()
    factory = getattr(websocket.app.state, "sessions", None)
    if factory is None:
        await websocket.close(code=WS_TRY_AGAIN_LATER, reason="Starting up")
        return

    channel = WebSocketAudioChannel(websocket)
    try:
        session = factory.open_session(channel, tenant_id)
    except PersonaNotFoundError:
        logger.exception("Rejecting call for tenant %r: no persona", tenant_id)
        await websocket.close(code=WS_INTERNAL_ERROR, reason="Persona unavailable")
        return

    active_calls: set = getattr(websocket.app.state, "active_calls", set())
    active_calls.add(session.session_id)
    try:
        await session.run()
    finally:
        active_calls.discard(session.session_id)
