"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "voice-receptionist"
    active_calls: int = Field(0, description="Calls currently connected to this process")


class TenantSummary(BaseModel):
    """Public view of a configured tenant."""

    id: str
    name: str
    agent_name: str
    timezone: str
    enabled_tools: list[str]
