"""Value types shared across the voice pipeline.

Turns are frozen and only ever appended to a session's history; the order of
that list is what the language model has seen.  Provider results
(slots, service types, bookings) are transient and never cached across turns.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Union


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SessionState(str, Enum):
    """Lifecycle states of one call."""

    IDLE = "idle"
    LISTENING = "listening"
    TRANSCRIBING = "transcribing"
    REASONING = "reasoning"
    TOOL_DISPATCH = "tool_dispatch"
    SPEAKING = "speaking"
    ENDED = "ended"


# ── Turns ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CallerUtterance:
    text: str
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class AssistantUtterance:
    text: str
    timestamp: datetime = field(default_factory=_utcnow)
    tool_call_id: str | None = None


@dataclass(frozen=True)
class ToolInvocation:
    call_id: str
    tool_name: str
    arguments: dict[str, Any]
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    tool_name: str
    success: bool
    payload: dict[str, Any] | None = None
    error: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)


Turn = Union[CallerUtterance, AssistantUtterance, ToolInvocation, ToolResult]


# ── Tool outcome ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class ToolOutcome:
    """Uniform result shape returned by the tool registry."""

    ok: bool
    payload: dict[str, Any] | None = None
    error: str | None = None

    @classmethod
    def success(cls, payload: dict[str, Any]) -> ToolOutcome:
        return cls(ok=True, payload=payload)

    @classmethod
    def failure(cls, error: str) -> ToolOutcome:
        return cls(ok=False, error=error)

    def to_model_text(self) -> str:
        """Serialise for the reasoning model's tool-result message."""
        if self.ok:
            return json.dumps({"ok": True, **(self.payload or {})}, default=str)
        return json.dumps({"ok": False, "error": self.error})


# ── Speech ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Transcript:
    text: str
    confidence: float = 1.0

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()


# ── Scheduling provider values ──────────────────────────────────────


@dataclass(frozen=True)
class AvailabilitySlot:
    start_time: datetime
    status: str = "available"

    @property
    def iso_start(self) -> str:
        return self.start_time.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class ServiceType:
    uri: str
    name: str
    slug: str = ""
    duration_minutes: int | None = None
    scheduling_url: str | None = None


@dataclass(frozen=True)
class Contact:
    name: str
    email: str
    phone: str | None = None


@dataclass(frozen=True)
class BookingResult:
    event_uri: str | None
    cancel_url: str | None
    reschedule_url: str | None
