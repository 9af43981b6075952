"""Shared test fixtures for the voice receptionist test suite."""

from __future__ import annotations

import asyncio
import os
from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest

# Monday, 16 February 2026, 9:00 AM in New York
FIXED_NOW = datetime(2026, 2, 16, 14, 0, tzinfo=UTC)


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any test module is imported, so config.py won't fail on
    module load.  Package imports below are kept inside fixtures for the
    same reason.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("CALENDLY_API_TOKEN", "test-calendly-token-456")
    os.environ.setdefault("DEEPGRAM_API_KEY", "test-deepgram-key-789")
    os.environ.setdefault("ELEVENLABS_API_KEY", "test-elevenlabs-key-000")
    os.environ.setdefault("METRICS_ENABLED", "false")


# ── Fakes ────────────────────────────────────────────────────────────


class FakeChannel:
    """In-memory ``AudioChannel``; push ``None`` to hang up."""

    def __init__(self) -> None:
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent: list[bytes] = []
        self.cleared = 0
        self.closed = False

    async def receive_frame(self):
        return await self.inbound.get()

    async def send_frame(self, frame: bytes) -> None:
        self.sent.append(frame)

    async def clear_playback(self) -> None:
        self.cleared += 1

    async def close(self) -> None:
        self.closed = True


class FakeSynthesizer:
    """Yields a fixed number of silent frames per reply and records the text."""

    def __init__(self, frames_per_reply: int = 3, frame_bytes: int = 640) -> None:
        self.frames_per_reply = frames_per_reply
        self.frame = b"\x00" * frame_bytes
        self.texts: list[str] = []

    async def synthesize(self, text: str):
        self.texts.append(text)
        for _ in range(self.frames_per_reply):
            yield self.frame


class FakeClassifier:
    """Treats frames starting with 0x01 as speech."""

    def is_speech(self, buf: bytes, sample_rate: int) -> bool:
        return buf[:1] == b"\x01"


VOICED = b"\x01" * 640
SILENT = b"\x00" * 640


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll *predicate* until true, failing the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture
def tenant_record():
    from voice_receptionist.persona import AgentProfile, TenantRecord

    return TenantRecord(
        id="acme",
        name="Acme Dental",
        phone_no="+1 555 000-1111",
        email="front@acmedental.test",
        address="1 Main Street, Springfield",
        operating_hours={"monday": "8:00 AM - 5:00 PM", "friday": "8:00 AM - 1:00 PM"},
        services=["Check-ups", "Cleanings"],
        no_show_fees=25,
        insurance="We accept Delta Dental.",
        timezone="America/New_York",
        agent=AgentProfile(agent_name="Rachel"),
    )


@pytest.fixture
def persona(tenant_record):
    from voice_receptionist.persona import build_persona

    return build_persona(tenant_record, now=FIXED_NOW)


@pytest.fixture
def provider():
    """Calendly client double; async methods are ``AsyncMock``s."""
    from voice_receptionist.services.calendly_client import CalendlyClient

    return MagicMock(spec=CalendlyClient)


@pytest.fixture
def tool_context(persona, provider):
    from voice_receptionist.tools.registry import ToolContext
    from voice_receptionist.tools.scheduling import BookingGuard

    return ToolContext(
        persona=persona,
        provider=provider,
        booking_guard=BookingGuard(),
        session_id="test-session",
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def mock_calendly_response():
    """Factory fixture for creating mock Calendly API responses."""

    def _make(data: dict, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        return mock

    return _make
