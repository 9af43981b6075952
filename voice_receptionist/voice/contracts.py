"""Interfaces the session orchestrator drives.

Concrete adapters live in ``voice_receptionist.services`` (Deepgram, ElevenLabs)
and ``voice_receptionist.api.transport`` (WebSocket call channel).  Tests plug
in in-memory fakes that satisfy the same protocols.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol

from voice_receptionist.models import Transcript


class AudioChannel(Protocol):
    """Bidirectional PCM16 mono audio for one call."""

    async def receive_frame(self) -> bytes | None:
        """Next inbound frame, or ``None`` once the caller has hung up."""
        ...

    async def send_frame(self, frame: bytes) -> None: ...

    async def clear_playback(self) -> None:
        """Drop audio the far end has buffered but not yet played."""
        ...

    async def close(self) -> None: ...


class Transcriber(Protocol):
    async def transcribe(self, audio_pcm16: bytes, sample_rate: int) -> Transcript: ...


class Synthesizer(Protocol):
    def synthesize(self, text: str) -> AsyncIterator[bytes]:
        """Yield PCM16 frames for *text* as soon as they are available."""
        ...
