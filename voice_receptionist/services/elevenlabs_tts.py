"""Text-to-speech via ElevenLabs' streaming endpoint.

Audio is requested as raw PCM at the call's sample rate and re-sliced into
fixed-size frames as bytes arrive, so playback can start on the first chunk
and be cancelled between any two frames.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator

import httpx

from voice_receptionist.config import (
    AUDIO_FRAME_MS,
    AUDIO_SAMPLE_RATE,
    ELEVENLABS_API_KEY,
    ELEVENLABS_MODEL,
    ELEVENLABS_VOICE_ID,
)
from voice_receptionist.services.metrics import metrics
from voice_receptionist.voice.audio import frame_size_bytes, pad_frame, slice_frames

logger = logging.getLogger(__name__)

ELEVENLABS_BASE_URL = "https://api.elevenlabs.io"
REQUEST_TIMEOUT_SECONDS = 15.0
# Output formats ElevenLabs can stream as raw PCM
SUPPORTED_PCM_RATES = (16000, 22050, 24000, 44100)


class SynthesisError(Exception):
    """Raised when ElevenLabs cannot synthesize the requested text."""


class ElevenLabsSynthesizer:
    def __init__(
        self,
        api_key: str | None = None,
        *,
        voice_id: str | None = None,
        model: str | None = None,
        sample_rate: int = AUDIO_SAMPLE_RATE,
        frame_ms: int = AUDIO_FRAME_MS,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if sample_rate not in SUPPORTED_PCM_RATES:
            raise ValueError(f"ElevenLabs cannot stream PCM at {sample_rate} Hz")
        self._voice_id = voice_id or ELEVENLABS_VOICE_ID
        self._model = model or ELEVENLABS_MODEL
        self._sample_rate = sample_rate
        self._frame_bytes = frame_size_bytes(sample_rate, frame_ms)
        self._client = http_client or httpx.AsyncClient(
            base_url=ELEVENLABS_BASE_URL,
            headers={
                "xi-api-key": api_key or ELEVENLABS_API_KEY,
                "Content-Type": "application/json",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def synthesize(self, text: str) -> AsyncIterator[bytes]:
        t0 = time.perf_counter()
        first_frame = True
        buffer = bytearray()
        try:
            async with self._client.stream(
                "POST",
                f"/v1/text-to-speech/{self._voice_id}/stream",
                params={"output_format": f"pcm_{self._sample_rate}"},
                json={"text": text, "model_id": self._model},
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise SynthesisError(
                        f"ElevenLabs error {response.status_code}: {response.text}"
                    )
                async for chunk in response.aiter_bytes():
                    buffer.extend(chunk)
                    for frame in slice_frames(buffer, self._frame_bytes):
                        if first_frame:
                            first_frame = False
                            metrics.record_success(
                                "elevenlabs", "first_frame",
                                latency_ms=(time.perf_counter() - t0) * 1000,
                            )
                        yield frame
        except httpx.HTTPError as exc:
            metrics.record_failure(
                "elevenlabs", "synthesize", error_type=type(exc).__name__,
                latency_ms=(time.perf_counter() - t0) * 1000,
            )
            raise SynthesisError(f"ElevenLabs synthesis failed: {exc}") from exc

        # Drop a dangling odd byte so the padded frame stays sample-aligned
        tail = bytes(buffer[: len(buffer) // 2 * 2])
        if tail:
            yield pad_frame(tail, self._frame_bytes)
