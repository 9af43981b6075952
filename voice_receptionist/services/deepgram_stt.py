"""Speech-to-text via Deepgram's pre-recorded ``/v1/listen`` endpoint.

Each finalized utterance is posted as raw linear16 audio; the best
alternative's transcript and confidence come back as a ``Transcript``.
"""

from __future__ import annotations

import logging
import time

import httpx

from voice_receptionist.config import DEEPGRAM_API_KEY, DEEPGRAM_MODEL
from voice_receptionist.models import Transcript
from voice_receptionist.services.metrics import metrics

logger = logging.getLogger(__name__)

DEEPGRAM_BASE_URL = "https://api.deepgram.com"
REQUEST_TIMEOUT_SECONDS = 10.0


class TranscriptionError(Exception):
    """Raised when Deepgram cannot transcribe an utterance."""


class DeepgramTranscriber:
    def __init__(
        self,
        api_key: str | None = None,
        *,
        model: str | None = None,
        language: str = "en-US",
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._model = model or DEEPGRAM_MODEL
        self._language = language
        self._client = http_client or httpx.AsyncClient(
            base_url=DEEPGRAM_BASE_URL,
            headers={"Authorization": f"Token {api_key or DEEPGRAM_API_KEY}"},
            timeout=REQUEST_TIMEOUT_SECONDS,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def transcribe(self, audio_pcm16: bytes, sample_rate: int) -> Transcript:
        t0 = time.perf_counter()
        try:
            response = await self._client.post(
                "/v1/listen",
                params={
                    "model": self._model,
                    "language": self._language,
                    "encoding": "linear16",
                    "sample_rate": str(sample_rate),
                    "channels": "1",
                    "smart_format": "true",
                    "punctuate": "true",
                },
                headers={"Content-Type": "application/octet-stream"},
                content=audio_pcm16,
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            metrics.record_failure(
                "deepgram", "transcribe", error_type=type(exc).__name__,
                latency_ms=(time.perf_counter() - t0) * 1000,
            )
            raise TranscriptionError(f"Deepgram transcription failed: {exc}") from exc

        metrics.record_success(
            "deepgram", "transcribe", latency_ms=(time.perf_counter() - t0) * 1000,
        )
        return parse_listen_response(data)


def parse_listen_response(data: dict) -> Transcript:
    """Pick the top alternative out of a ``/v1/listen`` response body."""
    try:
        alternative = data["results"]["channels"][0]["alternatives"][0]
    except (KeyError, IndexError, TypeError):
        logger.debug("Deepgram response had no alternatives")
        return Transcript(text="", confidence=0.0)
    return Transcript(
        text=(alternative.get("transcript") or "").strip(),
        confidence=float(alternative.get("confidence") or 0.0),
    )
