"""Tests for the Deepgram and ElevenLabs adapters over a mocked transport."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from voice_receptionist.services.deepgram_stt import (
    DeepgramTranscriber,
    TranscriptionError,
    parse_listen_response,
)
from voice_receptionist.services.elevenlabs_tts import ElevenLabsSynthesizer, SynthesisError


def _listen_body(transcript: str, confidence: float) -> dict:
    return {
        "results": {
            "channels": [{"alternatives": [{"transcript": transcript, "confidence": confidence}]}],
        },
    }


def _client(handler, base_url: str) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=base_url, transport=httpx.MockTransport(handler))


# ── Deepgram ────────────────────────────────────────────────────────


class TestParseListenResponse:
    def test_picks_top_alternative(self):
        transcript = parse_listen_response(_listen_body(" I'd like a cleaning. ", 0.93))
        assert transcript.text == "I'd like a cleaning."
        assert transcript.confidence == pytest.approx(0.93)

    @pytest.mark.parametrize("body", [{}, {"results": {"channels": []}}, {"results": None}])
    def test_missing_structure_is_empty(self, body):
        transcript = parse_listen_response(body)
        assert transcript.is_empty
        assert transcript.confidence == 0.0


class TestDeepgramTranscriber:
    def test_posts_linear16_audio(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            seen["body"] = request.content
            return httpx.Response(200, json=_listen_body("hello", 0.8))

        stt = DeepgramTranscriber(http_client=_client(handler, "https://api.deepgram.com"))
        transcript = asyncio.run(stt.transcribe(b"\x00\x01" * 100, 16000))

        assert transcript.text == "hello"
        assert seen["path"] == "/v1/listen"
        assert seen["params"]["encoding"] == "linear16"
        assert seen["params"]["sample_rate"] == "16000"
        assert seen["body"] == b"\x00\x01" * 100

    def test_http_error_raises_transcription_error(self):
        stt = DeepgramTranscriber(
            http_client=_client(lambda r: httpx.Response(500, text="boom"), "https://api.deepgram.com"),
        )
        with pytest.raises(TranscriptionError):
            asyncio.run(stt.transcribe(b"\x00" * 640, 16000))


# ── ElevenLabs ──────────────────────────────────────────────────────


async def _collect(synth: ElevenLabsSynthesizer, text: str) -> list[bytes]:
    return [frame async for frame in synth.synthesize(text)]


class TestElevenLabsSynthesizer:
    def test_streams_fixed_size_frames_with_padded_tail(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["format"] = request.url.params["output_format"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=b"\x05" * 1500)

        synth = ElevenLabsSynthesizer(
            voice_id="voice123",
            http_client=_client(handler, "https://api.elevenlabs.io"),
        )
        frames = asyncio.run(_collect(synth, "Hello there"))

        assert seen["path"] == "/v1/text-to-speech/voice123/stream"
        assert seen["format"] == "pcm_16000"
        assert seen["body"]["text"] == "Hello there"
        assert [len(f) for f in frames] == [640, 640, 640]
        assert frames[-1] == b"\x05" * 220 + b"\x00" * 420

    def test_error_status_raises_synthesis_error(self):
        synth = ElevenLabsSynthesizer(
            http_client=_client(lambda r: httpx.Response(401, text="bad key"), "https://api.elevenlabs.io"),
        )
        with pytest.raises(SynthesisError, match="401"):
            asyncio.run(_collect(synth, "Hi"))

    def test_unsupported_sample_rate(self):
        with pytest.raises(ValueError):
            ElevenLabsSynthesizer(sample_rate=8000)
