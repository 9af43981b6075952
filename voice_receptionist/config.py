"""Centralized configuration for the Voice Receptionist.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/voice-receptionist/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415  (lazy: only needed on AWS)

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/voice-receptionist/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /voice-receptionist/{name} (AWS)."
    )


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Invalid integer for {name}: {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Invalid float for {name}: {raw!r}") from None


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
# Haiku keeps the spoken round-trip short; override for harder personas.
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-haiku-4-5")
LLM_TIMEOUT_SECONDS: float = _env_float("LLM_TIMEOUT_SECONDS", 12.0)
MAX_TOOL_ROUNDS: int = _env_int("MAX_TOOL_ROUNDS", 4)

# ── Calendly ────────────────────────────────────────────────────────
CALENDLY_API_TOKEN: str = _require_env("CALENDLY_API_TOKEN")
CALENDLY_BASE_URL: str = "https://api.calendly.com"
CALENDLY_EVENT_TYPE_URI: str | None = os.getenv("CALENDLY_EVENT_TYPE_URI") or None
# Longer than one fully retried Calendly request (3 x 8s plus backoff)
TOOL_TIMEOUT_SECONDS: float = _env_float("TOOL_TIMEOUT_SECONDS", 30.0)
BOOKING_DEDUP_WINDOW_SECONDS: float = _env_float("BOOKING_DEDUP_WINDOW_SECONDS", 600.0)

# ── Speech ──────────────────────────────────────────────────────────
DEEPGRAM_API_KEY: str = _require_env("DEEPGRAM_API_KEY")
DEEPGRAM_MODEL: str = os.getenv("DEEPGRAM_MODEL", "nova-2")
STT_TIMEOUT_SECONDS: float = _env_float("STT_TIMEOUT_SECONDS", 8.0)
MIN_TRANSCRIPT_CONFIDENCE: float = _env_float("MIN_TRANSCRIPT_CONFIDENCE", 0.4)

ELEVENLABS_API_KEY: str = _require_env("ELEVENLABS_API_KEY")
ELEVENLABS_VOICE_ID: str = os.getenv("ELEVENLABS_VOICE_ID", "21m00Tcm4TlvDq8ikWAM")
ELEVENLABS_MODEL: str = os.getenv("ELEVENLABS_MODEL", "eleven_turbo_v2_5")

# ── Audio / turn-taking ─────────────────────────────────────────────
AUDIO_SAMPLE_RATE: int = _env_int("AUDIO_SAMPLE_RATE", 16000)
AUDIO_FRAME_MS: int = _env_int("AUDIO_FRAME_MS", 20)
VAD_AGGRESSIVENESS: int = _env_int("VAD_AGGRESSIVENESS", 2)
# 3 x 20ms of speech opens an utterance, 25 x 20ms of silence closes it
VAD_SPEECH_FRAMES: int = _env_int("VAD_SPEECH_FRAMES", 3)
VAD_SILENCE_FRAMES: int = _env_int("VAD_SILENCE_FRAMES", 25)
MAX_UTTERANCE_SECONDS: float = _env_float("MAX_UTTERANCE_SECONDS", 30.0)

# ── Tenants ─────────────────────────────────────────────────────────
TENANTS_FILE: str = os.getenv(
    "TENANTS_FILE",
    os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "tenants.json"),
)
DEFAULT_TENANT_ID: str = os.getenv("DEFAULT_TENANT_ID", "bright-smiles")

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = _env_int("SERVER_PORT", 8000)
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")


@dataclass(frozen=True)
class SessionSettings:
    """Per-call knobs handed to the orchestrator.

    Defaults come from the environment; tests build their own with short
    timeouts.
    """

    sample_rate: int = AUDIO_SAMPLE_RATE
    frame_ms: int = AUDIO_FRAME_MS
    stt_timeout: float = STT_TIMEOUT_SECONDS
    llm_timeout: float = LLM_TIMEOUT_SECONDS
    max_tool_rounds: int = MAX_TOOL_ROUNDS
    min_transcript_confidence: float = MIN_TRANSCRIPT_CONFIDENCE
    pace_playback: bool = True

    @property
    def frame_seconds(self) -> float:
        return self.frame_ms / 1000

    @property
    def frame_bytes(self) -> int:
        """Bytes in one PCM16 mono frame."""
        return self.sample_rate * self.frame_ms // 1000 * 2
