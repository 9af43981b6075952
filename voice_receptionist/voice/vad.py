"""Turn-taking: split a live PCM16 stream into caller utterances.

``VoiceActivityDetector`` runs webrtcvad on fixed-size frames and keeps two
run-length counters.  ``speech_frames`` consecutive voiced frames open an
utterance (emitting ``SpeechStarted``); ``silence_frames`` consecutive
unvoiced frames close it (emitting ``UtteranceEnded`` with the audio).  A
short pre-roll of frames from before the onset is kept so the first syllable
reaches the transcriber, and an utterance longer than
``max_utterance_seconds`` is closed early.

The detector never drops audio: inbound chunks of any size are re-framed,
and it keeps segmenting while the orchestrator is busy, so utterances that
end mid-turn simply wait in the session's queue.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Protocol, Union

import webrtcvad

from voice_receptionist.config import (
    AUDIO_FRAME_MS,
    AUDIO_SAMPLE_RATE,
    MAX_UTTERANCE_SECONDS,
    VAD_AGGRESSIVENESS,
    VAD_SILENCE_FRAMES,
    VAD_SPEECH_FRAMES,
)
from voice_receptionist.voice.audio import frame_size_bytes, slice_frames

logger = logging.getLogger(__name__)

PRE_ROLL_FRAMES = 10


class SpeechClassifier(Protocol):
    def is_speech(self, buf: bytes, sample_rate: int) -> bool: ...


@dataclass(frozen=True)
class SpeechStarted:
    pass


@dataclass(frozen=True)
class UtteranceEnded:
    audio: bytes
    duration_ms: int
    truncated: bool = False


VadEvent = Union[SpeechStarted, UtteranceEnded]


class VoiceActivityDetector:
    """Frame-level speech/silence state machine over webrtcvad."""

    def __init__(
        self,
        *,
        sample_rate: int = AUDIO_SAMPLE_RATE,
        frame_ms: int = AUDIO_FRAME_MS,
        aggressiveness: int = VAD_AGGRESSIVENESS,
        speech_frames: int = VAD_SPEECH_FRAMES,
        silence_frames: int = VAD_SILENCE_FRAMES,
        max_utterance_seconds: float = MAX_UTTERANCE_SECONDS,
        classifier: SpeechClassifier | None = None,
    ) -> None:
        if frame_ms not in (10, 20, 30):
            raise ValueError(f"webrtcvad supports 10, 20 or 30 ms frames, got {frame_ms}")
        self.sample_rate = sample_rate
        self.frame_ms = frame_ms
        self.frame_bytes = frame_size_bytes(sample_rate, frame_ms)
        self._speech_frames = speech_frames
        self._silence_frames = silence_frames
        self._max_utterance_bytes = int(max_utterance_seconds * 1000 / frame_ms) * self.frame_bytes
        self._classifier = classifier or webrtcvad.Vad(aggressiveness)

        self._pending = bytearray()
        self._pre_roll: deque[bytes] = deque(maxlen=max(PRE_ROLL_FRAMES, speech_frames))
        self._utterance = bytearray()
        self._in_speech = False
        self._speech_run = 0
        self._silence_run = 0

    @property
    def in_speech(self) -> bool:
        return self._in_speech

    def feed(self, chunk: bytes) -> list[VadEvent]:
        """Accept an inbound chunk of any size and return the events it caused."""
        self._pending.extend(chunk)
        events: list[VadEvent] = []
        for frame in slice_frames(self._pending, self.frame_bytes):
            event = self._process_frame(frame)
            if event is not None:
                events.append(event)
        return events

    def reset(self) -> None:
        self._pending.clear()
        self._pre_roll.clear()
        self._utterance.clear()
        self._in_speech = False
        self._speech_run = 0
        self._silence_run = 0

    # ── Internal ──────────────────────────────────────────────────────

    def _classify(self, frame: bytes) -> bool:
        try:
            return self._classifier.is_speech(frame, self.sample_rate)
        except Exception:
            # webrtcvad raises on malformed frames; treat as silence
            logger.debug("VAD could not classify a %d-byte frame", len(frame))
            return False

    def _process_frame(self, frame: bytes) -> VadEvent | None:
        voiced = self._classify(frame)

        if not self._in_speech:
            self._pre_roll.append(frame)
            self._speech_run = self._speech_run + 1 if voiced else 0
            if self._speech_run >= self._speech_frames:
                self._in_speech = True
                self._silence_run = 0
                self._utterance = bytearray(b"".join(self._pre_roll))
                self._pre_roll.clear()
                logger.debug("VAD: speech started")
                return SpeechStarted()
            return None

        self._utterance.extend(frame)
        self._silence_run = 0 if voiced else self._silence_run + 1

        truncated = len(self._utterance) >= self._max_utterance_bytes
        if self._silence_run >= self._silence_frames or truncated:
            audio = bytes(self._utterance)
            self._in_speech = False
            self._speech_run = 0
            self._silence_run = 0
            self._utterance = bytearray()
            duration_ms = len(audio) // self.frame_bytes * self.frame_ms
            logger.debug("VAD: utterance ended (%dms, truncated=%s)", duration_ms, truncated)
            return UtteranceEnded(audio=audio, duration_ms=duration_ms, truncated=truncated)
        return None
