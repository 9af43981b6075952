"""Per-call session orchestrator.

One ``CallSession`` owns a call from connect to hangup.  It runs three
tasks:

  * **receive** - reads inbound frames, feeds the VAD, queues finished
    utterances and triggers barge-in when the caller starts talking over
    playback
  * **turns**   - takes one utterance at a time off the queue and runs it
    through transcription, reasoning (and tool dispatch) and speech.  It is
    the only task that touches STT, the model or tools, so reasoning can
    never be entered twice at once
  * **playback** - streams synthesized frames to the caller at real-time
    pace; cancelled on barge-in.  Text the model sends along with tool calls
    is played while the tools run, and the final reply waits for it

State machine::

    Idle → Listening → Transcribing → Reasoning ⇄ ToolDispatch → Speaking → Idle
    Speaking → Listening          (barge-in)
    Transcribing → Idle           (empty or low-confidence transcript)
    any → Ended                   (hangup)

The turn history is append-only and is the model's only memory.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from voice_receptionist.agent import (
    FALLBACK_APOLOGY,
    build_reasoning_graph,
    initial_state,
    turns_from_update,
)
from voice_receptionist.config import SessionSettings
from voice_receptionist.models import (
    AssistantUtterance,
    CallerUtterance,
    SessionState,
    ToolInvocation,
    ToolResult,
    Turn,
)
from voice_receptionist.persona import PersonaBundle, PersonaResolver
from voice_receptionist.services.calendly_client import CalendlyClient
from voice_receptionist.services.metrics import metrics
from voice_receptionist.tools.registry import ToolContext, ToolRegistry
from voice_receptionist.tools.scheduling import BookingGuard
from voice_receptionist.voice.contracts import AudioChannel, Synthesizer, Transcriber
from voice_receptionist.voice.vad import SpeechStarted, UtteranceEnded, VoiceActivityDetector

logger = logging.getLogger(__name__)

STT_APOLOGY = "Sorry, I didn't catch that. Could you say it again?"
INTERRUPTED_TOOL_ERROR = "The request was interrupted before it finished."


class CallSession:
    """Drives one call through the listen → think → speak loop."""

    def __init__(
        self,
        *,
        channel: AudioChannel,
        transcriber: Transcriber,
        synthesizer: Synthesizer,
        reasoner: Any,
        persona: PersonaBundle,
        vad: VoiceActivityDetector,
        settings: SessionSettings | None = None,
        session_id: str | None = None,
    ) -> None:
        self.session_id = session_id or str(uuid.uuid4())
        self.persona = persona
        self.settings = settings or SessionSettings()
        self.state = SessionState.IDLE
        self.history: list[Turn] = []

        self._channel = channel
        self._transcriber = transcriber
        self._synthesizer = synthesizer
        self._reasoner = reasoner
        self._vad = vad
        self._utterances: asyncio.Queue[UtteranceEnded] = asyncio.Queue()
        self._playback: asyncio.Task | None = None
        self._started_at = time.monotonic()

    # ── Lifecycle ────────────────────────────────────────────────────

    async def run(self) -> None:
        """Greet the caller and serve turns until hangup."""
        logger.info("[%s] call started for tenant %s", self.session_id, self.persona.tenant_id)
        metrics.record_session_event("started", tenant_id=self.persona.tenant_id)

        receiver = asyncio.create_task(self._receive_loop(), name=f"receive-{self.session_id}")
        turns = asyncio.create_task(self._turn_loop(), name=f"turns-{self.session_id}")
        try:
            done, _ = await asyncio.wait({receiver, turns}, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.error(
                        "[%s] %s task failed", self.session_id, task.get_name(),
                        exc_info=task.exception(),
                    )
        finally:
            for task in (receiver, turns):
                task.cancel()
            await asyncio.gather(receiver, turns, return_exceptions=True)
            await self.end()

    async def end(self) -> None:
        """Move to ``Ended`` and release the channel.  Safe to call twice."""
        if self.state is SessionState.ENDED:
            return
        self._set_state(SessionState.ENDED)
        if self._playback is not None and not self._playback.done():
            self._playback.cancel()
        try:
            await self._channel.close()
        except Exception as exc:
            logger.debug("[%s] channel close failed: %s", self.session_id, exc)
        metrics.record_session_event("ended", tenant_id=self.persona.tenant_id)
        logger.info(
            "[%s] call ended after %.0fs with %d turn(s)",
            self.session_id, time.monotonic() - self._started_at, len(self.history),
        )

    def _set_state(self, new_state: SessionState) -> None:
        if self.state is SessionState.ENDED or self.state is new_state:
            return
        logger.debug("[%s] %s → %s", self.session_id, self.state.value, new_state.value)
        self.state = new_state

    def _settle(self) -> None:
        """Back to Idle, or Listening if the caller is already talking."""
        self._set_state(SessionState.LISTENING if self._vad.in_speech else SessionState.IDLE)

    # ── Receive side ─────────────────────────────────────────────────

    async def _receive_loop(self) -> None:
        while True:
            frame = await self._channel.receive_frame()
            if frame is None:
                logger.info("[%s] caller hung up", self.session_id)
                return
            for event in self._vad.feed(frame):
                if isinstance(event, SpeechStarted):
                    await self.on_speech_started()
                else:
                    self._utterances.put_nowait(event)

    async def on_speech_started(self) -> None:
        if self.state is SessionState.SPEAKING or self._playing():
            await self.barge_in()
        elif self.state is SessionState.IDLE:
            self._set_state(SessionState.LISTENING)

    async def barge_in(self) -> None:
        """Stop playback now and hand the floor back to the caller."""
        task = self._playback
        if task is not None and not task.done():
            task.cancel()
        # Filler speech during tool dispatch is cut without leaving that state
        if self.state is SessionState.SPEAKING:
            self._set_state(SessionState.LISTENING)
        try:
            await self._channel.clear_playback()
        except Exception as exc:
            logger.debug("[%s] clear_playback failed: %s", self.session_id, exc)
        metrics.record_session_event("barge_in", tenant_id=self.persona.tenant_id)
        logger.info("[%s] barge-in: playback stopped", self.session_id)

    # ── Turn side ────────────────────────────────────────────────────

    async def _turn_loop(self) -> None:
        await self.speak(self.persona.greeting)
        while True:
            utterance = await self._utterances.get()
            await self.process_utterance(utterance)

    async def process_utterance(self, utterance: UtteranceEnded) -> None:
        """Transcribe, reason and reply for one finished utterance."""
        self._set_state(SessionState.TRANSCRIBING)
        t0 = time.perf_counter()
        try:
            transcript = await asyncio.wait_for(
                self._transcriber.transcribe(utterance.audio, self.settings.sample_rate),
                timeout=self.settings.stt_timeout,
            )
        except Exception as exc:
            logger.warning(
                "[%s] transcription failed: %s: %s", self.session_id, type(exc).__name__, exc,
            )
            metrics.record_session_event("stt_failed", tenant_id=self.persona.tenant_id)
            await self._play_and_settle(STT_APOLOGY)
            return

        if transcript.is_empty or transcript.confidence < self.settings.min_transcript_confidence:
            logger.debug(
                "[%s] ignoring transcript %r (confidence %.2f)",
                self.session_id, transcript.text, transcript.confidence,
            )
            self._settle()
            return

        logger.info(
            "[%s] caller (%.0fms STT): %s",
            self.session_id, (time.perf_counter() - t0) * 1000, transcript.text,
        )
        self.history.append(CallerUtterance(text=transcript.text.strip()))
        reply = await self._reason()
        logger.info("[%s] assistant: %s", self.session_id, reply.text)
        await self._play_and_settle(reply.text)

    async def _reason(self) -> AssistantUtterance:
        """Run the reasoning graph once and return the reply to speak."""
        self._set_state(SessionState.REASONING)
        reply: AssistantUtterance | None = None
        # chatbot/tools pairs per round, plus the final chatbot and exhausted steps
        config = {"recursion_limit": 2 * self.settings.max_tool_rounds + 5}
        try:
            async for update in self._reasoner.astream(
                initial_state(self.history), config=config, stream_mode="updates",
            ):
                for node, delta in update.items():
                    if not delta:
                        continue
                    if node == "exhausted":
                        metrics.record_session_event(
                            "tool_round_limit", tenant_id=self.persona.tenant_id,
                        )
                    if delta.get("fallback"):
                        metrics.record_session_event("fallback", tenant_id=self.persona.tenant_id)
                    new_turns = turns_from_update(delta)
                    self.history.extend(new_turns)
                    dispatching = any(isinstance(t, ToolInvocation) for t in new_turns)
                    for turn in new_turns:
                        if not isinstance(turn, AssistantUtterance):
                            continue
                        if dispatching:
                            self._start_filler(turn.text)
                        else:
                            reply = turn
                    if dispatching:
                        self._set_state(SessionState.TOOL_DISPATCH)
                    elif node == "tools":
                        self._set_state(SessionState.REASONING)
        except Exception:
            logger.exception("[%s] reasoning failed", self.session_id)
            metrics.record_session_event("fallback", tenant_id=self.persona.tenant_id)
            self._close_dangling_invocations()
            reply = None

        if reply is None:
            reply = AssistantUtterance(text=FALLBACK_APOLOGY)
            self.history.append(reply)
        return reply

    def _close_dangling_invocations(self) -> None:
        """Give every unanswered tool call a failed result so history stays valid."""
        answered = {t.call_id for t in self.history if isinstance(t, ToolResult)}
        for turn in list(self.history):
            if isinstance(turn, ToolInvocation) and turn.call_id not in answered:
                self.history.append(ToolResult(
                    call_id=turn.call_id,
                    tool_name=turn.tool_name,
                    success=False,
                    error=INTERRUPTED_TOOL_ERROR,
                ))

    # ── Speech ───────────────────────────────────────────────────────

    async def speak(self, text: str) -> None:
        """Append an assistant turn and play it; returns when done or interrupted."""
        self.history.append(AssistantUtterance(text=text))
        logger.info("[%s] assistant: %s", self.session_id, text)
        await self._play_and_settle(text)

    def _playing(self) -> bool:
        return self._playback is not None and not self._playback.done()

    def _start_filler(self, text: str) -> None:
        """Speak text the model sent with its tool calls while they run."""
        logger.info("[%s] assistant (while tools run): %s", self.session_id, text)
        if self._playing():
            logger.debug("[%s] filler skipped, still speaking", self.session_id)
            return
        self._playback = asyncio.create_task(self._play(text), name=f"filler-{self.session_id}")

    async def _play_and_settle(self, text: str) -> None:
        # Let any filler finish first
        if self._playing():
            await asyncio.wait({self._playback})
        self._set_state(SessionState.SPEAKING)
        self._playback = asyncio.create_task(self._play(text), name=f"playback-{self.session_id}")
        await asyncio.wait({self._playback})
        self._playback = None
        # A barge-in has already moved us to Listening
        if self.state is SessionState.SPEAKING:
            self._settle()

    async def _play(self, text: str) -> None:
        loop = asyncio.get_running_loop()
        frame_seconds = self.settings.frame_seconds
        deadline = loop.time()
        frames = self._synthesizer.synthesize(text)
        sent = 0
        try:
            async for frame in frames:
                await self._channel.send_frame(frame)
                sent += 1
                if self.settings.pace_playback:
                    deadline = max(deadline, loop.time() - frame_seconds) + frame_seconds
                    await asyncio.sleep(max(0.0, deadline - loop.time()))
        except Exception as exc:
            logger.error("[%s] speech playback failed: %s", self.session_id, exc)
            metrics.record_session_event("tts_failed", tenant_id=self.persona.tenant_id)
        finally:
            aclose = getattr(frames, "aclose", None)
            if aclose is not None:
                await aclose()
            logger.debug("[%s] played %d frame(s)", self.session_id, sent)


# ── Factory ──────────────────────────────────────────────────────────


@dataclass
class SessionFactory:
    """Process-wide collaborators shared by every call.

    Built once at server start; ``open_session`` wires a fresh
    ``CallSession`` around them for each connection.
    """

    llm: Any
    registry: ToolRegistry
    provider: CalendlyClient
    resolver: PersonaResolver
    transcriber: Transcriber
    synthesizer: Synthesizer
    booking_guard: BookingGuard = field(default_factory=BookingGuard)
    settings: SessionSettings = field(default_factory=SessionSettings)

    def open_session(
        self,
        channel: AudioChannel,
        tenant_id: str | None = None,
        *,
        vad: VoiceActivityDetector | None = None,
    ) -> CallSession:
        """Resolve the persona and assemble a session.

        Raises ``PersonaNotFoundError`` when no tenant can be resolved.
        """
        persona = self.resolver.resolve(tenant_id)
        session_id = str(uuid.uuid4())
        context = ToolContext(
            persona=persona,
            provider=self.provider,
            booking_guard=self.booking_guard,
            session_id=session_id,
        )
        reasoner = build_reasoning_graph(
            self.llm,
            self.registry,
            context,
            max_tool_rounds=self.settings.max_tool_rounds,
            llm_timeout=self.settings.llm_timeout,
        )
        return CallSession(
            channel=channel,
            transcriber=self.transcriber,
            synthesizer=self.synthesizer,
            reasoner=reasoner,
            persona=persona,
            vad=vad or VoiceActivityDetector(
                sample_rate=self.settings.sample_rate, frame_ms=self.settings.frame_ms,
            ),
            settings=self.settings,
            session_id=session_id,
        )
