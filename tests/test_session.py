"""Tests for the per-call session orchestrator.

Covers:
  - Discarding empty and low-confidence transcripts
  - STT failures and reasoning failures turning into spoken apologies
  - One reasoning pass at a time, even with utterances queued
  - Barge-in cutting playback short, including speech played while tools run
  - Text sent with tool calls spoken before the final reply
  - Tool timeouts surfacing to the model as failed results
  - Hangup and idempotent teardown
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessage, ToolMessage

from conftest import SILENT, VOICED, FakeChannel, FakeClassifier, FakeSynthesizer, wait_for
from voice_receptionist.agent import FALLBACK_APOLOGY, build_reasoning_graph
from voice_receptionist.config import SessionSettings
from voice_receptionist.models import (
    AssistantUtterance,
    CallerUtterance,
    SessionState,
    ToolInvocation,
    ToolResult,
    Transcript,
)
from voice_receptionist.persona import PersonaNotFoundError, PersonaResolver, TenantStore
from voice_receptionist.session import (
    INTERRUPTED_TOOL_ERROR,
    STT_APOLOGY,
    CallSession,
    SessionFactory,
)
from voice_receptionist.tools.catalog import default_registry
from voice_receptionist.tools.registry import TIMEOUT_FAILURE
from voice_receptionist.voice.vad import UtteranceEnded, VoiceActivityDetector

UTTERANCE = UtteranceEnded(audio=VOICED * 3, duration_ms=60, truncated=False)


# ── Doubles ──────────────────────────────────────────────────────────


class FakeTranscriber:
    """Returns (or raises) queued results; the last one repeats."""

    def __init__(self, *results, delay: float = 0.0) -> None:
        self.results = list(results)
        self.delay = delay
        self.calls = 0

    async def transcribe(self, audio: bytes, sample_rate: int) -> Transcript:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class CountingLLM:
    """Tracks how many model calls are in flight at once."""

    def __init__(self, reply: str = "Sure.") -> None:
        self.reply = reply
        self.active = 0
        self.max_active = 0
        self.calls = 0

    def bind_tools(self, specs):
        return self

    async def ainvoke(self, messages):
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0.02)
            return AIMessage(content=self.reply)
        finally:
            self.active -= 1


class BrokenReasoner:
    """Emits the given updates, then fails."""

    def __init__(self, *updates) -> None:
        self.updates = updates

    async def astream(self, state, config=None, stream_mode=None):
        for update in self.updates:
            yield update
        raise RuntimeError("graph exploded")


def _mock_llm(*responses):
    llm = MagicMock()
    llm.bind_tools.return_value = llm
    llm.ainvoke = AsyncMock(side_effect=list(responses))
    return llm


def _session(persona, reasoner, transcriber, *, channel=None, synthesizer=None, **settings):
    options = {"pace_playback": False, "stt_timeout": 1.0, "min_transcript_confidence": 0.4}
    options.update(settings)
    return CallSession(
        channel=channel or FakeChannel(),
        transcriber=transcriber,
        synthesizer=synthesizer or FakeSynthesizer(),
        reasoner=reasoner,
        persona=persona,
        vad=VoiceActivityDetector(classifier=FakeClassifier(), speech_frames=1, silence_frames=2),
        settings=SessionSettings(**options),
        session_id="test-session",
    )


# ── Transcription outcomes ──────────────────────────────────────────


class TestTranscription:
    @pytest.mark.parametrize("transcript", [
        Transcript(text="", confidence=0.9),
        Transcript(text="   ", confidence=0.9),
        Transcript(text="uh", confidence=0.1),
    ])
    def test_unusable_transcript_is_ignored(self, persona, tool_context, transcript):
        llm = _mock_llm()
        synth = FakeSynthesizer()
        session = _session(
            persona, build_reasoning_graph(llm, default_registry(), tool_context),
            FakeTranscriber(transcript), synthesizer=synth,
        )

        asyncio.run(session.process_utterance(UTTERANCE))

        assert session.history == []
        assert session.state is SessionState.IDLE
        llm.ainvoke.assert_not_awaited()
        assert synth.texts == []

    def test_stt_failure_speaks_apology_without_a_caller_turn(self, persona, tool_context):
        llm = _mock_llm()
        synth = FakeSynthesizer()
        channel = FakeChannel()
        session = _session(
            persona, build_reasoning_graph(llm, default_registry(), tool_context),
            FakeTranscriber(RuntimeError("deepgram down")), synthesizer=synth, channel=channel,
        )

        asyncio.run(session.process_utterance(UTTERANCE))

        assert synth.texts == [STT_APOLOGY]
        assert len(channel.sent) == 3
        assert session.history == []
        assert session.state is SessionState.IDLE
        llm.ainvoke.assert_not_awaited()

    def test_stt_timeout_speaks_apology(self, persona, tool_context):
        synth = FakeSynthesizer()
        session = _session(
            persona, build_reasoning_graph(_mock_llm(), default_registry(), tool_context),
            FakeTranscriber(Transcript(text="hello"), delay=1.0),
            synthesizer=synth, stt_timeout=0.05,
        )
        asyncio.run(session.process_utterance(UTTERANCE))
        assert synth.texts == [STT_APOLOGY]

    def test_usable_transcript_runs_one_turn(self, persona, tool_context):
        llm = _mock_llm(AIMessage(content="We open at eight."))
        synth = FakeSynthesizer()
        session = _session(
            persona, build_reasoning_graph(llm, default_registry(), tool_context),
            FakeTranscriber(Transcript(text=" What are your hours? ", confidence=0.95)),
            synthesizer=synth,
        )

        asyncio.run(session.process_utterance(UTTERANCE))

        assert [type(t) for t in session.history] == [CallerUtterance, AssistantUtterance]
        assert session.history[0].text == "What are your hours?"
        assert synth.texts == ["We open at eight."]
        assert session.state is SessionState.IDLE


# ── Reasoning outcomes ──────────────────────────────────────────────


class TestReasoning:
    def test_tool_timeout_reaches_the_model_as_a_failure(self, persona, tool_context, provider):
        seen_states = []

        async def slow_availability(start, end):
            seen_states.append(session.state)
            await asyncio.sleep(1.0)
            return []

        provider.list_availability = AsyncMock(side_effect=slow_availability)
        llm = _mock_llm(
            AIMessage(content="", tool_calls=[{"name": "getAvailableSlots", "args": {}, "id": "c1"}]),
            AIMessage(content="Sorry, the calendar isn't responding. Can I try again in a moment?"),
        )
        synth = FakeSynthesizer()
        session = _session(
            persona,
            build_reasoning_graph(llm, default_registry(timeout_seconds=0.05), tool_context),
            FakeTranscriber(Transcript(text="Any openings tomorrow?")),
            synthesizer=synth,
        )

        asyncio.run(session.process_utterance(UTTERANCE))

        assert seen_states == [SessionState.TOOL_DISPATCH]
        kinds = [type(t) for t in session.history]
        assert kinds == [CallerUtterance, ToolInvocation, ToolResult, AssistantUtterance]
        result = session.history[2]
        assert not result.success
        assert result.error == TIMEOUT_FAILURE

        fed_back = llm.ainvoke.await_args_list[1].args[0][-1]
        assert isinstance(fed_back, ToolMessage)
        assert fed_back.status == "error"
        assert synth.texts == ["Sorry, the calendar isn't responding. Can I try again in a moment?"]

    def test_reasoning_error_speaks_fallback(self, persona):
        synth = FakeSynthesizer()
        session = _session(
            persona, BrokenReasoner(), FakeTranscriber(Transcript(text="Hello")), synthesizer=synth,
        )

        asyncio.run(session.process_utterance(UTTERANCE))

        assert synth.texts == [FALLBACK_APOLOGY]
        assert session.history[-1].text == FALLBACK_APOLOGY
        assert session.state is SessionState.IDLE

    def test_reasoning_error_closes_dangling_tool_calls(self, persona):
        tool_call = AIMessage(
            content="", tool_calls=[{"name": "getServiceTypes", "args": {}, "id": "c9"}],
        )
        session = _session(
            persona,
            BrokenReasoner({"chatbot": {"messages": [tool_call]}}),
            FakeTranscriber(Transcript(text="What do you offer?")),
        )

        asyncio.run(session.process_utterance(UTTERANCE))

        kinds = [type(t) for t in session.history]
        assert kinds == [CallerUtterance, ToolInvocation, ToolResult, AssistantUtterance]
        assert session.history[2].call_id == "c9"
        assert session.history[2].error == INTERRUPTED_TOOL_ERROR

    def test_text_sent_with_tool_calls_is_spoken_while_tools_run(self, persona, tool_context, provider):
        heard_before_tool = []

        async def availability(start, end):
            await asyncio.sleep(0.02)
            heard_before_tool.extend(synth.texts)
            return []

        provider.list_availability = AsyncMock(side_effect=availability)
        llm = _mock_llm(
            AIMessage(
                content="One moment, let me check that for you.",
                tool_calls=[{"name": "getAvailableSlots", "args": {}, "id": "c1"}],
            ),
            AIMessage(content="Nothing is open this week."),
        )
        synth = FakeSynthesizer()
        session = _session(
            persona, build_reasoning_graph(llm, default_registry(), tool_context),
            FakeTranscriber(Transcript(text="Anything open this week?")), synthesizer=synth,
        )

        asyncio.run(session.process_utterance(UTTERANCE))

        assert heard_before_tool == ["One moment, let me check that for you."]
        assert synth.texts == ["One moment, let me check that for you.", "Nothing is open this week."]
        kinds = [type(t) for t in session.history]
        assert kinds == [
            CallerUtterance, AssistantUtterance, ToolInvocation, ToolResult, AssistantUtterance,
        ]
        assert session.history[1].text == "One moment, let me check that for you."
        # The model sees its own words again on the next call
        replayed = [
            m for m in llm.ainvoke.await_args_list[1].args[0]
            if isinstance(m, AIMessage) and m.tool_calls
        ]
        assert replayed[0].content == "One moment, let me check that for you."
        assert session.state is SessionState.IDLE


# ── Whole-call behaviour ────────────────────────────────────────────


class TestCallFlow:
    def test_greets_then_serves_queued_utterances_one_at_a_time(self, persona, tool_context):
        llm = CountingLLM(reply="Happy to help.")
        synth = FakeSynthesizer()
        channel = FakeChannel()
        session = _session(
            persona, build_reasoning_graph(llm, default_registry(), tool_context),
            FakeTranscriber(Transcript(text="Hello"), delay=0.01),
            synthesizer=synth, channel=channel,
        )

        async def scenario():
            call = asyncio.create_task(session.run())
            await wait_for(lambda: synth.texts == [persona.greeting])
            await wait_for(lambda: session.state is SessionState.IDLE)
            for frame in (VOICED, SILENT, SILENT, VOICED, SILENT, SILENT):
                channel.inbound.put_nowait(frame)
            await wait_for(lambda: len(synth.texts) == 3)
            await wait_for(lambda: session.state is SessionState.IDLE)
            channel.inbound.put_nowait(None)
            await call

        asyncio.run(scenario())

        assert llm.calls == 2
        assert llm.max_active == 1
        assert synth.texts == [persona.greeting, "Happy to help.", "Happy to help."]
        assert isinstance(session.history[0], AssistantUtterance)
        assert session.state is SessionState.ENDED
        assert channel.closed

    def test_barge_in_stops_playback_and_listens(self, persona, tool_context):
        llm = _mock_llm(AIMessage(content="Sure, what day works?"))
        synth = FakeSynthesizer(frames_per_reply=50)
        channel = FakeChannel()
        session = _session(
            persona, build_reasoning_graph(llm, default_registry(), tool_context),
            FakeTranscriber(Transcript(text="I need a cleaning")),
            synthesizer=synth, channel=channel, pace_playback=True,
        )
        observed = {}

        async def scenario():
            call = asyncio.create_task(session.run())
            await wait_for(lambda: len(channel.sent) >= 2)
            channel.inbound.put_nowait(VOICED)
            await wait_for(lambda: channel.cleared == 1)
            observed["state"] = session.state
            observed["greeting_frames"] = len(channel.sent)
            await asyncio.sleep(0.1)
            observed["after_pause"] = len(channel.sent)
            channel.inbound.put_nowait(SILENT)
            channel.inbound.put_nowait(SILENT)
            await wait_for(lambda: len(synth.texts) == 2)
            channel.inbound.put_nowait(None)
            await call

        asyncio.run(scenario())

        assert observed["state"] is SessionState.LISTENING
        assert observed["greeting_frames"] < 50
        # Nothing more is sent once the floor is handed back
        assert observed["after_pause"] <= observed["greeting_frames"] + 1
        # The interrupted greeting stays in history
        assert session.history[0] == AssistantUtterance(
            text=persona.greeting, timestamp=session.history[0].timestamp,
        )
        assert session.history[1].text == "I need a cleaning"

    def test_barge_in_without_playback_is_harmless(self, persona):
        channel = FakeChannel()
        session = _session(persona, BrokenReasoner(), FakeTranscriber(Transcript(text="x")), channel=channel)
        asyncio.run(session.barge_in())
        assert session.state is SessionState.IDLE
        assert channel.cleared == 1

    def test_barge_in_cuts_speech_played_while_tools_run(self, persona, tool_context, provider):
        async def slow_availability(start, end):
            await asyncio.sleep(0.3)
            return []

        provider.list_availability = AsyncMock(side_effect=slow_availability)
        llm = _mock_llm(
            AIMessage(
                content="One moment, let me check that for you.",
                tool_calls=[{"name": "getAvailableSlots", "args": {}, "id": "c1"}],
            ),
            AIMessage(content="Nothing is open this week."),
        )
        synth = FakeSynthesizer(frames_per_reply=50)
        channel = FakeChannel()
        session = _session(
            persona, build_reasoning_graph(llm, default_registry(), tool_context),
            FakeTranscriber(Transcript(text="Anything open this week?")),
            synthesizer=synth, channel=channel, pace_playback=True,
        )
        observed = {}

        async def scenario():
            turn = asyncio.create_task(session.process_utterance(UTTERANCE))
            await wait_for(lambda: len(channel.sent) >= 2)
            await session.on_speech_started()
            observed["state"] = session.state
            observed["filler_frames"] = len(channel.sent)
            await asyncio.sleep(0.1)
            observed["after_pause"] = len(channel.sent)
            await turn

        asyncio.run(scenario())

        assert channel.cleared == 1
        assert observed["state"] is SessionState.TOOL_DISPATCH
        assert observed["filler_frames"] < 50
        assert observed["after_pause"] <= observed["filler_frames"] + 1
        assert synth.texts == ["One moment, let me check that for you.", "Nothing is open this week."]
        assert len(channel.sent) - observed["after_pause"] == 50

    def test_slow_clear_does_not_overwrite_a_newer_state(self, persona):
        class SlowClearChannel(FakeChannel):
            async def clear_playback(self) -> None:
                await asyncio.sleep(0.05)
                await super().clear_playback()

        channel = SlowClearChannel()
        session = _session(persona, BrokenReasoner(), FakeTranscriber(Transcript(text="x")), channel=channel)
        session.state = SessionState.SPEAKING

        async def scenario():
            barge = asyncio.create_task(session.barge_in())
            await wait_for(lambda: session.state is SessionState.LISTENING)
            # The turn task picks up the next utterance while the clear is in flight
            session._set_state(SessionState.TRANSCRIBING)
            await barge

        asyncio.run(scenario())

        assert channel.cleared == 1
        assert session.state is SessionState.TRANSCRIBING

    def test_hangup_ends_the_call(self, persona):
        channel = FakeChannel()
        session = _session(persona, BrokenReasoner(), FakeTranscriber(Transcript(text="x")), channel=channel)
        channel.inbound.put_nowait(None)

        asyncio.run(session.run())

        assert session.state is SessionState.ENDED
        assert channel.closed

    def test_end_is_idempotent_and_final(self, persona):
        channel = FakeChannel()
        session = _session(persona, BrokenReasoner(), FakeTranscriber(Transcript(text="x")), channel=channel)

        async def scenario():
            await session.end()
            await session.end()
            await session.on_speech_started()

        asyncio.run(scenario())

        assert session.state is SessionState.ENDED
        assert channel.closed


# ── Factory ──────────────────────────────────────────────────────────


class TestSessionFactory:
    def _factory(self, store, provider):
        return SessionFactory(
            llm=_mock_llm(),
            registry=default_registry(),
            provider=provider,
            resolver=PersonaResolver(store, default_tenant_id="acme"),
            transcriber=FakeTranscriber(Transcript(text="x")),
            synthesizer=FakeSynthesizer(),
        )

    def test_open_session_resolves_persona(self, tenant_record, provider):
        factory = self._factory(TenantStore([tenant_record]), provider)
        vad = VoiceActivityDetector(classifier=FakeClassifier())

        session = factory.open_session(FakeChannel(), "unknown-tenant", vad=vad)

        assert session.persona.tenant_id == "acme"
        assert session.state is SessionState.IDLE
        assert session.history == []
        factory.llm.bind_tools.assert_called_once()

    def test_open_session_without_persona_raises(self, provider):
        factory = self._factory(TenantStore([]), provider)
        with pytest.raises(PersonaNotFoundError):
            factory.open_session(FakeChannel(), "acme")
