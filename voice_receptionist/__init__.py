"""Voice Receptionist: answers phone calls and books appointments.

Architecture Overview
=====================

Each call is a ``CallSession`` (``session.py``), a small state machine that
owns the audio loop:

1. **Listen**: inbound PCM16 frames go through a webrtcvad-based detector
   that segments the caller's speech into utterances.
2. **Transcribe**: each finished utterance is posted to Deepgram.
3. **Reason**: a LangGraph graph (``agent.py``) calls Claude with the
   persona's instructions and the full turn history.  The model may call
   tools, which run through the ``ToolRegistry`` against Calendly, for at
   most ``MAX_TOOL_ROUNDS`` rounds per caller turn.
4. **Speak**: the reply is streamed from ElevenLabs and paced out frame by
   frame, so a caller who starts talking interrupts it within one frame
   (barge-in).

Routing: Idle → Listening → Transcribing → Reasoning ⇄ ToolDispatch → Speaking → Idle

Key Design Decisions
--------------------
- **Single flight**: one task per call runs turns from a queue, so the model
  is never called twice at once for the same call.
- **Nothing raises into the conversation**: tool errors, model errors and
  speech errors all become short spoken apologies; raw provider text is
  only logged.
- **Multi-tenant**: a tenant id picks the persona (business facts, agent
  name, greeting, enabled tools) from ``tenants.json``.
- **Resilience**: the Calendly client retries timeouts and 5xx responses with
  exponential backoff; bookings are deduplicated for a short window.

Package Structure
-----------------
- ``voice_receptionist/session.py`` - per-call orchestrator
- ``voice_receptionist/agent.py`` - LangGraph reasoning loop
- ``voice_receptionist/persona.py`` - tenant store and persona resolver
- ``voice_receptionist/prompts.py`` - system prompt and greeting templates
- ``voice_receptionist/config.py`` - configuration from env / SSM
- ``voice_receptionist/server.py`` - FastAPI application
- ``voice_receptionist/main.py`` - text CLI
- ``voice_receptionist/services/`` - Calendly, Deepgram, ElevenLabs, metrics, cache
- ``voice_receptionist/tools/`` - tool registry and tools
- ``voice_receptionist/voice/`` - audio framing, VAD, adapter protocols
- ``voice_receptionist/api/`` - routes, schemas and the WebSocket channel
"""
