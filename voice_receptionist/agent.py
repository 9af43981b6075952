"""LangGraph reasoning loop for one call.

Architecture:
  A small StateGraph with three nodes, compiled once per call so that the
  persona's instructions, the enabled tool schemas and the tool context are
  captured in closures:

    1. **chatbot**    - one Claude call over the full history
    2. **tools**      - runs every tool call the model just asked for,
                        strictly in order, through the registry
    3. **exhausted**  - answers still-pending tool calls with failures and
                        speaks an apology once the round limit is hit

  Routing:
    chatbot → (no tool calls?)            → END
            → (tool calls, rounds left?)  → tools → chatbot (loop)
            → (tool calls, limit hit?)    → exhausted → END

  Memory:
    There is no checkpointer.  The session's turn history is the single
    source of truth and is converted to messages on every caller turn with
    ``history_to_messages``; graph updates are converted back into turns with
    ``turns_from_update``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Sequence
from typing import Annotated, Any

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import (
    AIMessage,
    AnyMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages
from typing_extensions import TypedDict

from voice_receptionist.config import (
    ANTHROPIC_API_KEY,
    LLM_TIMEOUT_SECONDS,
    MAX_TOOL_ROUNDS,
    MODEL_NAME,
)
from voice_receptionist.models import (
    AssistantUtterance,
    CallerUtterance,
    ToolInvocation,
    ToolOutcome,
    ToolResult,
    Turn,
)
from voice_receptionist.services.metrics import metrics
from voice_receptionist.tools.registry import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

FALLBACK_APOLOGY = "Sorry, I'm having a little trouble on my end. Let me try that again. Could you repeat that?"
TOOL_LIMIT_APOLOGY = (
    "I'm sorry, I'm having trouble getting that done right now. "
    "Could we try that a different way?"
)
TOOL_LIMIT_ERROR = "Tool call limit reached for this turn."
# Anthropic requires the conversation to open with a user message
CALL_CONNECTED_MARKER = "[call connected]"


# ── State schema ─────────────────────────────────────────────────────


class ReasoningState(TypedDict):
    """State for one caller turn.

    ``tool_rounds`` counts completed tool rounds since the caller last
    spoke; ``fallback`` is set when a canned apology replaced a model reply.
    """

    messages: Annotated[list[AnyMessage], add_messages]
    tool_rounds: int
    fallback: bool


# ── LLM builder ─────────────────────────────────────────────────────


def build_llm() -> ChatAnthropic:
    """Build the shared Claude client.  Tools are bound per call."""
    return ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.1,  # Low temperature for consistent, factual responses
        max_tokens=300,   # Replies are spoken; keep them short
    )


def message_text(message: BaseMessage) -> str:
    """Plain text of a message whose content may be a list of blocks."""
    content = message.content
    if isinstance(content, str):
        return content.strip()
    parts: list[str] = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return " ".join(p.strip() for p in parts if p.strip())


# ── History conversion ──────────────────────────────────────────────


def history_to_messages(history: Sequence[Turn]) -> list[BaseMessage]:
    """Convert a session's turns to the message list the model sees.

    Consecutive tool invocations collapse into one assistant message with
    several tool calls, which is how the model emitted them.  Text spoken
    just before those calls becomes that message's content.
    """
    messages: list[BaseMessage] = []
    pending_calls: list[dict[str, Any]] = []
    preamble = ""

    def _flush() -> None:
        nonlocal preamble
        if pending_calls:
            messages.append(AIMessage(content=preamble, tool_calls=list(pending_calls)))
            pending_calls.clear()
            preamble = ""

    for i, turn in enumerate(history):
        if isinstance(turn, ToolInvocation):
            pending_calls.append({
                "name": turn.tool_name,
                "args": dict(turn.arguments),
                "id": turn.call_id,
                "type": "tool_call",
            })
            continue
        _flush()
        if isinstance(turn, CallerUtterance):
            messages.append(HumanMessage(content=turn.text))
        elif isinstance(turn, AssistantUtterance):
            if i + 1 < len(history) and isinstance(history[i + 1], ToolInvocation):
                preamble = turn.text
            else:
                messages.append(AIMessage(content=turn.text))
        elif isinstance(turn, ToolResult):
            outcome = ToolOutcome(ok=turn.success, payload=turn.payload, error=turn.error)
            messages.append(ToolMessage(
                content=outcome.to_model_text(),
                tool_call_id=turn.call_id,
                name=turn.tool_name,
                status="success" if turn.success else "error",
            ))
    _flush()

    if messages and not isinstance(messages[0], HumanMessage):
        messages.insert(0, HumanMessage(content=CALL_CONNECTED_MARKER))
    return messages


def _outcome_from_content(content: Any) -> ToolOutcome:
    try:
        data = json.loads(content) if isinstance(content, str) else {}
    except json.JSONDecodeError:
        data = {}
    if data.get("ok") is True:
        return ToolOutcome.success({k: v for k, v in data.items() if k != "ok"})
    return ToolOutcome.failure(str(data.get("error") or content))


def turns_from_update(update: dict[str, Any] | None) -> list[Turn]:
    """Turns to append for one ``stream_mode="updates"`` node update."""
    turns: list[Turn] = []
    for msg in (update or {}).get("messages", []):
        if isinstance(msg, ToolMessage):
            outcome = msg.artifact if isinstance(msg.artifact, ToolOutcome) else (
                _outcome_from_content(msg.content)
            )
            turns.append(ToolResult(
                call_id=msg.tool_call_id,
                tool_name=msg.name or "",
                success=outcome.ok,
                payload=outcome.payload,
                error=outcome.error,
            ))
        elif isinstance(msg, AIMessage):
            if msg.tool_calls:
                # Text alongside tool calls is spoken while the tools run
                text = message_text(msg)
                if text:
                    turns.append(AssistantUtterance(text=text))
                turns.extend(
                    ToolInvocation(call_id=c["id"], tool_name=c["name"], arguments=dict(c["args"]))
                    for c in msg.tool_calls
                )
            else:
                turns.append(AssistantUtterance(text=message_text(msg)))
    return turns


# ── Nodes ────────────────────────────────────────────────────────────


def _make_chatbot_node(llm_with_tools: Any, instructions: str, timeout: float, session_id: str):
    """One model call per entry; any failure becomes a spoken apology."""

    async def chatbot_node(state: ReasoningState) -> dict:
        system = SystemMessage(content=instructions)
        t0 = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                llm_with_tools.ainvoke([system] + state["messages"]), timeout=timeout,
            )
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "anthropic", "llm_invoke", error_type=type(exc).__name__, latency_ms=elapsed,
            )
            logger.warning("[%s] model call failed: %s: %s", session_id, type(exc).__name__, exc)
            return {"messages": [AIMessage(content=FALLBACK_APOLOGY)], "fallback": True}

        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("anthropic", "llm_invoke", latency_ms=elapsed)
        logger.debug("[%s] chatbot responded in %.0fms", session_id, elapsed)

        if not response.tool_calls and not message_text(response):
            logger.warning("[%s] model returned an empty reply", session_id)
            return {"messages": [AIMessage(content=FALLBACK_APOLOGY)], "fallback": True}
        return {"messages": [response]}

    return chatbot_node


def _make_tools_node(registry: ToolRegistry, context: ToolContext):
    """Run the requested calls one after another, in the order given."""

    async def tools_node(state: ReasoningState) -> dict:
        calls = state["messages"][-1].tool_calls
        results: list[ToolMessage] = []
        for call in calls:
            outcome = await registry.invoke(call["name"], call.get("args"), context)
            logger.info(
                "[%s] tool %s → %s", context.session_id, call["name"], "ok" if outcome.ok else "failed",
            )
            results.append(ToolMessage(
                content=outcome.to_model_text(),
                tool_call_id=call["id"],
                name=call["name"],
                status="success" if outcome.ok else "error",
                artifact=outcome,
            ))
        return {"messages": results, "tool_rounds": state.get("tool_rounds", 0) + 1}

    return tools_node


def _make_exhausted_node(session_id: str):
    async def exhausted_node(state: ReasoningState) -> dict:
        calls = state["messages"][-1].tool_calls
        logger.warning(
            "[%s] tool round limit reached; dropping %d pending call(s)", session_id, len(calls),
        )
        failure = ToolOutcome.failure(TOOL_LIMIT_ERROR)
        dropped = [
            ToolMessage(
                content=failure.to_model_text(),
                tool_call_id=call["id"],
                name=call["name"],
                status="error",
                artifact=failure,
            )
            for call in calls
        ]
        return {"messages": [*dropped, AIMessage(content=TOOL_LIMIT_APOLOGY)], "fallback": True}

    return exhausted_node


# ── Graph assembly ───────────────────────────────────────────────────


def build_reasoning_graph(
    llm: Any,
    registry: ToolRegistry,
    context: ToolContext,
    *,
    max_tool_rounds: int = MAX_TOOL_ROUNDS,
    llm_timeout: float = LLM_TIMEOUT_SECONDS,
):
    """Compile the reasoning graph for one call.

    Invoke (or stream) it with a fresh state per caller turn::

        graph.astream(
            {"messages": history_to_messages(history), "tool_rounds": 0, "fallback": False},
            stream_mode="updates",
        )
    """
    persona = context.persona
    tool_specs = registry.tool_specs(persona.enabled_tools)
    llm_with_tools = llm.bind_tools(tool_specs) if tool_specs else llm

    def route_after_model(state: ReasoningState) -> str:
        last_message = state["messages"][-1]
        if not getattr(last_message, "tool_calls", None):
            return END
        if state.get("tool_rounds", 0) >= max_tool_rounds:
            return "exhausted"
        return "tools"

    graph = StateGraph(ReasoningState)
    graph.add_node(
        "chatbot",
        _make_chatbot_node(llm_with_tools, persona.instructions, llm_timeout, context.session_id),
    )
    graph.add_node("tools", _make_tools_node(registry, context))
    graph.add_node("exhausted", _make_exhausted_node(context.session_id))

    graph.set_entry_point("chatbot")
    graph.add_conditional_edges(
        "chatbot", route_after_model, {"tools": "tools", "exhausted": "exhausted", END: END},
    )
    graph.add_edge("tools", "chatbot")
    graph.add_edge("exhausted", END)

    compiled = graph.compile()
    logger.debug(
        "[%s] reasoning graph compiled for %s with %d tool(s)",
        context.session_id, persona.tenant_id, len(tool_specs),
    )
    return compiled


def initial_state(history: Sequence[Turn]) -> ReasoningState:
    return {"messages": history_to_messages(history), "tool_rounds": 0, "fallback": False}
