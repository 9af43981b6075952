"""CLI entry point: talk to the receptionist by typing instead of speaking.

Runs the same reasoning graph and tools as a phone call (real Claude and
Calendly), without audio.  Handy for trying out personas and prompts.

Usage:
    uv run python -m voice_receptionist.main                       # default tenant
    uv run python -m voice_receptionist.main --tenant harbor-physio
    uv run python -m voice_receptionist.main --debug               # show API calls
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import uuid

from dotenv import load_dotenv

from voice_receptionist.agent import build_llm, build_reasoning_graph, initial_state, turns_from_update
from voice_receptionist.config import DEFAULT_TENANT_ID, TENANTS_FILE
from voice_receptionist.models import AssistantUtterance, CallerUtterance, ToolInvocation, ToolResult, Turn
from voice_receptionist.persona import PersonaResolver, TenantStore
from voice_receptionist.services.calendly_client import CalendlyClient
from voice_receptionist.tools.catalog import default_registry
from voice_receptionist.tools.registry import ToolContext
from voice_receptionist.tools.scheduling import BookingGuard

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("voice_receptionist").setLevel(logging.DEBUG if debug else logging.INFO)


async def _chat(tenant_id: str | None, show_tools: bool) -> None:
    resolver = PersonaResolver(TenantStore.from_file(TENANTS_FILE), default_tenant_id=DEFAULT_TENANT_ID)
    persona = resolver.resolve(tenant_id)
    provider = CalendlyClient()
    llm = build_llm()
    registry = default_registry()
    guard = BookingGuard()

    def _new_session() -> tuple[object, list[Turn]]:
        session_id = str(uuid.uuid4())
        logger.info("Started new session: %s", session_id)
        context = ToolContext(
            persona=persona, provider=provider, booking_guard=guard, session_id=session_id,
        )
        graph = build_reasoning_graph(llm, registry, context)
        print(f"\n{persona.agent_name}: {persona.greeting}\n")
        return graph, [AssistantUtterance(text=persona.greeting)]

    print("\n" + "=" * 60)
    print(f"  {persona.business_name} - receptionist CLI")
    print("=" * 60)
    print("  Type what the caller says and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new call.")
    print("=" * 60)

    graph, history = _new_session()
    try:
        while True:
            try:
                user_input = (await asyncio.to_thread(input, "Caller: ")).strip()
            except (KeyboardInterrupt, EOFError):
                print("\n\nGoodbye!")
                break

            if not user_input:
                continue
            if user_input.lower() in ("exit", "quit", "q"):
                print("\nGoodbye!")
                break
            if user_input.lower() == "new":
                graph, history = _new_session()
                continue

            history.append(CallerUtterance(text=user_input))
            reply = None
            try:
                async for update in graph.astream(initial_state(history), stream_mode="updates"):
                    for delta in update.values():
                        for turn in turns_from_update(delta):
                            history.append(turn)
                            if isinstance(turn, AssistantUtterance):
                                reply = turn
                            elif show_tools and isinstance(turn, ToolInvocation):
                                print(f"  [tool] {turn.tool_name}({turn.arguments})")
                            elif show_tools and isinstance(turn, ToolResult):
                                print(f"  [tool] {turn.tool_name} -> {'ok' if turn.success else turn.error}")
            except Exception:
                logger.exception("Error processing message")
                print("\n  Something went wrong; type 'new' to start a fresh call.\n")
                continue

            if reply is not None:
                print(f"\n{persona.agent_name}: {reply.text}\n")
    finally:
        await provider.aclose()


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Voice receptionist text CLI")
    parser.add_argument("--tenant", default=None, help="Tenant id from the tenants file")
    parser.add_argument("--tools", action="store_true", help="Print tool calls and results")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)
    asyncio.run(_chat(args.tenant, args.tools))


if __name__ == "__main__":
    main()
