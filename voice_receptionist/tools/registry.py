"""Tool registry: named, schema-validated capabilities for the reasoning model.

Every tool is a ``ToolDefinition``: a unique name, a description the model
reads when choosing tools, a pydantic model for its arguments and an async
handler.  ``ToolRegistry.invoke`` is the only way the call pipeline runs a
tool and it never raises: unknown tools, disabled tools, invalid arguments,
handler errors and timeouts all come back as ``ToolOutcome(ok=False)`` with a
message that is safe to feed to the model.

Argument policy: unknown fields are **rejected** (``extra="forbid"`` on every
argument model), so a hallucinated parameter becomes a validation error the
model can correct rather than being silently dropped.

Handlers run shielded from cancellation.  Once dispatched, a booking is
allowed to finish even if the call hangs up mid-request.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ValidationError

from voice_receptionist.config import TOOL_TIMEOUT_SECONDS
from voice_receptionist.models import ToolOutcome

if TYPE_CHECKING:
    from voice_receptionist.persona import PersonaBundle
    from voice_receptionist.services.calendly_client import CalendlyClient
    from voice_receptionist.tools.scheduling import BookingGuard

logger = logging.getLogger(__name__)

GENERIC_FAILURE = "Something went wrong on our side. Apologise and offer to try again."
TIMEOUT_FAILURE = (
    "The scheduling system took too long to respond. "
    "Apologise and offer to try again."
)


class ToolError(Exception):
    """Raised by handlers with a message that is safe to show the model."""


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class ToolContext:
    """What a handler may touch during one call."""

    persona: PersonaBundle
    provider: CalendlyClient
    booking_guard: BookingGuard
    session_id: str = "-"
    clock: Callable[[], datetime] = field(default=_utcnow)


ToolHandler = Callable[[ToolContext, Any], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class ToolDefinition:
    """One tool.  Side-effecting tools set ``cancel_on_timeout=False``.

    Such a handler keeps running after the registry gives up waiting, and the
    model is told ``timeout_message`` instead of the generic timeout text.
    """

    name: str
    description: str
    args_model: type[BaseModel]
    handler: ToolHandler
    cancel_on_timeout: bool = True
    timeout_message: str = TIMEOUT_FAILURE

    def spec(self) -> dict[str, Any]:
        """Function-calling schema accepted by ``bind_tools``."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.args_model.model_json_schema(),
            },
        }


def describe_validation_error(exc: ValidationError) -> str:
    """Turn a pydantic error into one sentence per problem, naming fields."""
    missing: list[str] = []
    unexpected: list[str] = []
    invalid: list[str] = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "arguments"
        if err.get("type") == "missing":
            missing.append(loc)
        elif err.get("type") == "extra_forbidden":
            unexpected.append(loc)
        else:
            invalid.append(f"{loc} ({err.get('msg', 'invalid')})")

    parts: list[str] = []
    if missing:
        parts.append(f"Missing required field(s): {', '.join(missing)}.")
    if invalid:
        parts.append(f"Invalid value(s): {'; '.join(invalid)}.")
    if unexpected:
        parts.append(f"Unexpected field(s): {', '.join(unexpected)}.")
    if missing or invalid:
        parts.append("Ask the caller for the missing or corrected details.")
    return " ".join(parts)


class ToolRegistry:
    """Static name → definition map shared (read-only) by all sessions."""

    def __init__(
        self,
        definitions: Iterable[ToolDefinition] = (),
        *,
        timeout_seconds: float = TOOL_TIMEOUT_SECONDS,
    ) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        self._timeout = timeout_seconds
        for definition in definitions:
            self.register(definition)

    def register(self, definition: ToolDefinition) -> None:
        if definition.name in self._tools:
            raise ValueError(f"Tool {definition.name!r} is already registered")
        self._tools[definition.name] = definition

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def tool_specs(self, enabled: Iterable[str]) -> list[dict[str, Any]]:
        """Schemas for the enabled subset, in registration order."""
        enabled = set(enabled)
        unknown = enabled - set(self._tools)
        if unknown:
            logger.warning("Persona enables unknown tool(s): %s", ", ".join(sorted(unknown)))
        return [d.spec() for name, d in self._tools.items() if name in enabled]

    async def invoke(
        self,
        tool_name: str,
        raw_arguments: Any,
        context: ToolContext,
    ) -> ToolOutcome:
        definition = self._tools.get(tool_name)
        if definition is None:
            return ToolOutcome.failure(f"Unknown tool '{tool_name}'.")
        if tool_name not in context.persona.enabled_tools:
            return ToolOutcome.failure(f"Tool '{tool_name}' is not available for this practice.")

        if raw_arguments is None:
            raw_arguments = {}
        if isinstance(raw_arguments, str):
            try:
                raw_arguments = json.loads(raw_arguments or "{}")
            except json.JSONDecodeError:
                return ToolOutcome.failure("Arguments were not valid JSON.")
        if not isinstance(raw_arguments, dict):
            return ToolOutcome.failure("Arguments must be a JSON object.")

        try:
            args = definition.args_model.model_validate(raw_arguments)
        except ValidationError as exc:
            logger.info(
                "[%s] %s rejected arguments: %s", context.session_id, tool_name, exc.errors(),
            )
            return ToolOutcome.failure(describe_validation_error(exc))

        t0 = time.perf_counter()
        task = asyncio.create_task(definition.handler(context, args))
        try:
            payload = await asyncio.wait_for(asyncio.shield(task), timeout=self._timeout)
        except TimeoutError:
            if definition.cancel_on_timeout:
                task.cancel()
            else:
                task.add_done_callback(_log_detached_result(tool_name, context.session_id))
            logger.warning(
                "[%s] %s timed out after %.1fs (%s)", context.session_id, tool_name, self._timeout,
                "cancelled" if definition.cancel_on_timeout else "left running",
            )
            return ToolOutcome.failure(definition.timeout_message)
        except asyncio.CancelledError:
            task.add_done_callback(_log_detached_result(tool_name, context.session_id))
            raise
        except ToolError as exc:
            logger.info("[%s] %s failed: %s", context.session_id, tool_name, exc)
            return ToolOutcome.failure(str(exc))
        except Exception:
            logger.exception("[%s] %s raised unexpectedly", context.session_id, tool_name)
            return ToolOutcome.failure(GENERIC_FAILURE)

        logger.debug(
            "[%s] %s completed in %.0fms",
            context.session_id, tool_name, (time.perf_counter() - t0) * 1000,
        )
        if not isinstance(payload, dict):
            payload = {"result": payload}
        return ToolOutcome.success(payload)


def _log_detached_result(tool_name: str, session_id: str) -> Callable[[asyncio.Task], None]:
    def _done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("[%s] detached %s failed: %s", session_id, tool_name, exc)
        else:
            logger.info("[%s] detached %s completed", session_id, tool_name)

    return _done
