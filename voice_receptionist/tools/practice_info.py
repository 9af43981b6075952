"""Practice information lookup (hours, location, services and so on).

Answers come from the persona's static info map, so this tool never touches
the network.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from voice_receptionist.tools.registry import ToolContext, ToolDefinition

# Words callers (and the model) use for the same thing
_ALIASES = {
    "address": "location",
    "directions": "location",
    "where": "location",
    "opening hours": "hours",
    "open": "hours",
    "schedule": "hours",
    "phone": "contact",
    "email": "contact",
    "treatments": "services",
    "cost": "fees",
    "price": "fees",
    "cancellation": "fees",
    "no-show": "fees",
    "parking": "details",
}


class PracticeInfoArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category: str = Field(
        default="all",
        description=(
            "What the caller asked about: hours, location, services, contact, "
            "insurance, fees, details, or all."
        ),
    )


async def get_practice_info(ctx: ToolContext, args: PracticeInfoArgs) -> dict[str, Any]:
    info = ctx.persona.practice_info
    category = args.category.strip().lower()
    category = _ALIASES.get(category, category)
    if category in info:
        return {"category": category, "information": info[category]}
    return {"category": "all", "information": dict(info)}


PRACTICE_INFO_TOOL = ToolDefinition(
    name="getPracticeInfo",
    description=(
        "Look up facts about the practice. Unknown categories return everything on file."
    ),
    args_model=PracticeInfoArgs,
    handler=get_practice_info,
)
