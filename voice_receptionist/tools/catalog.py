"""The static tool catalog every persona filters from."""

from voice_receptionist.config import TOOL_TIMEOUT_SECONDS
from voice_receptionist.tools.practice_info import PRACTICE_INFO_TOOL
from voice_receptionist.tools.registry import ToolRegistry
from voice_receptionist.tools.scheduling import SCHEDULING_TOOLS


def default_registry(*, timeout_seconds: float = TOOL_TIMEOUT_SECONDS) -> ToolRegistry:
    return ToolRegistry((*SCHEDULING_TOOLS, PRACTICE_INFO_TOOL), timeout_seconds=timeout_seconds)
