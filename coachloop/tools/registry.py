"""
Tool registry: a data-driven dispatch table keyed by tool name.
"""

from coachloop.config.exceptions import DuplicateRegistrationError
from coachloop.tools.base import ToolDefinition
from coachloop.utils.logging import get_logger

logger = get_logger(__name__)


class ToolRegistry:
    """Tools available to the agent, in registration order."""

    def __init__(self, tools: list[ToolDefinition] | None = None):
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: ToolDefinition) -> None:
        if tool.name in self._tools:
            raise DuplicateRegistrationError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool
        logger.debug("tool_registered", tool=tool.name, tier=tool.tier.value)

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def openai_schemas(self) -> list[dict]:
        return [tool.openai_schema() for tool in self._tools.values()]

    def catalog(self) -> str:
        """One line per tool, for the stable prompt prefix."""
        return "\n".join(f"- {tool.name}: {tool.description}" for tool in self._tools.values())

    def state_providers(self) -> list[ToolDefinition]:
        """Tools that can report current state for checkpoint snapshots."""
        return [tool for tool in self._tools.values() if tool.snapshot is not None]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


__all__ = ["ToolRegistry"]
