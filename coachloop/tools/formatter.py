"""
Observation formatter.

Renders a tool result into the text the model reads back, using the tier
the tool was registered with. A FULL tool must never be shortened: the
model needs the whole result to continue correctly.
"""

from typing import Any, Mapping

from coachloop.tools.base import ObservationTier
from coachloop.tools.registry import ToolRegistry
from coachloop.utils.logging import get_logger
from coachloop.utils.serialize import dump_json

logger = get_logger(__name__)


class ObservationFormatter:
    def __init__(self, registry: ToolRegistry):
        self.registry = registry

    def format(self, tool_name: str, result: Any) -> str:
        tool = self.registry.get(tool_name)
        if tool is None:
            return self._full(result)

        if tool.tier == ObservationTier.CONFIRMATION:
            return tool.confirmation

        if tool.tier == ObservationTier.SUMMARY:
            rendered = self._summary(tool_name, tool.summary, result)
            if rendered is not None:
                return rendered
            # A summary we cannot render must not hide the result
            return self._full(result)

        return self._full(result)

    def format_error(self, tool_name: str, error: str) -> str:
        return f"error: {error}"

    def _summary(self, tool_name: str, summary, result: Any) -> str | None:
        if summary is None:
            return None
        try:
            if callable(summary):
                return summary(result)
            if isinstance(result, Mapping):
                return summary.format(**result)
            return summary.format(result=result)
        except (KeyError, IndexError, AttributeError, TypeError, ValueError) as e:
            logger.warning(
                "observation_summary_failed",
                tool=tool_name,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

    def _full(self, result: Any) -> str:
        if isinstance(result, str):
            return result
        return dump_json(result)


__all__ = ["ObservationFormatter"]
