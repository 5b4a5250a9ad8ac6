"""
Tool registry, dispatcher and observation formatting.
"""

from .base import ObservationTier, ToolContext, ToolDefinition
from .builtin import builtin_tools, register_builtin_tools
from .dispatcher import DispatchResult, ToolDispatcher
from .formatter import ObservationFormatter
from .registry import ToolRegistry

__all__ = [
    "ObservationTier",
    "ToolContext",
    "ToolDefinition",
    "ToolRegistry",
    "ToolDispatcher",
    "DispatchResult",
    "ObservationFormatter",
    "builtin_tools",
    "register_builtin_tools",
]
