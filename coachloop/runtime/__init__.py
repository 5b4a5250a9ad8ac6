"""
Runtime module - event log, context management and the agent loop.
"""

from .checkpoint import CheckpointManager
from .context import AgentContext, ContextBuilder, build_stable_prefix
from .event_log import EventLog
from .loop import AgentLoop, ToolCallAccumulator, TurnMessage, TurnResult
from .runner import TurnRunner
from .wire import Wire

__all__ = [
    "EventLog",
    "Wire",
    "AgentContext",
    "ContextBuilder",
    "build_stable_prefix",
    "CheckpointManager",
    "AgentLoop",
    "ToolCallAccumulator",
    "TurnMessage",
    "TurnResult",
    "TurnRunner",
]
