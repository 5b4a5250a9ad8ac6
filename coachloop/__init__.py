"""
coachloop - session context management and tool-calling loop for a
conversational coaching agent.

Top-level exports for easy access to core functionality.
"""

# Domain models
from coachloop.domain import (
    Displayable,
    KnowledgeRef,
    LoopState,
    Session,
    SessionEvent,
    SessionState,
    StreamEvent,
    StreamEventType,
)

# Knowledge
from coachloop.knowledge import (
    ContextInitializer,
    KnowledgeRegistry,
    KnowledgeSelector,
    KnowledgeSourceDescriptor,
    ModelKnowledgeSelector,
)

# Providers
from coachloop.llm import Model, OpenAIModel
from coachloop.storage import InMemorySessionStore, MongoSessionStore, SessionStore

# Tools
from coachloop.tools import (
    ObservationTier,
    ToolContext,
    ToolDefinition,
    ToolRegistry,
    register_builtin_tools,
)

# Runtime
from coachloop.runtime import EventLog, TurnResult, TurnRunner, Wire

# Config
from coachloop.config import LoopConfig, settings

__version__ = "0.1.0"

__all__ = [
    # Domain
    "Displayable",
    "KnowledgeRef",
    "LoopState",
    "Session",
    "SessionEvent",
    "SessionState",
    "StreamEvent",
    "StreamEventType",
    # Knowledge
    "ContextInitializer",
    "KnowledgeRegistry",
    "KnowledgeSelector",
    "KnowledgeSourceDescriptor",
    "ModelKnowledgeSelector",
    # Providers
    "Model",
    "OpenAIModel",
    "SessionStore",
    "InMemorySessionStore",
    "MongoSessionStore",
    # Tools
    "ObservationTier",
    "ToolContext",
    "ToolDefinition",
    "ToolRegistry",
    "register_builtin_tools",
    # Runtime
    "EventLog",
    "TurnResult",
    "TurnRunner",
    "Wire",
    # Config
    "LoopConfig",
    "settings",
]
