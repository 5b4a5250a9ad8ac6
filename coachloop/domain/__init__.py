"""
Domain models for coachloop.
"""

from .events import (
    Action,
    Checkpoint,
    EventPayload,
    EventType,
    Knowledge,
    KnowledgeReason,
    KnowledgeUpdate,
    Observation,
    SequenceRange,
    SessionEvent,
    UserMessage,
)
from .models import (
    ARTIFACT_ID_PREFIX,
    Displayable,
    KnowledgeRef,
    LoopState,
    Session,
    SessionState,
    SessionUsage,
    generate_artifact_id,
)
from .stream import StreamEvent, StreamEventType

__all__ = [
    # Session state
    "ARTIFACT_ID_PREFIX",
    "Displayable",
    "KnowledgeRef",
    "LoopState",
    "Session",
    "SessionState",
    "SessionUsage",
    "generate_artifact_id",
    # Event log
    "Action",
    "Checkpoint",
    "EventPayload",
    "EventType",
    "Knowledge",
    "KnowledgeReason",
    "KnowledgeUpdate",
    "Observation",
    "SequenceRange",
    "SessionEvent",
    "UserMessage",
    # Streaming
    "StreamEvent",
    "StreamEventType",
]
