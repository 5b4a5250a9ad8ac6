"""
Event log records.

Every event in a session's log is a ``SessionEvent`` wrapping one payload
variant. Payloads form a discriminated union on ``type`` so that renderers
can dispatch on the variant and storage can round-trip them losslessly.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    USER_MESSAGE = "user_message"
    KNOWLEDGE = "knowledge"
    KNOWLEDGE_UPDATE = "knowledge_update"
    ACTION = "action"
    OBSERVATION = "observation"
    CHECKPOINT = "checkpoint"


class KnowledgeReason(str, Enum):
    """Why a knowledge event was appended"""

    NOT_IN_CONTEXT = "not_in_context"
    EXPAND_SCOPE = "expand_scope"
    CLIENT_PROVIDED = "client_provided"


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True)


class UserMessage(_Payload):
    type: Literal["user_message"] = "user_message"
    content: str


class _KnowledgePayload(_Payload):
    source: str
    params: dict[str, Any] = Field(default_factory=dict)
    reason: KnowledgeReason = KnowledgeReason.NOT_IN_CONTEXT
    data: Any = None
    # Compact rendering produced by the source's formatter at fetch time
    formatted: str = ""


class Knowledge(_KnowledgePayload):
    type: Literal["knowledge"] = "knowledge"


class KnowledgeUpdate(_KnowledgePayload):
    """Same source appended again with an expanded scope."""

    type: Literal["knowledge_update"] = "knowledge_update"


class Action(_Payload):
    type: Literal["action"] = "action"
    tool: str
    args: dict[str, Any] = Field(default_factory=dict)
    call_id: str


class Observation(_Payload):
    type: Literal["observation"] = "observation"
    tool: str
    call_id: str
    formatted: str
    raw: Any = None
    success: bool = True
    error: str | None = None


class SequenceRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: int
    end: int


class Checkpoint(_Payload):
    type: Literal["checkpoint"] = "checkpoint"
    summarized_range: SequenceRange
    event_summary_lines: list[str] = Field(default_factory=list)
    current_state_snapshot: dict[str, Any] = Field(default_factory=dict)
    # Latest user message of the summarized range, kept verbatim
    open_request: str | None = None


EventPayload = Annotated[
    Union[UserMessage, Knowledge, KnowledgeUpdate, Action, Observation, Checkpoint],
    Field(discriminator="type"),
]


class SessionEvent(BaseModel):
    """Immutable, sequence-numbered record in a session's event log."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    sequence: int = Field(ge=1)
    created_at: datetime = Field(default_factory=datetime.now)
    payload: EventPayload

    @property
    def type(self) -> EventType:
        return EventType(self.payload.type)


__all__ = [
    "EventType",
    "KnowledgeReason",
    "UserMessage",
    "Knowledge",
    "KnowledgeUpdate",
    "Action",
    "Observation",
    "SequenceRange",
    "Checkpoint",
    "EventPayload",
    "SessionEvent",
]
