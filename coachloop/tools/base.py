"""
Tool definitions.

A tool is data, not a subclass: a name, a pydantic args model used as the
parameter schema, an async collaborator ``execute(args, context)`` supplied
by domain code, and how its result is rendered into the event log.
"""

from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ConfigDict, Field

from coachloop.domain import Displayable, Session


class ObservationTier(str, Enum):
    """How much of a tool result the model gets to see."""

    # Fixed short text, the result carries nothing the model needs
    CONFIRMATION = "confirmation"
    # One templated line describing what changed
    SUMMARY = "summary"
    # The complete result, never truncated
    FULL = "full"


class ToolContext:
    """
    What a tool collaborator may see and touch during one execution.

    Displayable patches are staged and only committed to the session when
    the tool finishes successfully.
    """

    def __init__(self, session: Session):
        self._session = session
        self._staged: dict[str, Displayable] = {}

    @property
    def session_id(self) -> str:
        return self._session.id

    @property
    def user_id(self) -> str:
        return self._session.user_id

    def get_displayable(self, displayable_id: str) -> Displayable | None:
        if displayable_id in self._staged:
            return self._staged[displayable_id]
        return self._session.displayables.get(displayable_id)

    def patch_displayable(self, displayable_id: str, fields: dict[str, Any]) -> Displayable:
        """
        Stage a new version of a displayable with ``fields`` merged in.

        Raises:
            KeyError: Unknown displayable ID
        """
        current = self.get_displayable(displayable_id)
        if current is None:
            raise KeyError(f"Unknown displayable: {displayable_id}")
        patched = current.patched(fields)
        self._staged[displayable_id] = patched
        return patched

    @property
    def staged_ids(self) -> list[str]:
        return list(self._staged)

    def commit(self) -> None:
        self._session.displayables.update(self._staged)
        self._staged.clear()


ExecuteFn = Callable[[Any, ToolContext], Awaitable[Any]]
SnapshotFn = Callable[[Session], Awaitable[Any]]
SummaryFn = Callable[[Any], str]


class ToolDefinition(BaseModel):
    """
    Registration entry for one tool.

    Attributes:
        name: Tool name exposed to the model
        description: Description exposed to the model
        args_model: Pydantic model validating the call arguments
        execute: Async collaborator ``execute(args, context) -> result``
        tier: Observation formatter tier
        confirmation: Text used by the CONFIRMATION tier
        summary: ``str.format`` template over the result mapping, or a callable
        displayable_kind: When set, results are registered as displayables
        ends_turn: Calling this tool ends the turn in IDLE
        records_observation: False for tools whose action is the whole record
        emits_message: Successful results are streamed to the client as a message
        status_start: Status text streamed when the tool starts
        status_done: Status text streamed when the tool finishes
        snapshot: Async state provider consulted when checkpointing
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    args_model: type[BaseModel]
    execute: ExecuteFn

    tier: ObservationTier = ObservationTier.FULL
    confirmation: str = "ok"
    summary: str | SummaryFn | None = None

    displayable_kind: str | None = None
    ends_turn: bool = False
    records_observation: bool = True
    emits_message: bool = False

    status_start: str | None = None
    status_done: str | None = None

    snapshot: SnapshotFn | None = Field(default=None, exclude=True)

    def openai_schema(self) -> dict[str, Any]:
        """Function-calling schema (OpenAI format)."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.args_model.model_json_schema(),
            },
        }


__all__ = [
    "ObservationTier",
    "ToolContext",
    "ToolDefinition",
    "ExecuteFn",
    "SnapshotFn",
    "SummaryFn",
]
