"""
Core domain models for coachloop.

This module contains the session-owned state:
- Session: one conversation and everything the loop mutates
- KnowledgeRef: a knowledge source already injected since the last checkpoint
- Displayable: a tool-produced object registered under a session-scoped ID
- SessionUsage: token counts reported by model calls
"""

import random
import string
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

ARTIFACT_ID_PREFIX = "art_"
_ARTIFACT_ID_ALPHABET = string.ascii_lowercase + string.digits


# ============================================================================
# Enums
# ============================================================================


class SessionState(str, Enum):
    """Session lifecycle state"""

    ACTIVE = "active"
    IDLE = "idle"
    COMPLETED = "completed"
    ERROR = "error"


class LoopState(str, Enum):
    """Agent loop controller state for one turn"""

    AWAITING_INITIALIZER = "awaiting_initializer"
    AWAITING_MODEL = "awaiting_model"
    AWAITING_TOOL_EXECUTION = "awaiting_tool_execution"

    # Terminal states
    IDLE = "idle"
    ERROR = "error"
    ITERATION_CAP_REACHED = "iteration_cap_reached"


# ============================================================================
# Session-owned values
# ============================================================================


class KnowledgeRef(BaseModel):
    """A knowledge source injected into the current context window."""

    model_config = ConfigDict(frozen=True)

    source: str
    params: dict[str, Any] = Field(default_factory=dict)


class SessionUsage(BaseModel):
    """Token usage accumulated from model responses."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    model_calls: int = 0

    def record(self, usage: dict[str, int] | None) -> None:
        self.model_calls += 1
        if not usage:
            return
        input_tokens = usage.get("input_tokens") or 0
        output_tokens = usage.get("output_tokens") or 0
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.total_tokens += usage.get("total_tokens") or (input_tokens + output_tokens)


class Displayable(BaseModel):
    """
    Tool-produced object registered under a session-scoped ID.

    Displayables are never mutated in place. A patch produces a new
    Displayable with the same ID and an incremented version, which replaces
    the entry in the session map.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    kind: str
    tool: str
    payload: dict[str, Any] = Field(default_factory=dict)
    version: int = 1
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    def patched(self, fields: dict[str, Any]) -> "Displayable":
        """Return a new version with ``fields`` merged into the payload."""
        return self.model_copy(
            update={
                "payload": {**self.payload, **fields},
                "version": self.version + 1,
                "updated_at": datetime.now(),
            }
        )

    def summary(self) -> dict[str, Any]:
        """Compact index entry used in checkpoint state snapshots."""
        entry: dict[str, Any] = {"kind": self.kind, "version": self.version}
        for key in ("title", "name"):
            if key in self.payload:
                entry[key] = self.payload[key]
                break
        return entry


def generate_artifact_id(existing: set[str] | None = None) -> str:
    """Generate a session-scoped displayable ID like ``art_x7k2m9p4``."""
    existing = existing or set()
    while True:
        suffix = "".join(random.choices(_ARTIFACT_ID_ALPHABET, k=8))
        candidate = f"{ARTIFACT_ID_PREFIX}{suffix}"
        if candidate not in existing:
            return candidate


# ============================================================================
# Session
# ============================================================================


class Session(BaseModel):
    """
    One conversation.

    Created on the first user turn and never deleted; inactive sessions are
    archived by moving them to ``SessionState.COMPLETED``. Only the agent
    loop and the checkpoint manager mutate a session, under the per-session
    single-writer lock held by ``TurnRunner``.
    """

    id: str
    user_id: str
    state: SessionState = SessionState.ACTIVE

    # Built once at creation, never changed
    stable_prefix: str = ""

    # Cursor into the event log, advanced by checkpoints
    context_start_sequence: int = Field(default=1, ge=1)

    # Knowledge injected since the last checkpoint, in injection order
    knowledge_in_context: list[KnowledgeRef] = Field(default_factory=list)

    displayables: dict[str, Displayable] = Field(default_factory=dict)

    usage: SessionUsage = Field(default_factory=SessionUsage)
    last_turn_state: LoopState | None = None

    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    def touch(self) -> None:
        self.updated_at = datetime.now()

    def knowledge_for(self, source: str) -> list[KnowledgeRef]:
        """All injections of ``source`` in the current context window."""
        return [ref for ref in self.knowledge_in_context if ref.source == source]

    def register_displayable(
        self, kind: str, tool: str, payload: dict[str, Any]
    ) -> Displayable:
        displayable = Displayable(
            id=generate_artifact_id(set(self.displayables)),
            kind=kind,
            tool=tool,
            payload=payload,
        )
        self.displayables[displayable.id] = displayable
        return displayable

    def resolve_displayables(self, ids: list[str]) -> list[Displayable]:
        """Look up displayables by ID, skipping unknown IDs."""
        return [self.displayables[i] for i in ids if i in self.displayables]


__all__ = [
    "ARTIFACT_ID_PREFIX",
    "SessionState",
    "LoopState",
    "KnowledgeRef",
    "SessionUsage",
    "Displayable",
    "generate_artifact_id",
    "Session",
]
