"""
Event protocol for streaming a turn to clients via SSE.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class StreamEventType(str, Enum):
    THINKING = "thinking"
    MESSAGE = "message"
    TOOL_START = "tool_start"
    TOOL_END = "tool_end"
    DONE = "done"


class StreamEvent(BaseModel):
    """
    Typed message emitted while a turn progresses.

    ``message`` events carry resolved displayables in ``attachments``; the
    client only renders them.
    """

    type: StreamEventType
    session_id: str
    timestamp: datetime = Field(default_factory=datetime.now)

    # THINKING status text, MESSAGE body
    content: str | None = None
    attachments: list[dict[str, Any]] | None = None

    # TOOL_START / TOOL_END
    tool: str | None = None
    call_id: str | None = None
    success: bool | None = None

    # DONE
    state: str | None = None
    data: dict[str, Any] | None = None

    def to_sse(self) -> dict[str, str]:
        """Convert to an sse-starlette event dict, dropping empty fields."""
        payload = self.model_dump(mode="json", exclude_none=True)
        event_type = payload.pop("type")
        return {"event": event_type, "data": json.dumps(payload, ensure_ascii=False)}


__all__ = ["StreamEventType", "StreamEvent"]
