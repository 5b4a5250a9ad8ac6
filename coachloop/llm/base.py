"""
Model abstraction layer - Pure LLM Interface

Responsibilities:
- Encapsulate provider APIs
- Provide unified streaming interface
- Standardize output format

Does NOT handle:
- Tool loop logic
- Event log writes
- Session state
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator

from pydantic import BaseModel, ConfigDict, Field


class StreamChunk(BaseModel):
    """
    Minimal unit of LLM streaming output.

    All Model implementations must standardize their vendor-specific
    streaming output to this format.
    """

    model_config = ConfigDict(frozen=False)

    content: str | None = Field(default=None, description="Text content delta")
    tool_calls: list[dict] | None = Field(
        default=None, description="Tool calls delta (OpenAI format)"
    )
    usage: dict[str, int] | None = Field(
        default=None,
        description="Token usage stats {input_tokens, output_tokens, total_tokens}",
    )
    finish_reason: str | None = Field(
        default=None, description="Finish reason: stop, tool_calls, length, etc."
    )


class Model(BaseModel, ABC):
    """
    Unified Model abstract base class.

    Implementations override arun_stream().
    """

    id: str = Field(description="Model identifier, format: provider/model-name")
    name: str = Field(description="Model name")

    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, ge=1)
    top_p: float | None = Field(default=None, ge=0.0, le=1.0)

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="allow")

    @abstractmethod
    async def arun_stream(
        self,
        messages: list[dict],
        tools: list[dict] | None = None,
        response_format: dict | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Unified streaming interface.

        Args:
            messages: Message list, standard OpenAI format
            tools: Tool definition list, OpenAI format
            response_format: Structured output contract, OpenAI format

        Yields:
            StreamChunk: Streaming output chunk
        """
        pass


__all__ = ["Model", "StreamChunk"]
