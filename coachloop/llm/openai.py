"""
OpenAI Model implementation - Pure LLM Interface
"""

import os
from typing import AsyncIterator

from openai import (
    APIConnectionError,
    APITimeoutError,
    AsyncOpenAI,
    InternalServerError,
    RateLimitError,
)
from pydantic import ConfigDict, Field, SecretStr

from coachloop.llm.base import Model, StreamChunk
from coachloop.utils.logging import get_logger
from coachloop.utils.retry import retry_async

logger = get_logger(__name__)

# Retryable exceptions for OpenAI
OPENAI_RETRYABLE = (
    APIConnectionError,
    RateLimitError,
    InternalServerError,
    APITimeoutError,
)


def normalize_usage(usage) -> dict[str, int]:
    """Convert an OpenAI usage object to {input_tokens, output_tokens, total_tokens}."""
    normalized = {
        "input_tokens": usage.prompt_tokens or 0,
        "output_tokens": usage.completion_tokens or 0,
        "total_tokens": usage.total_tokens or 0,
    }
    details = getattr(usage, "prompt_tokens_details", None)
    cached = getattr(details, "cached_tokens", None) if details else None
    if cached:
        normalized["cached_tokens"] = cached
    return normalized


class OpenAIModel(Model):
    """
    OpenAI Model implementation.

    Works with GPT-4o, GPT-4o-mini and any OpenAI API compatible endpoint.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, protected_namespaces=())

    model_name: str | None = Field(
        default=None,
        description="Actual model name for API calls (e.g., gpt-4o-mini)",
    )
    api_key: SecretStr | None = Field(default=None, exclude=True)
    base_url: str | None = Field(default=None)
    client: AsyncOpenAI | None = Field(default=None, exclude=True)

    frequency_penalty: float = Field(default=0.0, ge=-2.0, le=2.0)
    presence_penalty: float = Field(default=0.0, ge=-2.0, le=2.0)

    def model_post_init(self, __context) -> None:
        """Initialize AsyncOpenAI client after model creation."""
        from coachloop.config import settings

        # Resolve API Key: argument > config > env
        resolved_api_key = None
        if self.api_key:
            resolved_api_key = self.api_key.get_secret_value()
        elif settings.openai_api_key:
            resolved_api_key = settings.openai_api_key.get_secret_value()
        else:
            resolved_api_key = os.getenv("OPENAI_API_KEY")

        resolved_base_url = (
            self.base_url or settings.openai_base_url or os.getenv("OPENAI_BASE_URL")
        )

        if self.client is None:
            self.client = AsyncOpenAI(
                api_key=resolved_api_key,
                base_url=resolved_base_url,
            )

    @retry_async(exceptions=OPENAI_RETRYABLE)
    async def _create_stream(self, params: dict):
        try:
            return await self.client.chat.completions.create(**params)
        except Exception as e:
            logger.error(
                "llm_request_failed",
                model=params["model"],
                error=str(e),
                error_type=type(e).__name__,
                messages_count=len(params["messages"]),
                tools_count=len(params.get("tools") or []),
                exc_info=True,
            )
            raise

    async def arun_stream(
        self,
        messages: list[dict],
        tools: list[dict] | None = None,
        response_format: dict | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Call OpenAI API and return standardized streaming output.

        Args:
            messages: OpenAI format message list
            tools: OpenAI format tool definitions
            response_format: Structured output contract

        Yields:
            StreamChunk: Standardized streaming output chunk
        """
        actual_model = self.model_name or self.name
        params = {
            "model": actual_model,
            "messages": messages,
            "temperature": self.temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if self.top_p is not None:
            params["top_p"] = self.top_p
        if self.frequency_penalty:
            params["frequency_penalty"] = self.frequency_penalty
        if self.presence_penalty:
            params["presence_penalty"] = self.presence_penalty
        if self.max_tokens:
            params["max_tokens"] = self.max_tokens
        if tools:
            params["tools"] = tools
            # One tool call per agent iteration
            params["parallel_tool_calls"] = False
        if response_format:
            params["response_format"] = response_format

        logger.info(
            "llm_request",
            model=actual_model,
            messages_count=len(messages),
            tools_count=len(tools) if tools else 0,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )

        stream = await self._create_stream(params)

        async for chunk in stream:
            stream_chunk = StreamChunk()

            if chunk.usage:
                stream_chunk.usage = normalize_usage(chunk.usage)

            if chunk.choices:
                choice = chunk.choices[0]
                delta = choice.delta

                if delta.content:
                    stream_chunk.content = delta.content

                if delta.tool_calls:
                    stream_chunk.tool_calls = [
                        tc.model_dump(exclude_none=True) for tc in delta.tool_calls
                    ]

                if choice.finish_reason:
                    stream_chunk.finish_reason = choice.finish_reason

            if (
                stream_chunk.content is not None
                or stream_chunk.tool_calls is not None
                or stream_chunk.usage is not None
                or stream_chunk.finish_reason is not None
            ):
                yield stream_chunk


__all__ = ["OpenAIModel", "OPENAI_RETRYABLE", "normalize_usage"]
