"""
Runtime configuration schema.
"""

from typing import Literal

from pydantic import BaseModel, Field

from coachloop.config.settings import CoachLoopSettings, settings


class LoopConfig(BaseModel):
    """
    Runtime configuration for one TurnRunner and everything it drives.
    """

    # Loop configuration
    max_iterations: int = Field(default=10, ge=1, le=100, description="Maximum tool iterations per turn")
    model_timeout: float = Field(default=90.0, gt=0.0, description="Timeout per model call (seconds)")
    tool_timeout: float = Field(default=60.0, gt=0.0, description="Timeout per tool execution (seconds)")
    protocol_retries: int = Field(
        default=1, ge=0, le=3, description="Re-prompts allowed when the model breaks the one-call rule"
    )

    # Context configuration
    context_window_tokens: int = Field(default=128_000, ge=1, description="Model context limit")
    checkpoint_threshold: float = Field(
        default=0.8, gt=0.0, le=1.0, description="Fraction of the context limit that triggers a checkpoint"
    )
    summary_line_chars: int = Field(default=120, ge=20, description="Max characters per checkpoint line")

    # Event log
    append_max_attempts: int = Field(default=5, ge=1, description="Sequence collision retries")

    # Concurrency
    busy_policy: Literal["reject", "queue"] = Field(
        default="reject", description="What to do with a turn for a session that is mid-turn"
    )

    @classmethod
    def from_settings(cls, source: CoachLoopSettings | None = None) -> "LoopConfig":
        s = source or settings
        return cls(
            max_iterations=s.max_iterations,
            model_timeout=s.model_timeout,
            tool_timeout=s.tool_timeout,
            context_window_tokens=s.context_window_tokens,
            checkpoint_threshold=s.checkpoint_threshold,
            append_max_attempts=s.append_max_attempts,
            busy_policy=s.busy_policy,
        )


__all__ = ["LoopConfig"]
