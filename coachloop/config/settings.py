"""
Global settings from environment variables.
"""

from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class CoachLoopSettings(BaseSettings):
    """
    Global configuration loaded from environment variables.

    Environment variables should be prefixed with COACHLOOP_
    Example: COACHLOOP_LOG_LEVEL=DEBUG, COACHLOOP_MONGO_URI=mongodb://localhost:27017
    """

    model_config = SettingsConfigDict(
        env_prefix="COACHLOOP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        protected_namespaces=(),
    )

    # Core settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "console"] = "console"

    # Storage settings
    mongo_uri: str | None = None
    mongo_db_name: str = "coachloop"

    # OpenAI
    openai_api_key: SecretStr | None = None
    openai_base_url: str | None = None

    # Models
    agent_model: str = "gpt-4o"
    initializer_model: str = "gpt-4o-mini"
    initializer_temperature: float = Field(default=0.1, ge=0.0, le=2.0)

    # Context budget
    context_window_tokens: int = Field(default=128_000, ge=1)
    checkpoint_threshold: float = Field(default=0.8, gt=0.0, le=1.0)

    # Loop
    max_iterations: int = Field(default=10, ge=1)
    model_timeout: float = Field(default=90.0, gt=0.0)
    tool_timeout: float = Field(default=60.0, gt=0.0)
    append_max_attempts: int = Field(default=5, ge=1)
    busy_policy: Literal["reject", "queue"] = "reject"

    # Sessions idle longer than this are archived
    session_inactivity_hours: float = Field(default=24.0, gt=0.0)


# Global settings instance (singleton)
settings = CoachLoopSettings()


__all__ = ["CoachLoopSettings", "settings"]
