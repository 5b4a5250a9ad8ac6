"""
Configuration for coachloop.

- Global settings from environment variables
- Runtime loop configuration
"""

from coachloop.config.settings import CoachLoopSettings, settings
from coachloop.config.schema import LoopConfig
from coachloop.config.exceptions import (
    ConfigError,
    DuplicateRegistrationError,
)

__all__ = [
    "CoachLoopSettings",
    "settings",
    "LoopConfig",
    "ConfigError",
    "DuplicateRegistrationError",
]
