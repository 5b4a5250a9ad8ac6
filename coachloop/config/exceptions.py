"""Configuration system exceptions."""


class ConfigError(Exception):
    """Base exception for configuration errors."""

    pass


class DuplicateRegistrationError(ConfigError):
    """A tool or knowledge source was registered twice under the same name."""

    pass
