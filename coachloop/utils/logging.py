"""
Structured logging setup.

All modules log through structlog with event-name style messages:

    logger = get_logger(__name__)
    logger.info("tool_dispatched", tool="idle", session_id=session.id)
"""

import logging
import sys
from typing import Any

import structlog

SENSITIVE_KEYS = ("api_key", "password", "secret", "authorization", "access_token", "token")

# Usage counters share the "token" substring but must stay readable.
_TOKEN_COUNT_KEYS = ("tokens", "input_tokens", "output_tokens", "total_tokens", "prompt_tokens",
                     "completion_tokens", "estimated_tokens", "token_budget")

REDACTED = "***REDACTED***"


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    if lowered in _TOKEN_COUNT_KEYS or lowered.endswith("_tokens"):
        return False
    return any(marker in lowered for marker in SENSITIVE_KEYS)


def filter_sensitive_data(logger: Any, method_name: str, event_dict: dict) -> dict:
    """structlog processor that redacts credentials from log entries."""
    for key in list(event_dict.keys()):
        if _is_sensitive(key):
            event_dict[key] = REDACTED
    return event_dict


def setup_logging(level: str = "INFO", fmt: str = "console") -> None:
    """
    Configure stdlib logging and structlog.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        fmt: "json" for machine-readable output, "console" for development
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        filter_sensitive_data,
    ]

    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> Any:
    """Get a structlog logger bound to the given module name."""
    return structlog.get_logger(name)


__all__ = ["get_logger", "setup_logging", "filter_sensitive_data", "REDACTED"]
