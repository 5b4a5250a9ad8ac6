from coachloop.utils.logging import get_logger, setup_logging
from coachloop.utils.tokens import TokenCounter, get_token_counter

__all__ = ["get_logger", "setup_logging", "TokenCounter", "get_token_counter"]
