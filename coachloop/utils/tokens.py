"""
Token estimation for context budgeting.
"""

import tiktoken

from coachloop.utils.logging import get_logger

logger = get_logger(__name__)


class TokenCounter:
    """
    Estimates token counts with tiktoken.

    Falls back to ~4 characters per token when the encoding cannot be loaded
    (tiktoken downloads BPE files on first use).
    """

    def __init__(self, encoding_name: str = "cl100k_base"):
        try:
            self.encoding = tiktoken.get_encoding(encoding_name)
        except Exception as e:
            logger.warning("tiktoken_unavailable", encoding=encoding_name, error=str(e))
            self.encoding = None

    def count(self, text: str) -> int:
        if not text:
            return 0
        if self.encoding is None:
            return (len(text) + 3) // 4
        return len(self.encoding.encode(text, disallowed_special=()))

    def count_messages(self, messages: list[dict]) -> int:
        """Count tokens for OpenAI-format messages, 4 tokens overhead each."""
        total = 0
        for msg in messages:
            total += 4
            content = msg.get("content")
            if isinstance(content, str):
                total += self.count(content)
            for tc in msg.get("tool_calls") or []:
                fn = tc.get("function", {})
                total += self.count(fn.get("name", ""))
                total += self.count(fn.get("arguments", ""))
        return total


_default_counter: TokenCounter | None = None


def get_token_counter() -> TokenCounter:
    global _default_counter
    if _default_counter is None:
        _default_counter = TokenCounter()
    return _default_counter


__all__ = ["TokenCounter", "get_token_counter"]
