from . import chat, sessions

__all__ = ["chat", "sessions"]
