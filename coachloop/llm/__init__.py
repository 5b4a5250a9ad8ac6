"""
LLM provider layer.
"""

from .base import Model, StreamChunk
from .openai import OpenAIModel

__all__ = ["Model", "StreamChunk", "OpenAIModel"]
