"""
Storage providers module.

This module contains session store implementations:
- SessionStore: Abstract session store interface
- InMemorySessionStore: In-memory implementation (for testing)
- MongoSessionStore: MongoDB implementation
"""

from .base import InMemorySessionStore, SessionStore
from .mongo import MongoSessionStore

__all__ = [
    "SessionStore",
    "InMemorySessionStore",
    "MongoSessionStore",
]
