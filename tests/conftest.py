"""
Shared fixtures: in-memory store, coaching knowledge sources and tools, and
a runner factory.
"""

import pytest

from coachloop.config import LoopConfig
from coachloop.knowledge import KnowledgeSelector
from coachloop.llm.base import Model
from coachloop.runtime import TurnRunner
from coachloop.storage import InMemorySessionStore

from support import CharTokenCounter, StaticSelector, make_knowledge_registry, make_tool_registry


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def fetch_log():
    return []


@pytest.fixture
def knowledge(fetch_log):
    return make_knowledge_registry(fetch_log)


@pytest.fixture
def tools(knowledge):
    return make_tool_registry(knowledge)


@pytest.fixture
def make_runner(store, knowledge, tools):
    """Factory: make_runner(model, selector=None, **config_overrides)."""

    def _make(model: Model, selector: KnowledgeSelector | None = None, **overrides) -> TurnRunner:
        return TurnRunner(
            store=store,
            model=model,
            tools=tools,
            knowledge=knowledge,
            selector=selector or StaticSelector(),
            config=LoopConfig(**overrides),
            token_counter=CharTokenCounter(),
        )

    return _make
