"""
API dependency injection.

The TurnRunner lives on ``app.state`` and is built once at startup, either
handed to ``create_app`` by domain code or assembled from settings.
"""

from fastapi import HTTPException, Request

from coachloop.config import CoachLoopSettings, LoopConfig, settings
from coachloop.knowledge import KnowledgeRegistry, ModelKnowledgeSelector
from coachloop.llm import OpenAIModel
from coachloop.runtime import TurnRunner
from coachloop.storage import InMemorySessionStore, MongoSessionStore, SessionStore
from coachloop.tools import ToolRegistry, register_builtin_tools
from coachloop.utils.logging import get_logger

logger = get_logger(__name__)


def create_session_store(source: CoachLoopSettings | None = None) -> SessionStore:
    """Mongo when a URI is configured, in-memory otherwise."""
    s = source or settings
    if s.mongo_uri:
        return MongoSessionStore(uri=s.mongo_uri, db_name=s.mongo_db_name)
    logger.warning("using_in_memory_session_store")
    return InMemorySessionStore()


def create_runner_from_settings(
    source: CoachLoopSettings | None = None,
    tools: ToolRegistry | None = None,
    knowledge: KnowledgeRegistry | None = None,
) -> TurnRunner:
    """
    Assemble a TurnRunner from settings.

    Domain tools and knowledge sources are passed in by the caller; the
    built-in tools are always registered.
    """
    s = source or settings
    knowledge = knowledge or KnowledgeRegistry()
    tools = register_builtin_tools(tools or ToolRegistry(), knowledge)

    agent_model = OpenAIModel(
        id=f"openai/{s.agent_model}",
        name=s.agent_model,
        api_key=s.openai_api_key,
        base_url=s.openai_base_url,
    )
    initializer_model = OpenAIModel(
        id=f"openai/{s.initializer_model}",
        name=s.initializer_model,
        api_key=s.openai_api_key,
        base_url=s.openai_base_url,
        temperature=s.initializer_temperature,
    )

    return TurnRunner(
        store=create_session_store(s),
        model=agent_model,
        tools=tools,
        knowledge=knowledge,
        selector=ModelKnowledgeSelector(initializer_model),
        config=LoopConfig.from_settings(s),
    )


def get_runner(request: Request) -> TurnRunner:
    runner = getattr(request.app.state, "runner", None)
    if runner is None:
        raise HTTPException(status_code=503, detail="Turn runner not initialized")
    return runner


__all__ = ["create_session_store", "create_runner_from_settings", "get_runner"]
