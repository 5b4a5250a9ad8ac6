"""
Test doubles: a scripted model, coaching-flavoured knowledge sources and
tools.
"""

import asyncio
import itertools
import json
from typing import Any, Callable

from pydantic import BaseModel, Field

from coachloop.knowledge import (
    KnowledgeProposal,
    KnowledgeRegistry,
    KnowledgeSelection,
    KnowledgeSelector,
    KnowledgeSourceDescriptor,
)
from coachloop.llm.base import Model, StreamChunk
from coachloop.tools import ObservationTier, ToolContext, ToolDefinition, ToolRegistry
from coachloop.tools.builtin import register_builtin_tools
from coachloop.utils.tokens import TokenCounter

_call_ids = itertools.count(1)


# ============================================================================
# Scripted model
# ============================================================================


def tool_call(name: str, args: dict | None = None, call_id: str | None = None) -> dict:
    return {
        "id": call_id or f"call_{next(_call_ids)}",
        "type": "function",
        "function": {"name": name, "arguments": json.dumps(args or {})},
    }


def reply(*calls: dict, content: str | None = None) -> list[StreamChunk]:
    """Stream chunks for one model response carrying ``calls``."""
    chunks = []
    if content:
        chunks.append(StreamChunk(content=content))
    for index, call in enumerate(calls):
        chunks.append(StreamChunk(tool_calls=[{**call, "index": index}]))
    chunks.append(
        StreamChunk(
            usage={"input_tokens": 100, "output_tokens": 10, "total_tokens": 110},
            finish_reason="tool_calls" if calls else "stop",
        )
    )
    return chunks


ScriptStep = list[StreamChunk] | Callable[[list[dict]], list[StreamChunk]]


class ScriptedModel(Model):
    """
    Model that replays scripted responses in order.

    A script step is either a list of chunks or a callable receiving the
    messages and returning chunks. ``fallback`` is used once the script runs
    out; without one the model fails the test.
    """

    script: list[Any] = Field(default_factory=list)
    fallback: Any = None
    calls: list[dict] = Field(default_factory=list)

    async def arun_stream(self, messages, tools=None, response_format=None):
        self.calls.append(
            {"messages": messages, "tools": tools, "response_format": response_format}
        )
        if self.script:
            step = self.script.pop(0)
        elif self.fallback is not None:
            step = self.fallback
        else:
            raise AssertionError("Model called more often than scripted")

        chunks = step(messages) if callable(step) else step
        for chunk in chunks:
            yield chunk


def scripted_model(*steps: ScriptStep, fallback: ScriptStep | None = None) -> ScriptedModel:
    return ScriptedModel(id="test/scripted", name="scripted", script=list(steps), fallback=fallback)


def last_tool_result(messages: list[dict]) -> dict:
    """Parsed content of the most recent tool message."""
    for message in reversed(messages):
        if message["role"] == "tool":
            return json.loads(message["content"])
    raise AssertionError("No tool message in context")


class BlockingModel(Model):
    """Answers ``idle`` once released; records when a call has started."""

    started: asyncio.Event = Field(default_factory=asyncio.Event)
    release: asyncio.Event = Field(default_factory=asyncio.Event)

    async def arun_stream(self, messages, tools=None, response_format=None):
        self.started.set()
        await self.release.wait()
        for chunk in reply(tool_call("idle")):
            yield chunk


def workout_model() -> ScriptedModel:
    """Generate a workout, send it to the user, then go idle."""

    def notify_with_workout(messages):
        workout = last_tool_result(messages)
        return reply(
            tool_call(
                "message_notify_user",
                {"text": "Here's your workout", "attachments": [workout["displayable_id"]]},
            )
        )

    return scripted_model(
        reply(tool_call("generate_workout", {"duration_minutes": 30, "intensity": "light"})),
        notify_with_workout,
        reply(tool_call("idle")),
    )


class CharTokenCounter(TokenCounter):
    """Deterministic 4-chars-per-token counter (no tiktoken download)."""

    def __init__(self):
        self.encoding = None


# ============================================================================
# Knowledge
# ============================================================================


class HistoryParams(BaseModel):
    days: int = Field(default=14, ge=1, le=365)


class StaticSelector(KnowledgeSelector):
    """Selector returning queued proposals, one list per call."""

    def __init__(self, *rounds: list[dict]):
        self.rounds = list(rounds)
        self.calls: list[dict] = []

    async def select(self, registry, existing, user_message):
        self.calls.append({"existing": list(existing), "user_message": user_message})
        proposals = self.rounds.pop(0) if self.rounds else []
        return KnowledgeSelection(proposals=[KnowledgeProposal(**p) for p in proposals])


class FailingSelector(KnowledgeSelector):
    async def select(self, registry, existing, user_message):
        raise RuntimeError("selector model unavailable")


WORKOUT_SOURCES = [
    {"source": "goals"},
    {"source": "preferences"},
    {"source": "history", "params": {"days": 14}},
    {"source": "equipment"},
]


def make_knowledge_registry(fetch_log: list | None = None, history_size: int = 3) -> KnowledgeRegistry:
    log = fetch_log if fetch_log is not None else []

    def fetcher(source_id: str, data: Any):
        async def fetch(user_id: str, params: dict) -> Any:
            log.append((source_id, user_id, params))
            return data(params) if callable(data) else data

        return fetch

    def history(params: dict) -> list[dict]:
        return [
            {"day": i, "workout": f"easy run {i}", "notes": "felt good " * history_size}
            for i in range(min(params["days"], 5))
        ]

    return KnowledgeRegistry(
        [
            KnowledgeSourceDescriptor(
                id="goals",
                description="User's fitness goals",
                fetch=fetcher("goals", {"primary": "endurance", "weekly_sessions": 3}),
                display_name="Checking your goals",
            ),
            KnowledgeSourceDescriptor(
                id="preferences",
                description="Training preferences",
                fetch=fetcher("preferences", {"likes": ["running"], "avoid": ["burpees"]}),
                formatter=lambda d: f"likes: {', '.join(d['likes'])}; avoid: {', '.join(d['avoid'])}",
            ),
            KnowledgeSourceDescriptor(
                id="history",
                description="Recent workout history",
                fetch=fetcher("history", history),
                params_model=HistoryParams,
                scope_param="days",
                display_name="Loading workout history",
            ),
            KnowledgeSourceDescriptor(
                id="equipment",
                description="Available equipment",
                fetch=fetcher("equipment", ["dumbbells", "mat"]),
            ),
        ]
    )


# ============================================================================
# Tools
# ============================================================================


class GenerateWorkoutArgs(BaseModel):
    duration_minutes: int = Field(ge=5, le=180)
    intensity: str = "moderate"


class UpdateWorkoutArgs(BaseModel):
    workout_id: str
    intensity: str


async def generate_workout(args: GenerateWorkoutArgs, context: ToolContext) -> dict:
    return {
        "title": f"{args.duration_minutes}-minute {args.intensity} workout",
        "duration_minutes": args.duration_minutes,
        "intensity": args.intensity,
        "exercises": [{"name": "march in place", "minutes": args.duration_minutes}],
    }


async def update_workout(args: UpdateWorkoutArgs, context: ToolContext) -> dict:
    patched = context.patch_displayable(args.workout_id, {"intensity": args.intensity})
    return {"workout_id": patched.id, "intensity": args.intensity, "version": patched.version}


def make_tool_registry(knowledge: KnowledgeRegistry | None = None) -> ToolRegistry:
    registry = ToolRegistry(
        [
            ToolDefinition(
                name="generate_workout",
                description="Generate a workout",
                args_model=GenerateWorkoutArgs,
                execute=generate_workout,
                tier=ObservationTier.FULL,
                displayable_kind="workout",
                status_start="Building your workout",
                status_done="Workout ready",
            ),
            ToolDefinition(
                name="update_workout",
                description="Change the intensity of a workout",
                args_model=UpdateWorkoutArgs,
                execute=update_workout,
                tier=ObservationTier.SUMMARY,
                summary="{workout_id} intensity set to {intensity} (v{version})",
            ),
        ]
    )
    return register_builtin_tools(registry, knowledge)

