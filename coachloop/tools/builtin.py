"""
Built-in generic tools.

- idle: the agent is done with the user's request (ends the turn)
- message_notify_user: send a message, optionally with displayables attached
- message_ask_user: ask the user something and wait for the reply (ends the turn)
- fetch_data: load a knowledge source on the agent's own initiative
"""

from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from coachloop.tools.base import ObservationTier, ToolContext, ToolDefinition
from coachloop.tools.registry import ToolRegistry

if TYPE_CHECKING:
    from coachloop.knowledge.registry import KnowledgeRegistry

IDLE = "idle"
NOTIFY_USER = "message_notify_user"
ASK_USER = "message_ask_user"
FETCH_DATA = "fetch_data"


class IdleArgs(BaseModel):
    pass


class NotifyUserArgs(BaseModel):
    text: str = Field(description="Message shown to the user")
    attachments: list[str] = Field(
        default_factory=list, description="Displayable IDs to attach (e.g. art_x7k2m9p4)"
    )


class AskUserArgs(NotifyUserArgs):
    options: list[str] = Field(
        default_factory=list, description="Suggested replies the user can pick from"
    )


class FetchDataArgs(BaseModel):
    source: str = Field(description="Knowledge source ID")
    params: dict[str, Any] = Field(default_factory=dict, description="Source parameters")


async def _idle(args: IdleArgs, context: ToolContext) -> dict[str, Any]:
    return {"status": "idle"}


async def _notify_user(args: NotifyUserArgs, context: ToolContext) -> dict[str, Any]:
    found = [i for i in args.attachments if context.get_displayable(i) is not None]
    missing = [i for i in args.attachments if i not in found]
    return {"text": args.text, "attachments": found, "missing_attachments": missing}


async def _ask_user(args: AskUserArgs, context: ToolContext) -> dict[str, Any]:
    result = await _notify_user(args, context)
    result["options"] = args.options
    return result


def _delivery_summary(prefix: str):
    def summarize(result: dict[str, Any]) -> str:
        missing = result.get("missing_attachments") or []
        if missing:
            return f"{prefix}; unknown attachments dropped: {', '.join(missing)}"
        return prefix

    return summarize


def make_fetch_data_tool(knowledge: "KnowledgeRegistry") -> ToolDefinition:
    async def fetch_data(args: FetchDataArgs, context: ToolContext) -> dict[str, Any]:
        params, _, formatted = await knowledge.fetch(args.source, context.user_id, args.params)
        return {"source": args.source, "params": params, "content": formatted}

    return ToolDefinition(
        name=FETCH_DATA,
        description=(
            "Load a knowledge source that is not in context yet. "
            f"Available sources: {', '.join(knowledge.ids()) or 'none'}."
        ),
        args_model=FetchDataArgs,
        execute=fetch_data,
        tier=ObservationTier.FULL,
        status_start="Looking that up",
        status_done="Got it",
    )


def builtin_tools(knowledge: "KnowledgeRegistry | None" = None) -> list[ToolDefinition]:
    tools = [
        ToolDefinition(
            name=IDLE,
            description="Call when the user's request is fully handled and there is nothing left to do.",
            args_model=IdleArgs,
            execute=_idle,
            tier=ObservationTier.CONFIRMATION,
            ends_turn=True,
            records_observation=False,
        ),
        ToolDefinition(
            name=NOTIFY_USER,
            description="Send a message to the user. Attach displayables by ID to show them.",
            args_model=NotifyUserArgs,
            execute=_notify_user,
            tier=ObservationTier.SUMMARY,
            summary=_delivery_summary("delivered"),
            emits_message=True,
        ),
        ToolDefinition(
            name=ASK_USER,
            description="Ask the user a question and wait for the answer. Ends the turn.",
            args_model=AskUserArgs,
            execute=_ask_user,
            tier=ObservationTier.SUMMARY,
            summary=_delivery_summary("question sent, waiting for the user's reply"),
            emits_message=True,
            ends_turn=True,
        ),
    ]
    if knowledge is not None and len(knowledge):
        tools.append(make_fetch_data_tool(knowledge))
    return tools


def register_builtin_tools(
    registry: ToolRegistry, knowledge: "KnowledgeRegistry | None" = None
) -> ToolRegistry:
    for tool in builtin_tools(knowledge):
        registry.register(tool)
    return registry


__all__ = [
    "IDLE",
    "NOTIFY_USER",
    "ASK_USER",
    "FETCH_DATA",
    "builtin_tools",
    "make_fetch_data_tool",
    "register_builtin_tools",
]
