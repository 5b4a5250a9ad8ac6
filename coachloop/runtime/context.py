"""
Context builder.

Turns a session snapshot into the prompt for one model call. The output is
a pure function of (stable prefix, cursor, events from the cursor on): no
clock, no randomness, JSON always rendered with sorted keys. Identical
inputs serialize byte for byte identically, which is what keeps the prompt
prefix cacheable across turns.
"""

from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from coachloop.domain import (
    Action,
    Checkpoint,
    EventType,
    Knowledge,
    KnowledgeUpdate,
    Observation,
    Session,
    SessionEvent,
    UserMessage,
)
from coachloop.utils.logging import get_logger
from coachloop.utils.serialize import dump_json
from coachloop.utils.tokens import TokenCounter, get_token_counter

if TYPE_CHECKING:
    from coachloop.knowledge.registry import KnowledgeRegistry
    from coachloop.tools.registry import ToolRegistry

logger = get_logger(__name__)


AGENT_RULES = """<rules>
- Every reply must be exactly one tool call. Never answer with plain text.
- Use message_notify_user to talk to the user and message_ask_user when you need their answer.
- Call idle once the user's request is fully handled.
- Knowledge blocks are append-only: when the same source appears more than once, the latest block has the widest scope.
- A checkpoint block summarizes earlier events; trust its current state over older details.
</rules>"""


class AgentContext(BaseModel):
    """Prompt for one model call."""

    system: str
    messages: list[dict] = Field(default_factory=list)

    def to_messages(self) -> list[dict]:
        """OpenAI-format message list with the system prompt first."""
        return [{"role": "system", "content": self.system}, *self.messages]


def build_stable_prefix(
    system_prompt: str,
    tools: "ToolRegistry",
    knowledge: "KnowledgeRegistry",
) -> str:
    """
    Build the per-session prompt prefix. Called once when the session is
    created; the result is stored on the session and never rebuilt.
    """
    sections = [system_prompt.strip()]
    if len(tools):
        sections.append(f"<tools>\n{tools.catalog()}\n</tools>")
    if len(knowledge):
        sections.append(f"<knowledge_sources>\n{knowledge.catalog()}\n</knowledge_sources>")
    sections.append(AGENT_RULES)
    return "\n\n".join(sections)


class ContextBuilder:
    def __init__(self, token_counter: TokenCounter | None = None):
        self.token_counter = token_counter or get_token_counter()

    def build(self, session: Session, events: list[SessionEvent]) -> AgentContext:
        """
        Render the events from the session cursor onward.

        Consecutive user-side content (knowledge, checkpoint, user messages)
        is merged into a single user turn. An action is rendered as an
        assistant tool call when its observation is present, and as plain
        assistant text otherwise (``idle``).
        """
        visible = sorted(
            (e for e in events if e.sequence >= session.context_start_sequence),
            key=lambda e: e.sequence,
        )
        observed = {
            e.payload.call_id for e in visible if e.type == EventType.OBSERVATION
        }
        renderer = _Renderer(observed)
        for event in visible:
            renderer.add(event)

        return AgentContext(system=session.stable_prefix, messages=renderer.finish())

    def estimate_tokens(self, context: AgentContext) -> int:
        return self.token_counter.count_messages(context.to_messages())

    @staticmethod
    def render_text(context: AgentContext) -> str:
        """Flat text rendering of a context, for debugging and logs."""
        lines = [f"[system]\n{context.system}"]
        for message in context.to_messages()[1:]:
            content = message.get("content") or ""
            for call in message.get("tool_calls") or []:
                fn = call["function"]
                content += f"\n-> {fn['name']}({fn['arguments']}) #{call['id']}"
            lines.append(f"[{message['role']}]\n{content}".rstrip())
        return "\n\n".join(lines)


class _Renderer:
    """Accumulates OpenAI messages for one build() call."""

    def __init__(self, observed_call_ids: set[str]):
        self.observed = observed_call_ids
        self.emitted_calls: set[str] = set()
        self.messages: list[dict] = []
        self.user_parts: list[str] = []

    def add(self, event: SessionEvent) -> None:
        payload = event.payload
        handler = {
            EventType.USER_MESSAGE: self._user_message,
            EventType.KNOWLEDGE: self._knowledge,
            EventType.KNOWLEDGE_UPDATE: self._knowledge,
            EventType.ACTION: self._action,
            EventType.OBSERVATION: self._observation,
            EventType.CHECKPOINT: self._checkpoint,
        }[event.type]
        handler(payload)

    def finish(self) -> list[dict]:
        self._flush_user()
        return self.messages

    # --- user side ---

    def _user_message(self, payload: UserMessage) -> None:
        self.user_parts.append(payload.content)

    def _knowledge(self, payload: Knowledge | KnowledgeUpdate) -> None:
        attrs = [f'source="{payload.source}"']
        for key in sorted(payload.params):
            attrs.append(f'{key}="{_attr(payload.params[key])}"')
        attrs.append(f'reason="{payload.reason.value}"')
        self.user_parts.append(
            f"<knowledge {' '.join(attrs)}>\n{payload.formatted}\n</knowledge>"
        )

    def _checkpoint(self, payload: Checkpoint) -> None:
        summarized = payload.summarized_range
        body = [
            "Summary of earlier events:",
            *payload.event_summary_lines,
            "",
            "Current state:",
            dump_json(payload.current_state_snapshot),
        ]
        if payload.open_request:
            body += ["", f"Latest user request: {payload.open_request}"]
        content = "\n".join(body)
        self.user_parts.append(
            f'<checkpoint range="{summarized.start}-{summarized.end}">\n{content}\n</checkpoint>'
        )

    def _flush_user(self) -> None:
        if self.user_parts:
            self.messages.append({"role": "user", "content": "\n\n".join(self.user_parts)})
            self.user_parts = []

    # --- assistant side ---

    def _action(self, payload: Action) -> None:
        self._flush_user()
        arguments = dump_json(payload.args)
        if payload.call_id in self.observed:
            self.emitted_calls.add(payload.call_id)
            self.messages.append(
                {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {
                            "id": payload.call_id,
                            "type": "function",
                            "function": {"name": payload.tool, "arguments": arguments},
                        }
                    ],
                }
            )
        else:
            self.messages.append({"role": "assistant", "content": f"{payload.tool}({arguments})"})

    def _observation(self, payload: Observation) -> None:
        if payload.call_id not in self.emitted_calls:
            # Orphaned result (its action is behind the cursor)
            self.user_parts.append(
                f'<observation tool="{payload.tool}">\n{payload.formatted}\n</observation>'
            )
            return
        self._flush_user()
        self.messages.append(
            {"role": "tool", "tool_call_id": payload.call_id, "content": payload.formatted}
        )


def _attr(value) -> str:
    text = value if isinstance(value, str) else dump_json(value)
    return text.replace('"', "'")


__all__ = ["AgentContext", "ContextBuilder", "build_stable_prefix", "AGENT_RULES"]
