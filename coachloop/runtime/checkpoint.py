"""
Checkpoint manager.

When the context from the cursor onward grows past a fraction of the
model's context window, the events behind it are compacted into a single
Checkpoint event and the cursor jumps to that event. Nothing is deleted:
the full history stays in storage, only the Context Builder reads less.
"""

from typing import Any

from coachloop.domain import (
    Action,
    Checkpoint,
    EventType,
    Knowledge,
    KnowledgeUpdate,
    Observation,
    SequenceRange,
    Session,
    SessionEvent,
    UserMessage,
)
from coachloop.runtime.context import ContextBuilder
from coachloop.runtime.event_log import EventLog
from coachloop.storage.base import SessionStore
from coachloop.tools.registry import ToolRegistry
from coachloop.utils.logging import get_logger
from coachloop.utils.serialize import dump_json

logger = get_logger(__name__)


def truncate(text: str, limit: int) -> str:
    """Collapse whitespace and cut to ``limit`` characters."""
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: max(limit - 3, 0)] + "..."


class CheckpointManager:
    def __init__(
        self,
        event_log: EventLog,
        store: SessionStore,
        builder: ContextBuilder,
        tools: ToolRegistry | None = None,
        context_window_tokens: int = 128_000,
        threshold: float = 0.8,
        summary_line_chars: int = 120,
    ):
        self.event_log = event_log
        self.store = store
        self.builder = builder
        self.tools = tools or ToolRegistry()
        self.context_window_tokens = context_window_tokens
        self.threshold = threshold
        self.summary_line_chars = summary_line_chars

    @property
    def token_budget(self) -> int:
        return int(self.context_window_tokens * self.threshold)

    async def estimate_tokens(
        self, session: Session, events: list[SessionEvent] | None = None
    ) -> int:
        """Estimated prompt size for the session as it stands."""
        if events is None:
            events = await self.event_log.read(session.id, session.context_start_sequence)
        return self.builder.estimate_tokens(self.builder.build(session, events))

    async def maybe_checkpoint(self, session: Session) -> SessionEvent | None:
        """
        Checkpoint if the estimated context is over budget.

        Returns:
            The appended Checkpoint event, or None when under budget.
        """
        events = await self.event_log.read(session.id, session.context_start_sequence)
        if not events:
            return None

        estimated = await self.estimate_tokens(session, events)
        if estimated <= self.token_budget:
            return None

        if len(events) == 1 and events[0].type == EventType.CHECKPOINT:
            # Nothing left to compact; the stable prefix alone is too large
            logger.warning(
                "context_over_budget_after_checkpoint",
                session_id=session.id,
                estimated_tokens=estimated,
                budget=self.token_budget,
            )
            return None

        return await self.checkpoint(session, events, estimated_tokens=estimated)

    async def checkpoint(
        self,
        session: Session,
        events: list[SessionEvent] | None = None,
        estimated_tokens: int | None = None,
    ) -> SessionEvent:
        """Compact ``events`` (default: everything from the cursor) unconditionally."""
        if events is None:
            events = await self.event_log.read(session.id, session.context_start_sequence)

        summarized = SequenceRange(start=events[0].sequence, end=events[-1].sequence)
        payload = Checkpoint(
            summarized_range=summarized,
            event_summary_lines=[self.summarize_event(e) for e in events],
            current_state_snapshot=await self.snapshot_state(session),
            open_request=_latest_user_message(events),
        )
        (event,) = await self.event_log.append_many(session.id, [payload])

        dropped_knowledge = [ref.source for ref in session.knowledge_in_context]
        session.context_start_sequence = event.sequence
        session.knowledge_in_context = []
        session.touch()
        await self.store.save_session(session)

        logger.info(
            "checkpoint_created",
            session_id=session.id,
            sequence=event.sequence,
            summarized_start=summarized.start,
            summarized_end=summarized.end,
            estimated_tokens=estimated_tokens,
            budget=self.token_budget,
            knowledge_cleared=dropped_knowledge,
        )
        return event

    async def snapshot_state(self, session: Session) -> dict[str, Any]:
        """
        Current state as reported by the state providers, not re-derived
        from event text.
        """
        snapshot: dict[str, Any] = {}

        if session.displayables:
            snapshot["displayables"] = {
                displayable_id: displayable.summary()
                for displayable_id, displayable in sorted(session.displayables.items())
            }

        if session.knowledge_in_context:
            snapshot["knowledge_summarized"] = sorted(
                {ref.source for ref in session.knowledge_in_context}
            )

        for tool in self.tools.state_providers():
            try:
                snapshot[tool.name] = await tool.snapshot(session)
            except Exception as e:
                logger.warning(
                    "state_snapshot_failed",
                    session_id=session.id,
                    tool=tool.name,
                    error=str(e),
                    exc_info=True,
                )
                snapshot[tool.name] = {"error": str(e)}

        return snapshot

    def summarize_event(self, event: SessionEvent) -> str:
        """One terse numbered line per event."""
        limit = self.summary_line_chars
        payload = event.payload

        if isinstance(payload, UserMessage):
            text = f"user: {truncate(payload.content, limit)}"
        elif isinstance(payload, KnowledgeUpdate):
            text = f"knowledge expanded: {payload.source} {dump_json(payload.params)}"
        elif isinstance(payload, Knowledge):
            params = f" {dump_json(payload.params)}" if payload.params else ""
            text = f"knowledge loaded: {payload.source}{params}"
        elif isinstance(payload, Action):
            text = f"action: {payload.tool}({truncate(dump_json(payload.args), limit)})"
        elif isinstance(payload, Observation):
            if payload.success:
                text = f"result {payload.tool}: {truncate(payload.formatted, limit)}"
            else:
                text = f"failed {payload.tool}: {truncate(payload.error or '', limit)}"
        elif isinstance(payload, Checkpoint):
            summarized = payload.summarized_range
            text = (
                f"checkpoint: {len(payload.event_summary_lines)} events "
                f"({summarized.start}-{summarized.end}) summarized earlier"
            )
        else:
            raise TypeError(f"Unhandled event payload: {type(payload).__name__}")

        return f"{event.sequence}. {text}"


def _latest_user_message(events: list[SessionEvent]) -> str | None:
    for event in reversed(events):
        if isinstance(event.payload, UserMessage):
            return event.payload.content
        if isinstance(event.payload, Checkpoint) and event.payload.open_request:
            return event.payload.open_request
    return None


__all__ = ["CheckpointManager", "truncate"]
