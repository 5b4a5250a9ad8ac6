"""
Agent loop controller.

Per-turn state machine:

    AWAITING_INITIALIZER -> AWAITING_MODEL -> AWAITING_TOOL_EXECUTION
        -> AWAITING_MODEL ... -> IDLE | ERROR | ITERATION_CAP_REACHED

Each iteration asks the model for exactly one tool call, dispatches it and
appends the action and its observation as one batch. Recoverable tool
problems become observations; anything else ends the turn in ERROR with the
event log left intact.
"""

import asyncio
import json
import re
from uuid import uuid4

from pydantic import BaseModel, Field

from coachloop.config.schema import LoopConfig
from coachloop.domain import (
    EventType,
    LoopState,
    Session,
    SessionState,
    StreamEvent,
    StreamEventType,
    UserMessage,
)
from coachloop.errors import ModelProtocolViolation, ModelTimeout, TurnFailure
from coachloop.knowledge.initializer import ContextInitializer
from coachloop.llm.base import Model
from coachloop.runtime.checkpoint import CheckpointManager
from coachloop.runtime.context import ContextBuilder
from coachloop.runtime.event_log import EventLog
from coachloop.runtime.wire import Wire
from coachloop.storage.base import SessionStore
from coachloop.tools.dispatcher import DispatchResult, ToolDispatcher
from coachloop.tools.registry import ToolRegistry
from coachloop.utils.logging import get_logger

logger = get_logger(__name__)

INCOMPLETE_MESSAGE = "Incomplete: max steps reached."
GENERIC_ERROR_MESSAGE = "Something went wrong, please try again."

PROTOCOL_CORRECTION = (
    "Your previous reply contained {count} tool calls. "
    "Reply with exactly one tool call from the available tools."
)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


# ============================================================================
# Results
# ============================================================================


class TurnMessage(BaseModel):
    """A message delivered to the user during the turn."""

    content: str
    attachments: list[dict] = Field(default_factory=list)


class TurnResult(BaseModel):
    session_id: str
    state: LoopState
    iterations: int = 0
    messages: list[TurnMessage] = Field(default_factory=list)
    # User-facing text for ERROR / ITERATION_CAP_REACHED
    notice: str | None = None
    error_type: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0


class ModelResponse(BaseModel):
    content: str = ""
    tool_calls: list[dict] = Field(default_factory=list)
    usage: dict[str, int] | None = None


# ============================================================================
# Streaming helpers
# ============================================================================


class ToolCallAccumulator:
    """
    Accumulate streaming tool calls.

    OpenAI returns tool calls incrementally, need to accumulate before execution.
    """

    def __init__(self):
        self._calls: dict[int, dict] = {}

    def accumulate(self, delta_calls: list[dict]):
        for tc in delta_calls:
            idx = tc.get("index", 0)

            if idx not in self._calls:
                self._calls[idx] = {
                    "id": None,
                    "type": "function",
                    "function": {"name": "", "arguments": ""},
                }

            acc = self._calls[idx]

            if tc.get("id"):
                acc["id"] = tc["id"]

            if tc.get("type"):
                acc["type"] = tc["type"]

            if tc.get("function"):
                fn = tc["function"]
                if fn.get("name"):
                    acc["function"]["name"] += fn["name"]
                if fn.get("arguments"):
                    acc["function"]["arguments"] += fn["arguments"]

    def finalize(self) -> list[dict]:
        """Complete tool calls in index order; calls without an ID get one."""
        calls = []
        for idx in sorted(self._calls):
            call = self._calls[idx]
            if not call["function"]["name"]:
                continue
            if call["id"] is None:
                call["id"] = _new_call_id()
            calls.append(call)
        return calls

    def clear(self):
        self._calls.clear()


def _new_call_id() -> str:
    return f"call_{uuid4().hex[:24]}"


def parse_tool_call_from_content(content: str) -> dict | None:
    """
    Accept a content-only reply of the form ``{"tool": ..., "arguments": {...}}``
    as a tool call. Returns None for anything else.
    """
    text = _CODE_FENCE.sub("", content.strip())
    if not text.startswith("{"):
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or not isinstance(data.get("tool"), str):
        return None
    arguments = data.get("arguments") or {}
    if not isinstance(arguments, dict):
        return None
    return {
        "id": _new_call_id(),
        "type": "function",
        "function": {"name": data["tool"], "arguments": json.dumps(arguments)},
    }


# ============================================================================
# Loop
# ============================================================================


class AgentLoop:
    def __init__(
        self,
        model: Model,
        tools: ToolRegistry,
        dispatcher: ToolDispatcher,
        initializer: ContextInitializer,
        checkpoints: CheckpointManager,
        builder: ContextBuilder,
        event_log: EventLog,
        store: SessionStore,
        config: LoopConfig | None = None,
    ):
        self.model = model
        self.tools = tools
        self.dispatcher = dispatcher
        self.initializer = initializer
        self.checkpoints = checkpoints
        self.builder = builder
        self.event_log = event_log
        self.store = store
        self.config = config or LoopConfig()

    async def run(
        self,
        session: Session,
        user_message: str,
        wire: Wire | None = None,
        client_context: dict | None = None,
    ) -> TurnResult:
        """
        Drive one user turn to a terminal state.

        Never raises for turn failures: they are reported through the
        returned TurnResult (state ERROR) and the session stays usable.
        """
        result = TurnResult(session_id=session.id, state=LoopState.AWAITING_INITIALIZER)
        usage_before = session.usage.model_copy()
        session.state = SessionState.ACTIVE

        logger.info(
            "turn_started",
            session_id=session.id,
            user_id=session.user_id,
            context_start_sequence=session.context_start_sequence,
        )

        try:
            await self._initialize(session, user_message, wire, client_context)
            result.state = LoopState.AWAITING_MODEL

            while True:
                if result.iterations >= self.config.max_iterations:
                    result.state = LoopState.ITERATION_CAP_REACHED
                    result.notice = INCOMPLETE_MESSAGE
                    logger.warning(
                        "iteration_cap_reached",
                        session_id=session.id,
                        max_iterations=self.config.max_iterations,
                    )
                    break

                await self.checkpoints.maybe_checkpoint(session)
                tool_call = await self._next_tool_call(session)
                tool_call = await self._claim_call_id(session, tool_call)

                result.state = LoopState.AWAITING_TOOL_EXECUTION
                result.iterations += 1
                dispatched = await self._execute(session, tool_call, wire, result)

                if dispatched.ends_turn:
                    result.state = LoopState.IDLE
                    break
                result.state = LoopState.AWAITING_MODEL

        except TurnFailure as e:
            result.state = LoopState.ERROR
            result.notice = GENERIC_ERROR_MESSAGE
            result.error_type = type(e).__name__
            logger.error(
                "turn_failed",
                session_id=session.id,
                error=str(e),
                error_type=type(e).__name__,
                iterations=result.iterations,
            )
        except Exception as e:
            result.state = LoopState.ERROR
            result.notice = GENERIC_ERROR_MESSAGE
            result.error_type = type(e).__name__
            logger.error(
                "turn_crashed",
                session_id=session.id,
                error=str(e),
                error_type=type(e).__name__,
                iterations=result.iterations,
                exc_info=True,
            )

        session.state = SessionState.ERROR if result.state == LoopState.ERROR else SessionState.IDLE
        session.last_turn_state = result.state
        session.touch()
        await self.store.save_session(session)

        result.input_tokens = session.usage.input_tokens - usage_before.input_tokens
        result.output_tokens = session.usage.output_tokens - usage_before.output_tokens

        await self._emit(
            wire,
            session,
            StreamEventType.DONE,
            state=result.state.value,
            content=result.notice,
            data={"iterations": result.iterations},
        )
        logger.info(
            "turn_finished",
            session_id=session.id,
            state=result.state.value,
            iterations=result.iterations,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
        )
        return result

    # --- AWAITING_INITIALIZER ---

    async def _initialize(
        self,
        session: Session,
        user_message: str,
        wire: Wire | None,
        client_context: dict | None,
    ) -> None:
        if client_context:
            await self.initializer.inject_client_context(session, client_context)

        decision = await self.initializer.decide(session.knowledge_in_context, user_message)
        for request in decision.append:
            source = self.initializer.registry.get(request.source)
            status = source.display_name if source and source.display_name else None
            await self._emit(
                wire,
                session,
                StreamEventType.THINKING,
                content=status or f"Loading {request.source.replace('_', ' ')}",
            )
        await self.initializer.apply(session, decision)

        # Knowledge first, then the message that triggered it
        await self.event_log.append(session.id, UserMessage(content=user_message))
        await self.store.save_session(session)

    # --- AWAITING_MODEL ---

    async def _next_tool_call(self, session: Session) -> dict:
        events = await self.event_log.read(session.id, session.context_start_sequence)
        messages = self.builder.build(session, events).to_messages()
        attempts = self.config.protocol_retries + 1

        for attempt in range(1, attempts + 1):
            response = await self._call_model(session, messages)
            if len(response.tool_calls) == 1:
                return response.tool_calls[0]

            count = len(response.tool_calls)
            logger.warning(
                "model_protocol_violation",
                session_id=session.id,
                tool_calls=count,
                attempt=attempt,
            )
            if attempt == attempts:
                raise ModelProtocolViolation(count)

            # Corrective note for the retry only, never persisted
            messages = list(messages)
            if response.content:
                messages.append({"role": "assistant", "content": response.content})
            messages.append({"role": "user", "content": PROTOCOL_CORRECTION.format(count=count)})

        raise ModelProtocolViolation(0)

    async def _call_model(self, session: Session, messages: list[dict]) -> ModelResponse:
        try:
            response = await asyncio.wait_for(
                self._collect(messages), timeout=self.config.model_timeout
            )
        except asyncio.TimeoutError as e:
            raise ModelTimeout(self.config.model_timeout) from e

        session.usage.record(response.usage)

        if not response.tool_calls and response.content:
            fallback = parse_tool_call_from_content(response.content)
            if fallback is not None:
                logger.info(
                    "tool_call_parsed_from_content",
                    session_id=session.id,
                    tool=fallback["function"]["name"],
                )
                response.tool_calls = [fallback]
        return response

    async def _collect(self, messages: list[dict]) -> ModelResponse:
        accumulator = ToolCallAccumulator()
        content_parts: list[str] = []
        usage = None

        async for chunk in self.model.arun_stream(messages, tools=self.tools.openai_schemas()):
            if chunk.content:
                content_parts.append(chunk.content)
            if chunk.tool_calls:
                accumulator.accumulate(chunk.tool_calls)
            if chunk.usage:
                usage = chunk.usage

        return ModelResponse(
            content="".join(content_parts),
            tool_calls=accumulator.finalize(),
            usage=usage,
        )

    async def _claim_call_id(self, session: Session, tool_call: dict) -> dict:
        """
        Give the call an ID no earlier action in the session uses. Some
        providers number calls per reply (``call_0``), which would pair an
        observation with the wrong action.
        """
        call_id = tool_call.get("id") or _new_call_id()
        actions = await self.store.get_events(session.id, event_type=EventType.ACTION)
        used = {event.payload.call_id for event in actions}

        unique, n = call_id, 1
        while unique in used:
            n += 1
            unique = f"{call_id}_{n}"
        if unique != call_id:
            logger.debug("tool_call_id_reassigned", session_id=session.id, call_id=call_id, new_id=unique)
        return {**tool_call, "id": unique}

    # --- AWAITING_TOOL_EXECUTION ---

    async def _execute(
        self,
        session: Session,
        tool_call: dict,
        wire: Wire | None,
        result: TurnResult,
    ) -> DispatchResult:
        name = (tool_call.get("function") or {}).get("name") or "unknown"
        tool = self.tools.get(name)

        await self._emit(
            wire,
            session,
            StreamEventType.TOOL_START,
            tool=name,
            call_id=tool_call.get("id"),
            content=tool.status_start if tool else None,
        )

        displayables_before = dict(session.displayables)
        try:
            dispatched = await self.dispatcher.dispatch(tool_call, session)
            await self.event_log.append_many(session.id, dispatched.events())
        except BaseException as e:
            # Neither event was written, so no displayable may survive either
            session.displayables = displayables_before
            if isinstance(e, Exception):
                await self._emit(
                    wire,
                    session,
                    StreamEventType.TOOL_END,
                    tool=name,
                    call_id=tool_call.get("id"),
                    success=False,
                )
            raise
        await self.store.save_session(session)

        await self._emit(
            wire,
            session,
            StreamEventType.TOOL_END,
            tool=name,
            call_id=dispatched.call_id,
            success=dispatched.success,
            content=tool.status_done if tool and dispatched.success else None,
        )

        if dispatched.success and tool is not None and tool.emits_message:
            message = self._resolve_message(session, dispatched)
            result.messages.append(message)
            await self._emit(
                wire,
                session,
                StreamEventType.MESSAGE,
                content=message.content,
                attachments=message.attachments,
            )

        return dispatched

    def _resolve_message(self, session: Session, dispatched: DispatchResult) -> TurnMessage:
        raw = dispatched.result if isinstance(dispatched.result, dict) else {}
        attachments = session.resolve_displayables(raw.get("attachments") or [])
        return TurnMessage(
            content=raw.get("text") or "",
            attachments=[d.model_dump(mode="json") for d in attachments],
        )

    async def _emit(
        self,
        wire: Wire | None,
        session: Session,
        event_type: StreamEventType,
        **fields,
    ) -> None:
        if wire is None:
            return
        await wire.write(StreamEvent(type=event_type, session_id=session.id, **fields))


__all__ = [
    "AgentLoop",
    "TurnResult",
    "TurnMessage",
    "ModelResponse",
    "ToolCallAccumulator",
    "parse_tool_call_from_content",
    "INCOMPLETE_MESSAGE",
    "GENERIC_ERROR_MESSAGE",
]
