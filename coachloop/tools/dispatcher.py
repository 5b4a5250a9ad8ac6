"""
Tool dispatcher.

Validates a tool call, executes its collaborator, registers displayables
and formats the observation. Bad arguments and collaborator failures come
back as unsuccessful results so the model can adapt; only a timeout
escapes, because it ends the turn.
"""

import asyncio
import json
import time
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from coachloop.domain import Action, Observation, Session
from coachloop.errors import InvalidArguments, ToolExecutionFailure, ToolTimeout
from coachloop.tools.base import ToolContext, ToolDefinition
from coachloop.tools.formatter import ObservationFormatter
from coachloop.tools.registry import ToolRegistry
from coachloop.utils.logging import get_logger

logger = get_logger(__name__)


class DispatchResult(BaseModel):
    """Outcome of one dispatched tool call."""

    call_id: str
    tool: str
    args: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    formatted: str
    success: bool = True
    error: str | None = None
    displayable_ids: list[str] = Field(default_factory=list)
    ends_turn: bool = False
    records_observation: bool = True
    duration_ms: float = 0.0

    def action(self) -> Action:
        return Action(tool=self.tool, args=self.args, call_id=self.call_id)

    def observation(self) -> Observation:
        return Observation(
            tool=self.tool,
            call_id=self.call_id,
            formatted=self.formatted,
            raw=self.result,
            success=self.success,
            error=self.error,
        )

    def events(self) -> list[Action | Observation]:
        """Payloads to append for this iteration, action first."""
        if self.records_observation:
            return [self.action(), self.observation()]
        return [self.action()]


class ToolDispatcher:
    def __init__(
        self,
        registry: ToolRegistry,
        formatter: ObservationFormatter | None = None,
        timeout: float = 60.0,
    ):
        self.registry = registry
        self.formatter = formatter or ObservationFormatter(registry)
        self.timeout = timeout

    async def dispatch(self, tool_call: dict[str, Any], session: Session) -> DispatchResult:
        """
        Dispatch one OpenAI-format tool call against the session.

        Args:
            tool_call: ``{"id", "type", "function": {"name", "arguments"}}``
            session: Session the call runs in; displayables are registered on it

        Raises:
            ToolTimeout: The collaborator exceeded the timeout
        """
        call_id = tool_call.get("id") or ""
        function = tool_call.get("function") or {}
        name = function.get("name") or "unknown"
        raw_args = function.get("arguments")
        start_time = time.time()

        tool = self.registry.get(name)
        if tool is None:
            return self._failure(
                call_id, name, {}, InvalidArguments(name, "unknown tool"), start_time
            )

        try:
            args_dict = _parse_arguments(raw_args)
        except ValueError as e:
            return self._failure(call_id, name, {}, InvalidArguments(name, str(e)), start_time)

        try:
            args = tool.args_model.model_validate(args_dict)
        except ValidationError as e:
            return self._failure(
                call_id,
                name,
                args_dict,
                InvalidArguments(name, _validation_message(e)),
                start_time,
            )

        context = ToolContext(session)
        try:
            result = await asyncio.wait_for(tool.execute(args, context), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(
                "tool_timeout",
                tool=name,
                session_id=session.id,
                timeout=self.timeout,
            )
            raise ToolTimeout(name, self.timeout) from e
        except Exception as e:
            logger.warning(
                "tool_execution_failed",
                tool=name,
                session_id=session.id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return self._failure(
                call_id, name, args_dict, ToolExecutionFailure(name, str(e)), start_time
            )

        patched_ids = context.staged_ids
        context.commit()
        result, displayable_ids = self._register_displayables(tool, result, session)
        displayable_ids.extend(i for i in patched_ids if i not in displayable_ids)

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            "tool_dispatched",
            tool=name,
            session_id=session.id,
            duration_ms=round(duration_ms, 1),
            displayables=displayable_ids,
        )

        return DispatchResult(
            call_id=call_id,
            tool=name,
            args=args.model_dump(mode="json"),
            result=result,
            formatted=self.formatter.format(name, result),
            displayable_ids=displayable_ids,
            ends_turn=tool.ends_turn,
            records_observation=tool.records_observation,
            duration_ms=duration_ms,
        )

    def _register_displayables(
        self, tool: ToolDefinition, result: Any, session: Session
    ) -> tuple[Any, list[str]]:
        """Register dict results (or lists of them) and tag them with their IDs."""
        if not tool.displayable_kind:
            return result, []

        if isinstance(result, dict):
            displayable = session.register_displayable(tool.displayable_kind, tool.name, result)
            return {"displayable_id": displayable.id, **result}, [displayable.id]

        if isinstance(result, list) and all(isinstance(item, dict) for item in result):
            tagged, ids = [], []
            for item in result:
                displayable = session.register_displayable(tool.displayable_kind, tool.name, item)
                tagged.append({"displayable_id": displayable.id, **item})
                ids.append(displayable.id)
            return tagged, ids

        logger.warning(
            "displayable_result_not_mapping",
            tool=tool.name,
            result_type=type(result).__name__,
        )
        return result, []

    def _failure(
        self,
        call_id: str,
        tool_name: str,
        args: dict[str, Any],
        error: InvalidArguments | ToolExecutionFailure,
        start_time: float,
    ) -> DispatchResult:
        if isinstance(error, InvalidArguments):
            logger.warning("tool_invalid_arguments", tool=tool_name, error=str(error))
        return DispatchResult(
            call_id=call_id,
            tool=tool_name,
            args=args,
            formatted=self.formatter.format_error(tool_name, str(error)),
            success=False,
            error=str(error),
            # A failed call never ends the turn, the model gets to react
            ends_turn=False,
            records_observation=True,
            duration_ms=(time.time() - start_time) * 1000,
        )


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON arguments: {e}") from e
        if not isinstance(parsed, dict):
            raise ValueError("Arguments must be a JSON object")
        return parsed
    raise ValueError(f"Unsupported arguments type: {type(raw).__name__}")


def _validation_message(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ())) or "arguments"
        parts.append(f"{location}: {item.get('msg')}")
    return "; ".join(parts)


__all__ = ["DispatchResult", "ToolDispatcher"]
