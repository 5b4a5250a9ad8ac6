"""
Chat routes with SSE streaming support.

Wire-based architecture:
- A Wire is created per request
- run_turn() writes StreamEvents to the wire
- The response streams them from wire.read()
"""

import asyncio
import json
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from coachloop.api.deps import get_runner
from coachloop.errors import CoachLoopError, SessionBusy
from coachloop.runtime import TurnMessage, TurnRunner, Wire
from coachloop.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/chat")


# Request/Response Models
class ChatRequest(BaseModel):
    message: str = Field(min_length=1)
    user_id: str
    session_id: str | None = None
    stream: bool = True
    # Client-held state injected as knowledge, e.g. {"current_workout": {...}}
    client_context: dict | None = None


class ChatResponse(BaseModel):
    session_id: str
    state: str
    iterations: int
    messages: list[TurnMessage] = []
    notice: str | None = None


@router.post("")
async def chat(request: ChatRequest, runner: TurnRunner = Depends(get_runner)):
    """Run one user turn."""
    session_id = request.session_id or str(uuid4())

    if runner.config.busy_policy == "reject" and runner.is_busy(session_id):
        raise HTTPException(status_code=409, detail=f"Session {session_id} is busy")

    if request.stream:
        return EventSourceResponse(
            stream_turn_events(runner, request, session_id),
            sep="\n",
            headers={
                "Connection": "close",
                # Prevent proxy buffering
                "X-Accel-Buffering": "no",
            },
        )

    result = await runner.run_turn(
        session_id,
        request.user_id,
        request.message,
        client_context=request.client_context,
    )
    return ChatResponse(
        session_id=session_id,
        state=result.state.value,
        iterations=result.iterations,
        messages=result.messages,
        notice=result.notice,
    )


async def stream_turn_events(runner: TurnRunner, request: ChatRequest, session_id: str):
    """Stream a turn as SSE events using a Wire."""
    wire = Wire()

    async def _run():
        try:
            return await runner.run_turn(
                session_id,
                request.user_id,
                request.message,
                wire=wire,
                client_context=request.client_context,
            )
        finally:
            await wire.close()

    task = asyncio.create_task(_run())

    try:
        async for event in wire.read():
            yield event.to_sse()

        # Surface errors raised before the loop could report them itself
        await task
    except SessionBusy as e:
        yield {"event": "error", "data": json.dumps({"error": str(e), "status": 409})}
    except CoachLoopError as e:
        yield {"event": "error", "data": json.dumps({"error": str(e)})}
    finally:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                logger.info("turn_stream_cancelled", session_id=session_id)


__all__ = ["router", "ChatRequest", "ChatResponse", "stream_turn_events"]
