"""
Session inspection routes.
"""

from datetime import timedelta

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from coachloop.api.deps import get_runner
from coachloop.config import settings
from coachloop.domain import Session, SessionEvent
from coachloop.runtime import TurnRunner

router = APIRouter(prefix="/sessions")


class SessionStateResponse(BaseModel):
    session: Session
    recent_actions: list[SessionEvent]


class ArchiveResponse(BaseModel):
    archived: list[str]


@router.get("/{session_id}", response_model=SessionStateResponse)
async def get_session(
    session_id: str,
    user_id: str | None = None,
    recent_actions: int = Query(default=10, ge=0, le=100),
    runner: TurnRunner = Depends(get_runner),
):
    """Session state plus its most recent actions."""
    session, actions = await runner.get_session_state(session_id, user_id, recent_actions)
    return SessionStateResponse(session=session, recent_actions=actions)


@router.get("/{session_id}/events", response_model=list[SessionEvent])
async def get_session_events(
    session_id: str,
    user_id: str | None = None,
    from_sequence: int = Query(default=1, ge=1),
    runner: TurnRunner = Depends(get_runner),
):
    """Full event log from ``from_sequence`` on, checkpointed events included."""
    await runner.get_session_state(session_id, user_id, recent_actions=0)
    return await runner.event_log.read(session_id, from_sequence)


@router.post("/archive", response_model=ArchiveResponse)
async def archive_sessions(
    inactive_hours: float | None = Query(default=None, gt=0),
    runner: TurnRunner = Depends(get_runner),
):
    """Complete sessions idle for ``inactive_hours``, by default the configured inactivity window."""
    hours = inactive_hours if inactive_hours is not None else settings.session_inactivity_hours
    archived = await runner.archive_inactive_sessions(timedelta(hours=hours))
    return ArchiveResponse(archived=archived)
