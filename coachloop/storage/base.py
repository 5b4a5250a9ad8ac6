"""
Session store interface and in-memory implementation.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from coachloop.domain import EventType, Session, SessionEvent, SessionState
from coachloop.errors import SequenceCollision


class SessionStore(ABC):
    """
    Session store interface.

    Sessions are keyed by ID; events are keyed by ``(session_id, sequence)``.
    Stores never allocate sequences themselves: they reject a duplicate key
    with ``SequenceCollision`` and leave retrying to the event log.
    """

    # --- Session Operations ---

    @abstractmethod
    async def save_session(self, session: Session) -> None:
        """Insert or replace a session"""
        pass

    @abstractmethod
    async def get_session(self, session_id: str) -> Session | None:
        """Get a session by ID"""
        pass

    @abstractmethod
    async def list_sessions(
        self,
        user_id: str | None = None,
        state: SessionState | None = None,
        updated_before: datetime | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Session]:
        """List sessions, most recently updated first"""
        pass

    # --- Event Operations ---

    @abstractmethod
    async def insert_events(self, events: list[SessionEvent]) -> None:
        """
        Insert a batch of events for one session, all or nothing.

        Raises:
            SequenceCollision: If any (session_id, sequence) already exists.
                Nothing from the batch is kept.
        """
        pass

    @abstractmethod
    async def get_events(
        self,
        session_id: str,
        start_seq: int | None = None,
        end_seq: int | None = None,
        event_type: EventType | None = None,
        limit: int | None = None,
        descending: bool = False,
    ) -> list[SessionEvent]:
        """
        Get events for a session, ordered by sequence.

        Args:
            session_id: Session ID
            start_seq: Inclusive lower bound
            end_seq: Inclusive upper bound
            event_type: Only return this payload variant
            limit: Maximum number of events
            descending: Newest first
        """
        pass

    @abstractmethod
    async def get_max_sequence(self, session_id: str) -> int:
        """Highest stored sequence number, 0 for an empty log"""
        pass


class InMemorySessionStore(SessionStore):
    """In-memory implementation of SessionStore (for testing and development)."""

    def __init__(self):
        self.sessions: dict[str, Session] = {}
        self.events: dict[str, dict[int, SessionEvent]] = {}  # session_id -> seq -> event

    async def save_session(self, session: Session) -> None:
        self.sessions[session.id] = session.model_copy(deep=True)

    async def get_session(self, session_id: str) -> Session | None:
        session = self.sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def list_sessions(
        self,
        user_id: str | None = None,
        state: SessionState | None = None,
        updated_before: datetime | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Session]:
        sessions = list(self.sessions.values())
        if user_id:
            sessions = [s for s in sessions if s.user_id == user_id]
        if state:
            sessions = [s for s in sessions if s.state == state]
        if updated_before:
            sessions = [s for s in sessions if s.updated_at < updated_before]
        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return [s.model_copy(deep=True) for s in sessions[offset : offset + limit]]

    async def insert_events(self, events: list[SessionEvent]) -> None:
        if not events:
            return
        # Check and write without awaiting in between, so the batch is atomic
        for event in events:
            log = self.events.get(event.session_id, {})
            if event.sequence in log:
                raise SequenceCollision(event.session_id, event.sequence)
        for event in events:
            self.events.setdefault(event.session_id, {})[event.sequence] = event

    async def get_events(
        self,
        session_id: str,
        start_seq: int | None = None,
        end_seq: int | None = None,
        event_type: EventType | None = None,
        limit: int | None = None,
        descending: bool = False,
    ) -> list[SessionEvent]:
        log = self.events.get(session_id, {})
        events = sorted(log.values(), key=lambda e: e.sequence, reverse=descending)

        if start_seq is not None:
            events = [e for e in events if e.sequence >= start_seq]
        if end_seq is not None:
            events = [e for e in events if e.sequence <= end_seq]
        if event_type is not None:
            events = [e for e in events if e.type == event_type]
        if limit is not None:
            events = events[:limit]

        return events

    async def get_max_sequence(self, session_id: str) -> int:
        log = self.events.get(session_id)
        return max(log) if log else 0


__all__ = ["SessionStore", "InMemorySessionStore"]
