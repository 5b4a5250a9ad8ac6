"""
Append-only, sequence-numbered event log.

The next sequence is read from the store and the write is attempted; a
concurrent writer that took the same number makes the store raise
SequenceCollision, and the append is retried with a small random jitter.
There is no lock, so appends to one session never wait on other sessions.
"""

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random,
)

from coachloop.domain import EventPayload, SessionEvent
from coachloop.errors import SequenceCollision, SequenceConflict
from coachloop.storage.base import SessionStore
from coachloop.utils.logging import get_logger

logger = get_logger(__name__)


class EventLog:
    """Session event log on top of a SessionStore."""

    def __init__(
        self,
        store: SessionStore,
        max_attempts: int = 5,
        max_jitter: float = 0.05,
    ):
        """
        Args:
            store: Backing session store
            max_attempts: Write attempts before giving up with SequenceConflict
            max_jitter: Upper bound (seconds) of the random wait between attempts
        """
        self.store = store
        self.max_attempts = max_attempts
        self.max_jitter = max_jitter

    async def append(self, session_id: str, payload: EventPayload) -> int:
        """Append one event and return its sequence number."""
        events = await self.append_many(session_id, [payload])
        return events[0].sequence

    async def append_many(
        self, session_id: str, payloads: list[EventPayload]
    ) -> list[SessionEvent]:
        """
        Append events as one contiguous batch.

        Either every payload is stored under consecutive sequence numbers or
        none is.

        Raises:
            SequenceConflict: Collisions persisted for every attempt.
        """
        if not payloads:
            return []

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_random(0, self.max_jitter),
            retry=retry_if_exception_type(SequenceCollision),
            before_sleep=self._log_collision,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    events = await self._write(session_id, payloads)
        except SequenceCollision as e:
            logger.error(
                "event_append_exhausted",
                session_id=session_id,
                attempts=self.max_attempts,
                batch_size=len(payloads),
            )
            raise SequenceConflict(session_id, self.max_attempts) from e

        logger.debug(
            "events_appended",
            session_id=session_id,
            first_sequence=events[0].sequence,
            types=[p.type for p in payloads],
        )
        return events

    async def read(self, session_id: str, from_sequence: int = 1) -> list[SessionEvent]:
        """Events with ``sequence >= from_sequence``, in order."""
        return await self.store.get_events(session_id, start_seq=from_sequence)

    async def latest_sequence(self, session_id: str) -> int:
        return await self.store.get_max_sequence(session_id)

    async def _write(
        self, session_id: str, payloads: list[EventPayload]
    ) -> list[SessionEvent]:
        next_seq = await self.store.get_max_sequence(session_id) + 1
        events = [
            SessionEvent(session_id=session_id, sequence=next_seq + offset, payload=payload)
            for offset, payload in enumerate(payloads)
        ]
        await self.store.insert_events(events)
        return events

    def _log_collision(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "event_sequence_collision",
            session_id=getattr(error, "session_id", None),
            sequence=getattr(error, "sequence", None),
            attempt=retry_state.attempt_number,
        )


__all__ = ["EventLog"]
