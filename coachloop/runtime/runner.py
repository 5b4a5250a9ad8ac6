"""
Turn runner - the entry point callers use to run a user turn.

Owns the per-session single-writer discipline: one asyncio.Lock per session
ID, so two turns never interleave within a session while different
sessions run fully in parallel.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

from coachloop.config.schema import LoopConfig
from coachloop.domain import EventType, Session, SessionEvent, SessionState
from coachloop.errors import SessionBusy, SessionNotFound, SessionOwnershipError
from coachloop.knowledge.initializer import ContextInitializer, KnowledgeSelector
from coachloop.knowledge.registry import KnowledgeRegistry
from coachloop.llm.base import Model
from coachloop.runtime.checkpoint import CheckpointManager
from coachloop.runtime.context import ContextBuilder, build_stable_prefix
from coachloop.runtime.event_log import EventLog
from coachloop.runtime.loop import AgentLoop, TurnResult
from coachloop.runtime.wire import Wire
from coachloop.storage.base import SessionStore
from coachloop.tools.dispatcher import ToolDispatcher
from coachloop.tools.formatter import ObservationFormatter
from coachloop.tools.registry import ToolRegistry
from coachloop.utils.logging import get_logger
from coachloop.utils.tokens import TokenCounter

logger = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = """You are a personal coaching agent working through tools.
You help the user plan, adjust and review their training using the knowledge and tools available to you."""


class TurnRunner:
    """
    Wires the loop components together and runs turns.

    Example:
        runner = TurnRunner(store, model, tools, knowledge, selector)
        result = await runner.run_turn("session-1", "user-1", "give me a 30-minute light workout")
    """

    def __init__(
        self,
        store: SessionStore,
        model: Model,
        tools: ToolRegistry,
        knowledge: KnowledgeRegistry,
        selector: KnowledgeSelector,
        config: LoopConfig | None = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        token_counter: TokenCounter | None = None,
    ):
        self.store = store
        self.tools = tools
        self.knowledge = knowledge
        self.config = config or LoopConfig()
        self.system_prompt = system_prompt

        self.event_log = EventLog(store, max_attempts=self.config.append_max_attempts)
        self.builder = ContextBuilder(token_counter)
        self.dispatcher = ToolDispatcher(
            tools, ObservationFormatter(tools), timeout=self.config.tool_timeout
        )
        self.initializer = ContextInitializer(knowledge, selector, self.event_log)
        self.checkpoints = CheckpointManager(
            self.event_log,
            store,
            self.builder,
            tools=tools,
            context_window_tokens=self.config.context_window_tokens,
            threshold=self.config.checkpoint_threshold,
            summary_line_chars=self.config.summary_line_chars,
        )
        self.loop = AgentLoop(
            model=model,
            tools=tools,
            dispatcher=self.dispatcher,
            initializer=self.initializer,
            checkpoints=self.checkpoints,
            builder=self.builder,
            event_log=self.event_log,
            store=store,
            config=self.config,
        )

        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_holders: dict[str, int] = {}

    def is_busy(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    async def run_turn(
        self,
        session_id: str,
        user_id: str,
        user_message: str,
        wire: Wire | None = None,
        client_context: dict | None = None,
    ) -> TurnResult:
        """
        Run one user turn to completion.

        Raises:
            SessionBusy: A turn is running for the session and busy_policy is "reject"
            SessionOwnershipError: The session belongs to another user
        """
        if self.is_busy(session_id) and self.config.busy_policy == "reject":
            logger.warning("session_busy", session_id=session_id)
            raise SessionBusy(session_id)

        async with self._session_lock(session_id):
            session = await self.get_or_create_session(session_id, user_id)
            return await self.loop.run(session, user_message, wire, client_context)

    @asynccontextmanager
    async def _session_lock(self, session_id: str):
        """Hold the session's lock; the lock is dropped once nobody holds or awaits it."""
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._lock_holders[session_id] = self._lock_holders.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[session_id] -= 1
            if not self._lock_holders[session_id]:
                del self._lock_holders[session_id]
                del self._locks[session_id]

    async def get_or_create_session(self, session_id: str, user_id: str) -> Session:
        session = await self.store.get_session(session_id)
        if session is not None:
            if session.user_id != user_id:
                raise SessionOwnershipError(session_id)
            return session

        session = Session(
            id=session_id,
            user_id=user_id,
            stable_prefix=build_stable_prefix(self.system_prompt, self.tools, self.knowledge),
        )
        await self.store.save_session(session)
        logger.info("session_created", session_id=session_id, user_id=user_id)
        return session

    async def get_session_state(
        self,
        session_id: str,
        user_id: str | None = None,
        recent_actions: int = 10,
    ) -> tuple[Session, list[SessionEvent]]:
        """
        Session plus its most recent actions, newest first.

        Raises:
            SessionNotFound: Unknown session
            SessionOwnershipError: ``user_id`` given and not the owner
        """
        session = await self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if user_id is not None and session.user_id != user_id:
            raise SessionOwnershipError(session_id)

        actions = await self.store.get_events(
            session_id,
            event_type=EventType.ACTION,
            limit=recent_actions,
            descending=True,
        )
        return session, actions

    async def archive_inactive_sessions(self, inactive_for: timedelta) -> list[str]:
        """
        Move sessions idle for longer than ``inactive_for`` to COMPLETED.

        Each session is re-read under its lock before it is written, so a turn
        that ran after the candidate list was taken is never overwritten.
        """
        cutoff = datetime.now() - inactive_for
        archivable = (SessionState.IDLE, SessionState.ERROR, SessionState.ACTIVE)
        archived = []

        for state in archivable:
            candidates = await self.store.list_sessions(
                state=state, updated_before=cutoff, limit=1000
            )
            for candidate in candidates:
                if self.is_busy(candidate.id):
                    continue
                async with self._session_lock(candidate.id):
                    session = await self.store.get_session(candidate.id)
                    if (
                        session is None
                        or session.state not in archivable
                        or session.updated_at >= cutoff
                    ):
                        continue
                    session.state = SessionState.COMPLETED
                    await self.store.save_session(session)
                archived.append(session.id)

        if archived:
            logger.info("sessions_archived", count=len(archived), cutoff=cutoff.isoformat())
        return archived


__all__ = ["TurnRunner", "DEFAULT_SYSTEM_PROMPT"]
