"""
MongoDB implementation of SessionStore.
"""

from datetime import datetime

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import BulkWriteError, DuplicateKeyError, OperationFailure

from coachloop.domain import EventType, Session, SessionEvent, SessionState
from coachloop.errors import SequenceCollision
from coachloop.storage.base import SessionStore
from coachloop.utils.logging import get_logger

logger = get_logger(__name__)

# Mongo adds _id; it is not part of the models
_EVENT_PROJECTION = {"_id": 0}
_SESSION_PROJECTION = {"_id": 0}


class MongoSessionStore(SessionStore):
    """
    MongoDB implementation of SessionStore.

    Collections:
    - sessions: Session documents keyed by ``id``
    - events: Event documents with a unique (session_id, sequence) index

    Event batches are written in a transaction, so the server must be a
    replica set (a single-node one is enough) or a sharded cluster.
    """

    def __init__(
        self,
        uri: str = "mongodb://localhost:27017",
        db_name: str = "coachloop",
        client: AsyncIOMotorClient | None = None,
    ):
        self.uri = uri
        self.db_name = db_name
        self.client = client
        self.db = None
        self.sessions_collection = None
        self.events_collection = None

    async def _ensure_connection(self):
        """Ensure database connection is established."""
        if self.db is None:
            if self.client is None:
                self.client = AsyncIOMotorClient(self.uri)
            self.db = self.client[self.db_name]
            self.sessions_collection = self.db["sessions"]
            self.events_collection = self.db["events"]

            # Create indexes for sessions
            await self.sessions_collection.create_index("id", unique=True)
            await self.sessions_collection.create_index("user_id")
            await self.sessions_collection.create_index([("state", 1), ("updated_at", 1)])

            # Create indexes for events
            await self.events_collection.create_index(
                [("session_id", 1), ("sequence", 1)], unique=True
            )
            await self.events_collection.create_index(
                [("session_id", 1), ("payload.type", 1), ("sequence", -1)]
            )

            logger.info("mongodb_connected", uri=self.uri, db_name=self.db_name)

    async def close(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None
            self.db = None

    # --- Session Operations ---

    async def save_session(self, session: Session) -> None:
        await self._ensure_connection()

        try:
            data = session.model_dump(mode="json")
            # Native dates so range queries on updated_at work
            data["created_at"] = session.created_at
            data["updated_at"] = session.updated_at
            await self.sessions_collection.replace_one({"id": session.id}, data, upsert=True)
        except Exception as e:
            logger.error("save_session_failed", error=str(e), session_id=session.id)
            raise

    async def get_session(self, session_id: str) -> Session | None:
        await self._ensure_connection()

        try:
            doc = await self.sessions_collection.find_one({"id": session_id}, _SESSION_PROJECTION)
            if doc:
                return Session.model_validate(doc)
            return None
        except Exception as e:
            logger.error("get_session_failed", error=str(e), session_id=session_id)
            raise

    async def list_sessions(
        self,
        user_id: str | None = None,
        state: SessionState | None = None,
        updated_before: datetime | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Session]:
        await self._ensure_connection()

        try:
            query: dict = {}
            if user_id:
                query["user_id"] = user_id
            if state:
                query["state"] = state.value
            if updated_before:
                query["updated_at"] = {"$lt": updated_before}

            cursor = (
                self.sessions_collection.find(query, _SESSION_PROJECTION)
                .sort("updated_at", -1)
                .skip(offset)
                .limit(limit)
            )
            return [Session.model_validate(doc) async for doc in cursor]
        except Exception as e:
            logger.error("list_sessions_failed", error=str(e))
            raise

    # --- Event Operations ---

    async def insert_events(self, events: list[SessionEvent]) -> None:
        """
        Insert the batch inside one transaction so a collision leaves no
        partial batch behind. Transactions need a replica set or mongos.
        """
        if not events:
            return
        await self._ensure_connection()

        session_id = events[0].session_id
        docs = [event.model_dump(mode="json") for event in events]

        try:
            async with await self.client.start_session() as s:
                async with s.start_transaction():
                    await self.events_collection.insert_many(docs, ordered=True, session=s)
        except (BulkWriteError, DuplicateKeyError) as e:
            collided = _collided_sequence(e, events)
            logger.debug(
                "event_sequence_collision",
                session_id=session_id,
                sequence=collided,
                batch_size=len(events),
            )
            raise SequenceCollision(session_id, collided) from e
        except OperationFailure as e:
            # A concurrent transaction holds the same keys
            if e.has_error_label("TransientTransactionError"):
                logger.debug("event_write_conflict", session_id=session_id, batch_size=len(events))
                raise SequenceCollision(session_id, events[0].sequence) from e
            logger.error("insert_events_failed", error=str(e), session_id=session_id)
            raise
        except Exception as e:
            logger.error("insert_events_failed", error=str(e), session_id=session_id)
            raise

    async def get_events(
        self,
        session_id: str,
        start_seq: int | None = None,
        end_seq: int | None = None,
        event_type: EventType | None = None,
        limit: int | None = None,
        descending: bool = False,
    ) -> list[SessionEvent]:
        await self._ensure_connection()

        try:
            query: dict = {"session_id": session_id}
            if start_seq is not None or end_seq is not None:
                seq_query = {}
                if start_seq is not None:
                    seq_query["$gte"] = start_seq
                if end_seq is not None:
                    seq_query["$lte"] = end_seq
                query["sequence"] = seq_query
            if event_type is not None:
                query["payload.type"] = event_type.value

            cursor = self.events_collection.find(query, _EVENT_PROJECTION).sort(
                "sequence", -1 if descending else 1
            )
            if limit is not None:
                cursor = cursor.limit(limit)

            return [SessionEvent.model_validate(doc) async for doc in cursor]
        except Exception as e:
            logger.error("get_events_failed", error=str(e), session_id=session_id)
            raise

    async def get_max_sequence(self, session_id: str) -> int:
        await self._ensure_connection()

        doc = await self.events_collection.find_one(
            {"session_id": session_id},
            {"sequence": 1},
            sort=[("sequence", -1)],
        )
        return doc["sequence"] if doc else 0


def _collided_sequence(error: Exception, events: list[SessionEvent]) -> int:
    """Best-effort sequence number of the first duplicate in a failed batch."""
    if isinstance(error, BulkWriteError):
        write_errors = error.details.get("writeErrors") or []
        if write_errors:
            index = write_errors[0].get("index", 0)
            if 0 <= index < len(events):
                return events[index].sequence
    return events[0].sequence


__all__ = ["MongoSessionStore"]
