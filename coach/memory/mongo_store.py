"""
MongoDB Store
=============

Connection management and a thin keyed-document wrapper over motor.

Collections:
1. health_profiles      - one document per user (_id = user_id)
2. fasting_sessions     - one document per session; at most one open per user
3. activity_log         - append-only meal / exercise / sleep records
4. behavior_snapshots   - cached analysis result per user (_id = user_id)
5. advice_records       - generated advice, content frozen at creation
6. advice_feedback      - append-only ratings
7. knowledge_snippets   - retrieval corpus with embeddings
8. notification_outbox  - pushed events awaiting delivery

INDEXES:
- fasting_sessions:
  - (user_id) unique, partial on is_open=true - enforces one open session
  - (user_id, start_time DESC) - history
- activity_log: (user_id, kind, timestamp DESC)
- advice_records: (user_id, created_at DESC)
- advice_feedback: (user_id, timestamp DESC), (advice_id)
- notification_outbox: (status, created_at)

Every driver error is re-raised as PersistenceError so callers deal with
a single failure type.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, IndexModel
from pymongo.errors import ConnectionFailure, DuplicateKeyError, OperationFailure, PyMongoError

from coach.core.errors import PersistenceError

logger = logging.getLogger(__name__)


# =============================================================================
# CONNECTION MANAGER
# =============================================================================

class DatabaseManager:
    """Owns the motor client; created once at startup and passed around."""

    def __init__(self):
        self._client: Optional[AsyncIOMotorClient] = None
        self._db: Optional[AsyncIOMotorDatabase] = None

    async def connect(self, uri: str, database: str) -> None:
        """Initialize MongoDB connection with recommended settings"""
        if self._client is not None:
            return

        self._client = AsyncIOMotorClient(
            uri,
            tz_aware=True,
            # Connection Pool Settings
            minPoolSize=1,
            maxPoolSize=10,
            # Timeouts
            connectTimeoutMS=5000,
            socketTimeoutMS=10000,
            serverSelectionTimeoutMS=5000,
            retryWrites=True,
            retryReads=True,
        )
        self._db = self._client[database]

        try:
            await self._client.admin.command("ping")
            logger.info(f"Connected to MongoDB: {database}")
        except ConnectionFailure as e:
            logger.error(f"MongoDB connection failed: {e}")
            raise

        await self._create_indexes()

    async def _create_indexes(self) -> None:
        session_indexes = [
            IndexModel(
                [("user_id", ASCENDING)],
                unique=True,
                partialFilterExpression={"is_open": True},
                name="one_open_session_per_user",
            ),
            IndexModel([("user_id", ASCENDING), ("start_time", DESCENDING)]),
        ]
        activity_indexes = [
            IndexModel([("user_id", ASCENDING), ("kind", ASCENDING), ("timestamp", DESCENDING)]),
        ]
        advice_indexes = [
            IndexModel([("user_id", ASCENDING), ("created_at", DESCENDING)]),
        ]
        feedback_indexes = [
            IndexModel([("user_id", ASCENDING), ("timestamp", DESCENDING)]),
            IndexModel([("advice_id", ASCENDING)]),
        ]
        outbox_indexes = [
            IndexModel([("status", ASCENDING), ("created_at", ASCENDING)]),
        ]
        profile_indexes = [
            IndexModel([("receive_advice", ASCENDING)]),
        ]

        try:
            await self._db.fasting_sessions.create_indexes(session_indexes)
            await self._db.activity_log.create_indexes(activity_indexes)
            await self._db.advice_records.create_indexes(advice_indexes)
            await self._db.advice_feedback.create_indexes(feedback_indexes)
            await self._db.notification_outbox.create_indexes(outbox_indexes)
            await self._db.health_profiles.create_indexes(profile_indexes)
            logger.info("MongoDB indexes created successfully")
        except OperationFailure as e:
            logger.warning(f"Index creation warning: {e}")

    async def disconnect(self) -> None:
        if self._client:
            self._client.close()
            self._client = None
            self._db = None
            logger.info("Disconnected from MongoDB")

    @property
    def db(self) -> AsyncIOMotorDatabase:
        if self._db is None:
            raise RuntimeError("Database not connected")
        return self._db

    @property
    def is_connected(self) -> bool:
        return self._db is not None

    async def ping(self) -> bool:
        """Health check"""
        if self._client is None:
            return False
        try:
            await self._client.admin.command("ping")
            return True
        except PyMongoError:
            return False

    def collection(self, name: str) -> "MongoCollection":
        return MongoCollection(self, name)


# =============================================================================
# KEYED DOCUMENT COLLECTION
# =============================================================================

Sort = Sequence[Tuple[str, int]]


class MongoCollection:
    """
    Keyed document access used by every repository.

    Documents carry their key in ``_id``. ``compare_and_set`` replaces a
    document only if its stored ``version`` still matches.
    """

    def __init__(self, manager: DatabaseManager, name: str):
        self._manager = manager
        self.name = name

    @property
    def collection(self):
        return self._manager.db[self.name]

    def _wrap(self, operation: str, error: PyMongoError) -> PersistenceError:
        logger.error(f"❌ MongoDB {operation} on '{self.name}' failed: {error}")
        return PersistenceError(f"{operation} on '{self.name}' failed: {error}")

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return await self.find_one({"_id": key})

    async def find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            return await self.collection.find_one(query)
        except PyMongoError as e:
            raise self._wrap("find_one", e) from e

    async def find(
        self,
        query: Dict[str, Any],
        sort: Optional[Sort] = None,
        limit: int = 0,
    ) -> List[Dict[str, Any]]:
        try:
            cursor = self.collection.find(query)
            if sort:
                cursor = cursor.sort(list(sort))
            if limit:
                cursor = cursor.limit(limit)
            return await cursor.to_list(length=limit or None)
        except PyMongoError as e:
            raise self._wrap("find", e) from e

    async def insert(self, document: Dict[str, Any]) -> bool:
        """Insert a new document. Returns False if a unique key already exists."""
        try:
            await self.collection.insert_one(document)
            return True
        except DuplicateKeyError:
            return False
        except PyMongoError as e:
            raise self._wrap("insert", e) from e

    async def set(self, key: str, document: Dict[str, Any]) -> None:
        try:
            await self.collection.replace_one({"_id": key}, document, upsert=True)
        except PyMongoError as e:
            raise self._wrap("set", e) from e

    async def merge(
        self,
        key: str,
        fields: Dict[str, Any],
        upsert: bool = False,
        on_insert: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        ``$set`` the given (dot-notation) fields. Returns True if a document
        matched or was upserted; ``on_insert`` fields are written only when
        the upsert creates the document.
        """
        update: Dict[str, Any] = {"$set": fields}
        if upsert and on_insert:
            update["$setOnInsert"] = on_insert
        try:
            result = await self.collection.update_one({"_id": key}, update, upsert=upsert)
            return result.matched_count > 0 or result.upserted_id is not None
        except PyMongoError as e:
            raise self._wrap("merge", e) from e

    async def aggregate(self, pipeline: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        try:
            cursor = self.collection.aggregate(pipeline)
            return await cursor.to_list(length=None)
        except PyMongoError as e:
            raise self._wrap("aggregate", e) from e

    async def compare_and_set(
        self, key: str, document: Dict[str, Any], expected_version: int
    ) -> bool:
        try:
            result = await self.collection.replace_one(
                {"_id": key, "version": expected_version}, document
            )
            return result.matched_count == 1
        except DuplicateKeyError:
            return False
        except PyMongoError as e:
            raise self._wrap("compare_and_set", e) from e
