"""
Repositories
============

Typed access to each collection. Repositories translate between tagged
records and documents, and publish successful writes to per-key
observable cells so in-process readers can ``subscribe(key)``.
Cells exist only while subscribed, so readers see writes made after they
subscribe.

All of them take a collection object exposing the MongoCollection
interface (get / find_one / find / insert / set / merge / aggregate /
compare_and_set), which keeps them independent of motor.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING

from coach.advice.models import AdviceRecord, FeedbackRecord
from coach.core.errors import NotFoundError
from coach.core.observable import KeyedCells, Subscription, watched_only
from coach.core.types import (
    ActivityKind,
    BehaviorSnapshot,
    FastingSession,
    HealthProfile,
    SessionState,
    activity_from_dict,
    utc_now,
)

logger = logging.getLogger(__name__)


# =============================================================================
# HEALTH PROFILES
# =============================================================================

class ProfileRepository:
    def __init__(self, collection):
        self.collection = collection
        self._cells: KeyedCells[HealthProfile] = KeyedCells(retain=watched_only)

    async def get(self, user_id: str) -> Optional[HealthProfile]:
        doc = await self.collection.get(user_id)
        return HealthProfile.from_dict(doc) if doc else None

    async def require(self, user_id: str) -> HealthProfile:
        profile = await self.get(user_id)
        if profile is None:
            raise NotFoundError("HealthProfile", user_id)
        return profile

    async def save(self, profile: HealthProfile) -> HealthProfile:
        profile.updated_at = utc_now()
        await self.collection.set(profile.user_id, profile.to_dict())
        self._cells.publish(profile.user_id, profile)
        return profile

    async def _merge(self, user_id: str, fields: Dict[str, Any], upsert: bool = False) -> None:
        now = utc_now()
        fields = {**fields, "updated_at": now}
        defaults = {"user_id": user_id, "receive_advice": True, "created_at": now}
        on_insert = {k: v for k, v in defaults.items() if k not in fields}
        matched = await self.collection.merge(
            user_id, fields, upsert=upsert, on_insert=on_insert
        )
        if not matched:
            raise NotFoundError("HealthProfile", user_id)
        if user_id in self._cells:
            refreshed = await self.get(user_id)
            if refreshed:
                self._cells.publish(user_id, refreshed)

    async def update(self, user_id: str, fields: Dict[str, Any]) -> HealthProfile:
        """``$set`` only the given top-level fields, creating the profile if needed."""
        await self._merge(user_id, fields, upsert=True)
        return await self.require(user_id)

    async def set_advice_feedback(self, user_id: str, advice_id: str, rating: int) -> None:
        await self._merge(user_id, {f"advice_feedback.{advice_id}": rating}, upsert=True)

    async def set_insight(self, user_id: str, key: str, value: Any) -> None:
        await self._merge(user_id, {f"personalized_insights.{key}": value}, upsert=True)

    async def list_advice_recipients(self, limit: int = 0) -> List[str]:
        docs = await self.collection.find({"receive_advice": True}, limit=limit)
        return [doc["_id"] for doc in docs]

    def subscribe(self, user_id: str) -> Subscription[HealthProfile]:
        return self._cells.subscribe(user_id)


# =============================================================================
# FASTING SESSIONS
# =============================================================================

class SessionRepository:
    """
    Fasting sessions keyed by session id. ``is_open`` is denormalized so
    the store can enforce one open session per user with a partial
    unique index.
    """

    def __init__(self, collection):
        self.collection = collection

    async def get(self, session_id: str) -> Optional[FastingSession]:
        doc = await self.collection.get(session_id)
        return FastingSession.from_dict(doc) if doc else None

    async def get_open(self, user_id: str) -> Optional[FastingSession]:
        doc = await self.collection.find_one({"user_id": user_id, "is_open": True})
        return FastingSession.from_dict(doc) if doc else None

    async def insert(self, session: FastingSession) -> bool:
        return await self.collection.insert(session.to_dict())

    async def replace(self, session: FastingSession, expected_version: int) -> bool:
        return await self.collection.compare_and_set(
            session.id, session.to_dict(), expected_version
        )

    async def list_open(self, limit: int = 0) -> List[FastingSession]:
        docs = await self.collection.find({"is_open": True}, limit=limit)
        return [FastingSession.from_dict(d) for d in docs]

    async def history(
        self,
        user_id: str,
        limit: int = 50,
        since: Optional[datetime] = None,
    ) -> List[FastingSession]:
        """Finished sessions, most recent first."""
        query: Dict[str, Any] = {
            "user_id": user_id,
            "state": {"$in": [SessionState.COMPLETED.value, SessionState.ABANDONED.value]},
        }
        if since is not None:
            query["start_time"] = {"$gte": since}
        docs = await self.collection.find(
            query, sort=[("start_time", DESCENDING)], limit=limit
        )
        return [FastingSession.from_dict(d) for d in docs]


# =============================================================================
# ACTIVITY LOG
# =============================================================================

class ActivityLog:
    """Append-only log of meal, exercise and sleep records."""

    def __init__(self, collection):
        self.collection = collection
        self._streams: KeyedCells[Any] = KeyedCells(conflate=False, retain=watched_only)

    async def append(self, record) -> Any:
        inserted = await self.collection.insert(record.to_dict())
        if not inserted:
            logger.info(f"Activity record {record.id} already logged, ignoring")
            return record
        self._streams.publish(record.user_id, record)
        return record

    async def query(
        self,
        user_id: str,
        kind: Optional[ActivityKind] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[Any]:
        """Records for a user, most recent first."""
        query: Dict[str, Any] = {"user_id": user_id}
        if kind is not None:
            query["kind"] = ActivityKind(kind).value
        if since is not None:
            query["timestamp"] = {"$gte": since}
        docs = await self.collection.find(
            query, sort=[("timestamp", DESCENDING)], limit=limit
        )
        return [activity_from_dict(d) for d in docs]

    def subscribe(self, user_id: str) -> Subscription[Any]:
        """Live stream of records appended from now on."""
        return self._streams.subscribe(user_id, replay=False)


# =============================================================================
# ADVICE
# =============================================================================

class AdviceRepository:
    def __init__(self, collection):
        self.collection = collection
        self._cells: KeyedCells[AdviceRecord] = KeyedCells(retain=watched_only)

    async def insert(self, record: AdviceRecord) -> AdviceRecord:
        await self.collection.insert(record.to_dict())
        self._cells.publish(record.id, record)
        return record

    async def get(self, advice_id: str) -> Optional[AdviceRecord]:
        doc = await self.collection.get(advice_id)
        return AdviceRecord.from_dict(doc) if doc else None

    async def require(self, advice_id: str) -> AdviceRecord:
        record = await self.get(advice_id)
        if record is None:
            raise NotFoundError("AdviceRecord", advice_id)
        return record

    async def _update_flags(self, advice_id: str, fields: Dict[str, Any]) -> AdviceRecord:
        matched = await self.collection.merge(advice_id, fields)
        if not matched:
            raise NotFoundError("AdviceRecord", advice_id)
        record = await self.require(advice_id)
        self._cells.publish(advice_id, record)
        return record

    async def set_rating(self, advice_id: str, rating: int) -> AdviceRecord:
        return await self._update_flags(advice_id, {"user_rating": rating})

    async def mark_read(self, advice_id: str) -> AdviceRecord:
        return await self._update_flags(advice_id, {"is_read": True})

    async def set_bookmarked(self, advice_id: str, bookmarked: bool = True) -> AdviceRecord:
        return await self._update_flags(advice_id, {"is_bookmarked": bookmarked})

    async def dismiss(self, advice_id: str) -> AdviceRecord:
        return await self._update_flags(advice_id, {"is_dismissed": True})

    async def list_for_user(
        self,
        user_id: str,
        include_dismissed: bool = False,
        limit: int = 20,
    ) -> List[AdviceRecord]:
        query: Dict[str, Any] = {"user_id": user_id}
        if not include_dismissed:
            query["is_dismissed"] = False
        docs = await self.collection.find(
            query, sort=[("created_at", DESCENDING)], limit=limit
        )
        return [AdviceRecord.from_dict(d) for d in docs]

    def subscribe(self, advice_id: str) -> Subscription[AdviceRecord]:
        return self._cells.subscribe(advice_id)


class FeedbackRepository:
    def __init__(self, collection):
        self.collection = collection

    async def append(self, record: FeedbackRecord) -> FeedbackRecord:
        await self.collection.insert(record.to_dict())
        return record

    async def recent(self, user_id: str, limit: int = 100) -> List[FeedbackRecord]:
        """Most recent first."""
        docs = await self.collection.find(
            {"user_id": user_id}, sort=[("timestamp", DESCENDING)], limit=limit
        )
        return [FeedbackRecord.from_dict(d) for d in docs]

    async def for_advice(self, advice_id: str) -> List[FeedbackRecord]:
        docs = await self.collection.find(
            {"advice_id": advice_id}, sort=[("timestamp", DESCENDING)]
        )
        return [FeedbackRecord.from_dict(d) for d in docs]


# =============================================================================
# BEHAVIOR SNAPSHOTS
# =============================================================================

class SnapshotRepository:
    """Cached BehaviorSnapshot per user; always replaced whole."""

    def __init__(self, collection):
        self.collection = collection

    async def get(self, user_id: str) -> Optional[BehaviorSnapshot]:
        doc = await self.collection.get(user_id)
        return BehaviorSnapshot.from_dict(doc) if doc else None

    async def set(self, snapshot: BehaviorSnapshot) -> None:
        await self.collection.set(snapshot.user_id, snapshot.to_dict())
