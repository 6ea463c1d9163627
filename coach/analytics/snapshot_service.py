"""
Snapshot Service
================

Loads a user's history, runs the pattern analyzer and caches the result.

- A cached snapshot younger than ``staleness`` is reused unless ``force``.
- Recomputes for one user are coalesced under a per-user lock: callers
  that queued behind a running recompute get its fresh result.
- Hours of day are read in the timezone of the user's profile.
- ``schedule_recompute`` is the fire-and-forget entry point used after a
  fasting session ends; its failures are logged and retried naturally on
  the next trigger.
"""
import asyncio
import logging
from datetime import timedelta, tzinfo
from typing import Optional

from coach.analytics.pattern_analyzer import AnalysisWindow, analyze
from coach.core.background import BackgroundTasks
from coach.core.locks import KeyedLocks
from coach.core.observable import KeyedCells, Subscription, watched_only
from coach.core.types import ActivityKind, BehaviorSnapshot, Clock, utc_now

logger = logging.getLogger(__name__)


class SnapshotService:
    def __init__(
        self,
        activity_log,
        sessions,
        snapshots,
        tasks: BackgroundTasks,
        profiles=None,
        window: AnalysisWindow = AnalysisWindow(),
        staleness: timedelta = timedelta(hours=1),
        clock: Clock = utc_now,
    ):
        self.activity_log = activity_log
        self.sessions = sessions
        self.snapshots = snapshots
        self.tasks = tasks
        self.profiles = profiles
        self.window = window
        self.staleness = staleness
        self._clock = clock
        self._locks = KeyedLocks()
        self._cells: KeyedCells[BehaviorSnapshot] = KeyedCells(retain=watched_only)

    def _is_fresh(self, snapshot: Optional[BehaviorSnapshot]) -> bool:
        return (
            snapshot is not None
            and self._clock() - snapshot.computed_at < self.staleness
        )

    async def get_snapshot(self, user_id: str, force: bool = False) -> BehaviorSnapshot:
        """Cached snapshot if fresh, otherwise a recomputed one."""
        if not force:
            cached = await self.snapshots.get(user_id)
            if self._is_fresh(cached):
                return cached

        requested_at = self._clock()
        async with self._locks.hold(user_id):
            # Someone else recomputed while we waited for the lock
            cached = await self.snapshots.get(user_id)
            if cached is not None and cached.computed_at >= requested_at:
                return cached
            if not force and self._is_fresh(cached):
                return cached
            return await self._recompute(user_id)

    async def refresh(self, user_id: str) -> BehaviorSnapshot:
        return await self.get_snapshot(user_id, force=True)

    async def _user_tz(self, user_id: str) -> Optional[tzinfo]:
        if self.profiles is None:
            return None
        profile = await self.profiles.get(user_id)
        return profile.tzinfo if profile else None

    async def _recompute(self, user_id: str) -> BehaviorSnapshot:
        now = self._clock()
        since = self.window.since(now)

        meals = await self.activity_log.query(
            user_id, kind=ActivityKind.MEAL, since=since, limit=self.window.meal_limit
        )
        workouts = await self.activity_log.query(
            user_id, kind=ActivityKind.EXERCISE, since=since, limit=self.window.exercise_limit
        )
        nights = await self.activity_log.query(
            user_id, kind=ActivityKind.SLEEP, since=since, limit=self.window.sleep_limit
        )
        sessions = await self.sessions.history(
            user_id, limit=self.window.fasting_limit, since=since
        )

        snapshot = analyze(
            user_id,
            now,
            meals=meals,
            sessions=sessions,
            workouts=workouts,
            nights=nights,
            window=self.window,
            tz=await self._user_tz(user_id),
        )
        await self.snapshots.set(snapshot)
        self._cells.publish(user_id, snapshot)

        logger.info(
            f"📊 Snapshot recomputed: user={user_id}, meals={len(meals)}, "
            f"fasts={len(sessions)}, score={snapshot.overall_health_score}"
        )
        return snapshot

    def schedule_recompute(self, user_id: str) -> asyncio.Task:
        return self.tasks.spawn(self.refresh(user_id), name=f"snapshot:{user_id}")

    def subscribe(self, user_id: str) -> Subscription[BehaviorSnapshot]:
        return self._cells.subscribe(user_id)
