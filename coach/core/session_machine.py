"""
Fasting Session State Machine
=============================

    Idle --start--> Active --pause--> Paused --resume--> Active
    {Active, Paused} --end(completed)--> Completed | Abandoned

Commands for one user run one at a time under a per-user lock, and each
write is a version-checked replace, so concurrent callers (in this
process or another) cannot both apply a transition. Writes are
persist-then-apply: the observable status cell changes only after the
store accepted the new version, so a failed write leaves memory and
store in agreement.

Observers call ``watch(user_id)``; the returned SessionWatch also runs a
display-only ticker that recomputes progress every ``tick_seconds``
without ever writing to the store. Cancel the watch to stop both.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from coach.core.background import BackgroundTasks
from coach.core.errors import ConflictError, InvalidStateTransitionError
from coach.core.locks import KeyedLocks
from coach.core.observable import KeyedCells, Subscription
from coach.core.ports import ALLOW, ContentFilterPolicy, ContentItem, FilterDecision, NotificationSink
from coach.core.progress import (
    IDLE_SIGNALS,
    SessionStatus,
    StatusOrigin,
    UiSignals,
    milestone_times,
    remaining_time,
)
from coach.core.types import (
    FASTING_DURATIONS,
    Clock,
    EventKind,
    FastingSession,
    FastingType,
    NotificationEvent,
    PauseInterval,
    SessionState,
    utc_now,
)
from coach.policy.content_filter import severity_for_progress

logger = logging.getLogger(__name__)

# Attempts per command when the stored version moved underneath us
MAX_VERSION_ATTEMPTS = 2

Builder = Callable[[FastingSession, datetime], FastingSession]
Guard = Callable[[FastingSession, datetime], bool]


def _new_session_id() -> str:
    return uuid.uuid4().hex


def _has_open_session(status: SessionStatus) -> bool:
    return status.session is not None and status.session.is_open


class SessionStateMachine:
    """
    Owns every mutation of FastingSession documents.

    Args:
        sessions: SessionRepository (get_open / insert / replace / list_open / history)
        notifications: NotificationSink; pushes are fire-and-forget
        tasks: BackgroundTasks used for pushes and statistics recompute
        content_policy: policy consulted by ``screen_content`` while fasting
        on_session_finished: ``async (user_id)`` run in the background after end
        clock: returns the current aware UTC datetime
        tick_seconds: display refresh interval for watchers
    """

    def __init__(
        self,
        sessions,
        notifications: NotificationSink,
        tasks: BackgroundTasks,
        content_policy: Optional[ContentFilterPolicy] = None,
        on_session_finished: Optional[Callable[[str], Awaitable[Any]]] = None,
        clock: Clock = utc_now,
        tick_seconds: float = 30.0,
        id_factory: Callable[[], str] = _new_session_id,
    ):
        self.sessions = sessions
        self.notifications = notifications
        self.tasks = tasks
        self.content_policy = content_policy
        self.on_session_finished = on_session_finished
        self.tick_seconds = tick_seconds
        self._clock = clock
        self._id_factory = id_factory
        self._locks = KeyedLocks()
        # Statuses of finished sessions are kept only while someone watches
        self._statuses: KeyedCells[SessionStatus] = KeyedCells(retain=_has_open_session)

    # =========================================================================
    # COMMANDS
    # =========================================================================

    async def start(
        self,
        user_id: str,
        fasting_type: FastingType = FastingType.INTERMITTENT_16_8,
        target_duration: Optional[timedelta] = None,
        personal_goal: Optional[str] = None,
    ) -> SessionStatus:
        """
        Start a session.

        Raises:
            ConflictError: the user already has an Active or Paused session
        """
        fasting_type = FastingType(fasting_type)
        target = FASTING_DURATIONS[fasting_type] if target_duration is None else target_duration
        if target <= timedelta():
            raise ValueError("target_duration must be positive")

        async with self._locks.hold(user_id):
            existing = await self.sessions.get_open(user_id)
            if existing is not None:
                raise ConflictError(user_id, existing.id)

            now = self._clock()
            session = FastingSession(
                id=self._id_factory(),
                user_id=user_id,
                fasting_type=fasting_type,
                start_time=now,
                target_duration=target,
                state=SessionState.ACTIVE,
                personal_goal=personal_goal,
                version=1,
            )
            # The partial unique index rejects a second open session
            # written by another process between our read and this insert.
            if not await self.sessions.insert(session):
                raise ConflictError(user_id)
            status = self._apply(session, now)

        logger.info(
            f"⏱️ Fast started: user={user_id}, type={fasting_type.value}, "
            f"target={target.total_seconds() / 3600:.1f}h"
        )
        self._notify(EventKind.SESSION_STARTED, session, now, {
            "fasting_type": fasting_type.value,
            "target_seconds": target.total_seconds(),
            "milestones": milestone_times(now, target),
        })
        return status

    async def pause(self, user_id: str) -> SessionStatus:
        def build(current: FastingSession, now: datetime) -> FastingSession:
            return current.evolve(state=SessionState.PAUSED, paused_at=now)

        return await self._transition(user_id, "pause", (SessionState.ACTIVE,), build)

    async def resume(self, user_id: str) -> SessionStatus:
        def build(current: FastingSession, now: datetime) -> FastingSession:
            interval = PauseInterval(started_at=current.paused_at, ended_at=now)
            return current.evolve(
                state=SessionState.ACTIVE,
                paused_at=None,
                pause_intervals=current.pause_intervals + (interval,),
            )

        return await self._transition(user_id, "resume", (SessionState.PAUSED,), build)

    async def end(self, user_id: str, completed: bool) -> SessionStatus:
        """End the open session as Completed or Abandoned."""
        return await self._end(user_id, completed)

    async def complete_if_due(self, user_id: str) -> Optional[SessionStatus]:
        """Complete an Active session whose remaining time reached zero."""
        def due(current: FastingSession, now: datetime) -> bool:
            return remaining_time(current, now) <= timedelta()

        try:
            return await self._end(
                user_id, True, expected=(SessionState.ACTIVE,), guard=due
            )
        except InvalidStateTransitionError:
            return None

    async def complete_due_sessions(self) -> int:
        """Sweep all open sessions and auto-complete the ones that are due."""
        completed = 0
        now = self._clock()
        for session in await self.sessions.list_open():
            if session.state != SessionState.ACTIVE:
                continue
            if remaining_time(session, now) > timedelta():
                continue
            if await self.complete_if_due(session.user_id) is not None:
                completed += 1
        if completed:
            logger.info(f"✅ Auto-completed {completed} fasting sessions")
        return completed

    async def _end(
        self,
        user_id: str,
        completed: bool,
        expected: Tuple[SessionState, ...] = (SessionState.ACTIVE, SessionState.PAUSED),
        guard: Optional[Guard] = None,
    ) -> Optional[SessionStatus]:
        final_state = SessionState.COMPLETED if completed else SessionState.ABANDONED

        def build(current: FastingSession, now: datetime) -> FastingSession:
            intervals = current.pause_intervals
            if current.paused_at is not None:
                intervals = intervals + (PauseInterval(started_at=current.paused_at, ended_at=now),)
            return current.evolve(
                state=final_state,
                paused_at=None,
                pause_intervals=intervals,
                ended_at=now,
            )

        status = await self._transition(user_id, "end", expected, build, guard)
        if status is None:
            return None

        session = status.session
        kind = EventKind.SESSION_COMPLETED if completed else EventKind.SESSION_ABANDONED
        logger.info(
            f"🏁 Fast {final_state.value}: user={user_id}, "
            f"elapsed={status.elapsed.total_seconds() / 3600:.2f}h"
        )
        self._notify(kind, session, status.computed_at, {
            "elapsed_seconds": status.elapsed.total_seconds(),
            "progress": status.progress,
        })
        if self.on_session_finished is not None:
            self.tasks.spawn(
                self.on_session_finished(user_id), name=f"stats-recompute:{user_id}"
            )
        return status

    async def _transition(
        self,
        user_id: str,
        command: str,
        expected: Tuple[SessionState, ...],
        build: Builder,
        guard: Optional[Guard] = None,
    ) -> Optional[SessionStatus]:
        async with self._locks.hold(user_id):
            current = None
            for attempt in range(MAX_VERSION_ATTEMPTS):
                current = await self.sessions.get_open(user_id)
                state = current.state if current else SessionState.IDLE
                if current is None or state not in expected:
                    raise InvalidStateTransitionError(
                        command, state.value, tuple(s.value for s in expected)
                    )

                now = self._clock()
                if guard is not None and not guard(current, now):
                    return None

                updated = build(current, now)
                if await self.sessions.replace(updated, expected_version=current.version):
                    return self._apply(updated, now)

                logger.warning(
                    f"Version conflict on {command} for user={user_id} "
                    f"(v{current.version}), attempt {attempt + 1}"
                )
            raise ConflictError(user_id, current.id if current else None)

    def _apply(self, session: FastingSession, now: datetime) -> SessionStatus:
        status = SessionStatus.compute(session.user_id, session, now, StatusOrigin.COMMAND)
        self._statuses.publish(session.user_id, status)
        return status

    def _notify(
        self,
        kind: EventKind,
        session: FastingSession,
        now: datetime,
        payload: Dict[str, Any],
    ) -> None:
        event = NotificationEvent(
            kind=kind,
            user_id=session.user_id,
            payload={"session_id": session.id, **payload},
            created_at=now,
        )
        self.tasks.spawn(self.notifications.push(event), name=f"notify:{kind.value}")

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def status(self, user_id: str) -> SessionStatus:
        """Current status read from the store (Idle when nothing is open)."""
        session = await self.sessions.get_open(user_id)
        return SessionStatus.compute(user_id, session, self._clock(), StatusOrigin.LOAD)

    async def history(self, user_id: str, limit: int = 20) -> List[FastingSession]:
        return await self.sessions.history(user_id, limit=limit)

    def ui_signals(self, user_id: str) -> UiSignals:
        status = self._statuses.get(user_id)
        return status.signals if status else IDLE_SIGNALS

    def tick(self, user_id: str) -> Optional[SessionStatus]:
        """Display-only recompute from the last known session; never persists."""
        status = self._statuses.get(user_id)
        if status is None or status.session is None or not status.session.is_open:
            return None
        return SessionStatus.compute(user_id, status.session, self._clock(), StatusOrigin.TICK)

    async def screen_content(
        self,
        user_id: str,
        item: ContentItem,
        severity: Optional[Any] = None,
    ) -> FilterDecision:
        if self.content_policy is None:
            return ALLOW
        status = await self.status(user_id)
        if not status.signals.content_filter_enabled:
            return ALLOW
        severity = severity or severity_for_progress(status.progress)
        return self.content_policy.evaluate(item, status.state, severity)

    async def watch(self, user_id: str) -> "SessionWatch":
        """Subscribe to a user's status; the caller must cancel the watch."""
        status = await self.status(user_id)
        subscription = self._statuses.subscribe(user_id, replay=False)
        self._statuses.publish(user_id, status)
        return SessionWatch(self, user_id, subscription, self.tick_seconds)


class SessionWatch:
    """
    A subscription to one user's session status plus its display ticker.

    Usage:
        async with await machine.watch(user_id) as watch:
            async for status in watch:
                render(status)
    """

    def __init__(
        self,
        machine: SessionStateMachine,
        user_id: str,
        subscription: Subscription[SessionStatus],
        tick_seconds: float,
    ):
        self.user_id = user_id
        self.subscription = subscription
        self._machine = machine
        self._tick_seconds = tick_seconds
        self._ticker = asyncio.create_task(self._tick_loop(), name=f"tick:{user_id}")

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self._tick_seconds)
            status = self._machine.tick(self.user_id)
            if status is not None:
                self.subscription.offer(status)

    @property
    def active(self) -> bool:
        return not self.subscription.closed and not self._ticker.done()

    async def next(self) -> SessionStatus:
        return await self.subscription.get()

    def cancel(self) -> None:
        self._ticker.cancel()
        self.subscription.cancel()

    async def __aenter__(self) -> "SessionWatch":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.cancel()

    def __aiter__(self):
        return self.subscription.__aiter__()
