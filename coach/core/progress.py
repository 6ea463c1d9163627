"""
Session Progress
================

Derived, never-stored values for a fasting session:

    elapsed   = now - start - sum(paused intervals)
    remaining = max(0, target - elapsed)
    progress  = clamp(elapsed / target, 0, 1)

plus the quartile theme tier and its motivational text, looked up from a
table keyed by tier.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from coach.core.types import FastingSession, SessionState

# Navigation surfaces hidden while a session is open
FASTING_HIDDEN_NAVIGATION: FrozenSet[str] = frozenset({"food_discovery", "restaurant_finder"})

# Fractions of the target at which a "milestone" is reached
MILESTONE_FRACTIONS = (0.25, 0.5, 0.75, 0.9)


class ThemeTier(str, Enum):
    EARLY = "early"
    BUILDING = "building"
    STRONG = "strong"
    FINAL = "final"


@dataclass(frozen=True)
class ThemeSpec:
    color: str
    icon: str
    message: str


THEME_TABLE: Dict[ThemeTier, ThemeSpec] = {
    ThemeTier.EARLY: ThemeSpec(
        color="#E53935", icon="hourglass_top",
        message="Great start! Your body is adjusting.",
    ),
    ThemeTier.BUILDING: ThemeSpec(
        color="#FB8C00", icon="local_fire_department",
        message="You're building momentum. Keep going!",
    ),
    ThemeTier.STRONG: ThemeSpec(
        color="#43A047", icon="trending_up",
        message="Over halfway there. You're doing great!",
    ),
    ThemeTier.FINAL: ThemeSpec(
        color="#1E88E5", icon="emoji_events",
        message="Final stretch! The finish line is in sight.",
    ),
}

IDLE_THEME = ThemeSpec(color="#9E9E9E", icon="timer", message="Ready when you are.")

FINISHED_MESSAGES: Dict[SessionState, str] = {
    SessionState.COMPLETED: "Fast complete. Well done!",
    SessionState.ABANDONED: "Every attempt counts. Try again when you're ready.",
}


def theme_tier(progress: float) -> ThemeTier:
    if progress < 0.25:
        return ThemeTier.EARLY
    if progress < 0.5:
        return ThemeTier.BUILDING
    if progress < 0.75:
        return ThemeTier.STRONG
    return ThemeTier.FINAL


def paused_duration(session: FastingSession, now: datetime) -> timedelta:
    """Total paused time, counting an open pause up to ``now``."""
    total = sum((p.duration for p in session.pause_intervals), timedelta())
    if session.paused_at is not None:
        total += max(timedelta(), now - session.paused_at)
    return total


def elapsed_time(session: FastingSession, now: datetime) -> timedelta:
    end = session.ended_at or now
    return max(timedelta(), end - session.start_time - paused_duration(session, end))


def remaining_time(session: FastingSession, now: datetime) -> timedelta:
    return max(timedelta(), session.target_duration - elapsed_time(session, now))


def progress_fraction(session: FastingSession, now: datetime) -> float:
    target = session.target_duration.total_seconds()
    if target <= 0:
        return 1.0
    return min(1.0, max(0.0, elapsed_time(session, now).total_seconds() / target))


def milestone_times(start: datetime, target: timedelta) -> Dict[str, datetime]:
    """Wall-clock times for each milestone, assuming no pauses."""
    return {f"{int(f * 100)}%": start + target * f for f in MILESTONE_FRACTIONS}


class StatusOrigin(str, Enum):
    COMMAND = "command"
    LOAD = "load"
    TICK = "tick"


@dataclass(frozen=True)
class UiSignals:
    content_filter_enabled: bool = False
    hidden_navigation: FrozenSet[str] = field(default_factory=frozenset)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content_filter_enabled": self.content_filter_enabled,
            "hidden_navigation": sorted(self.hidden_navigation),
        }


FASTING_SIGNALS = UiSignals(
    content_filter_enabled=True, hidden_navigation=FASTING_HIDDEN_NAVIGATION
)
IDLE_SIGNALS = UiSignals()


@dataclass(frozen=True)
class SessionStatus:
    """What observers of a user's fasting state see."""
    user_id: str
    session: Optional[FastingSession]
    computed_at: datetime
    origin: StatusOrigin
    elapsed: timedelta = timedelta()
    remaining: timedelta = timedelta()
    progress: float = 0.0
    theme: Optional[ThemeTier] = None
    message: str = IDLE_THEME.message
    color: str = IDLE_THEME.color
    signals: UiSignals = IDLE_SIGNALS

    @property
    def state(self) -> SessionState:
        return self.session.state if self.session else SessionState.IDLE

    @classmethod
    def compute(
        cls,
        user_id: str,
        session: Optional[FastingSession],
        now: datetime,
        origin: StatusOrigin = StatusOrigin.COMMAND,
    ) -> "SessionStatus":
        if session is None:
            return cls(user_id=user_id, session=None, computed_at=now, origin=origin)

        progress = progress_fraction(session, now)
        tier = theme_tier(progress)
        spec = THEME_TABLE[tier]
        message = FINISHED_MESSAGES.get(session.state, spec.message)
        return cls(
            user_id=user_id,
            session=session,
            computed_at=now,
            origin=origin,
            elapsed=elapsed_time(session, now),
            remaining=remaining_time(session, now),
            progress=progress,
            theme=tier,
            message=message,
            color=spec.color,
            signals=FASTING_SIGNALS if session.is_open else IDLE_SIGNALS,
        )

    def to_dict(self) -> Dict[str, Any]:
        session = self.session
        return {
            "user_id": self.user_id,
            "state": self.state.value,
            "session_id": session.id if session else None,
            "fasting_type": session.fasting_type.value if session else None,
            "start_time": session.start_time if session else None,
            "target_seconds": session.target_duration.total_seconds() if session else None,
            "pause_count": len(session.pause_intervals) if session else 0,
            "elapsed_seconds": self.elapsed.total_seconds(),
            "remaining_seconds": self.remaining.total_seconds(),
            "progress": round(self.progress, 4),
            "theme": self.theme.value if self.theme else None,
            "color": self.color,
            "message": self.message,
            "origin": self.origin.value,
            "computed_at": self.computed_at,
            "signals": self.signals.to_dict(),
        }
