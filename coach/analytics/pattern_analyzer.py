"""
Pattern Analyzer
================

Pure functions from a bounded window of activity history to a
BehaviorSnapshot. No I/O and no clock reads: ``now`` is an argument, so
the same inputs always give the same snapshot.

Conventions:
- Hours of day and calendar days are read in the user's timezone
  (UTC when the profile has none).
- Timing consistency = max(0, 1 - stddev / mean) of fractional
  hour-of-day (population stddev). Fewer than two samples -> None.
- Per-day frequency = events / distinct active days (floored at 1).
- Weekly frequency = events / days spanned by the window (floored at 1) * 7.
  The exercise score normalizes the weekly figure against
  EXERCISE_TARGET_PER_WEEK.
- Nutrition trends are the raw per-meal series, oldest first.
- overallHealthScore = weighted mean over the sub-scores that exist,
  renormalized by the weights actually used.
"""
import statistics
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from typing import Dict, Iterable, List, Optional, Sequence

from coach.core.progress import elapsed_time
from coach.core.types import (
    BehaviorSnapshot,
    ExercisePatterns,
    ExerciseRecord,
    FastingPatterns,
    FastingSession,
    MealPatterns,
    MealRecord,
    NutritionTrends,
    SessionState,
    SleepPatterns,
    SleepRecord,
    TrendPoint,
)

# Weekly workouts counted as a full score
EXERCISE_TARGET_PER_WEEK = 5.0

SCORE_WEIGHTS: Dict[str, float] = {
    "meal_consistency": 0.25,
    "fasting_success": 0.25,
    "exercise_frequency": 0.25,
    "sleep_quality": 0.25,
}


@dataclass(frozen=True)
class AnalysisWindow:
    """How much history feeds one analysis."""
    meal_limit: int = 100
    fasting_limit: int = 50
    exercise_limit: int = 100
    sleep_limit: int = 60
    days: Optional[int] = 90

    def since(self, now: datetime) -> Optional[datetime]:
        return now - timedelta(days=self.days) if self.days else None


# =============================================================================
# HELPERS
# =============================================================================

def to_local(moment: datetime, tz: Optional[tzinfo]) -> datetime:
    return moment.astimezone(tz) if tz is not None else moment


def hour_of_day(moment: datetime) -> float:
    """Fractional hour of ``moment`` in its own timezone."""
    return moment.hour + moment.minute / 60 + moment.second / 3600


def consistency_score(hours: Sequence[float]) -> Optional[float]:
    if len(hours) < 2:
        return None
    mean = statistics.fmean(hours)
    std = statistics.pstdev(hours)
    if mean == 0:
        return 1.0 if std == 0 else 0.0
    return max(0.0, 1.0 - std / mean)


def active_days(moments: Iterable[datetime]) -> int:
    return max(1, len({m.date() for m in moments}))


def span_days(moments: Sequence[datetime], now: datetime) -> float:
    if not moments:
        return 1.0
    return max(1.0, (now - min(moments)).total_seconds() / 86400)


def _mean(values: Sequence[float]) -> Optional[float]:
    return statistics.fmean(values) if values else None


def bound_window(records: Sequence, limit: int, since: Optional[datetime], key) -> List:
    """Most recent ``limit`` records at or after ``since``, oldest first."""
    kept = [r for r in records if since is None or key(r) >= since]
    kept.sort(key=key)
    return kept[-limit:] if limit else kept


def effective_meals(meals: Iterable[MealRecord]) -> List[MealRecord]:
    """Drop meals that a later correction superseded."""
    meals = list(meals)
    superseded = {m.supersedes for m in meals if m.supersedes}
    return [m for m in meals if m.id not in superseded]


# =============================================================================
# PER-CATEGORY ANALYSIS
# =============================================================================

def analyze_meals(
    meals: Sequence[MealRecord], tz: Optional[tzinfo] = None
) -> Optional[MealPatterns]:
    if not meals:
        return None
    ordered = sorted(meals, key=lambda m: m.timestamp)
    local = [to_local(m.timestamp, tz) for m in ordered]
    hours = [hour_of_day(t) for t in local]

    distribution: Dict[str, int] = {}
    for meal in ordered:
        distribution[meal.meal_type.value] = distribution.get(meal.meal_type.value, 0) + 1

    return MealPatterns(
        total_meals=len(ordered),
        meals_per_day=len(ordered) / active_days(local),
        average_calories=_mean([m.calories for m in ordered]),
        average_meal_hour=_mean(hours),
        timing_consistency=consistency_score(hours),
        meal_type_distribution=distribution,
        nutrition_trends=NutritionTrends(
            calories=tuple(TrendPoint(m.timestamp, m.calories) for m in ordered),
            protein=tuple(TrendPoint(m.timestamp, m.protein_g) for m in ordered),
            carbs=tuple(TrendPoint(m.timestamp, m.carbs_g) for m in ordered),
            fat=tuple(TrendPoint(m.timestamp, m.fat_g) for m in ordered),
        ),
        last_meal_at=ordered[-1].timestamp,
    )


def completion_streaks(sessions: Sequence[FastingSession]) -> tuple:
    """(current, longest) runs of Completed sessions, given oldest first."""
    current = longest = 0
    for session in sessions:
        if session.state == SessionState.COMPLETED:
            current += 1
            longest = max(longest, current)
        else:
            current = 0
    return current, longest


def analyze_fasting(
    sessions: Sequence[FastingSession], now: datetime, tz: Optional[tzinfo] = None
) -> Optional[FastingPatterns]:
    finished = sorted(
        (s for s in sessions if s.state.is_finished), key=lambda s: s.start_time
    )
    if not finished:
        return None

    completed = [s for s in finished if s.state == SessionState.COMPLETED]
    starts = [s.start_time for s in finished]
    local_starts = [to_local(t, tz) for t in starts]
    start_hours = [hour_of_day(t) for t in local_starts]
    durations = [elapsed_time(s, now).total_seconds() / 3600 for s in finished]
    current_streak, longest_streak = completion_streaks(finished)

    return FastingPatterns(
        total_sessions=len(finished),
        completed_sessions=len(completed),
        success_rate=len(completed) / len(finished),
        average_duration_hours=_mean(durations),
        sessions_per_active_day=len(finished) / active_days(local_starts),
        sessions_per_week=len(finished) / span_days(starts, now) * 7,
        average_start_hour=_mean(start_hours),
        start_consistency=consistency_score(start_hours),
        current_streak=current_streak,
        longest_streak=longest_streak,
        last_session_at=starts[-1],
    )


def analyze_exercise(
    workouts: Sequence[ExerciseRecord], now: datetime, tz: Optional[tzinfo] = None
) -> Optional[ExercisePatterns]:
    if not workouts:
        return None
    moments = [w.timestamp for w in workouts]
    local = [to_local(m, tz) for m in moments]
    per_week = len(workouts) / span_days(moments, now) * 7
    return ExercisePatterns(
        total_workouts=len(workouts),
        workouts_per_active_day=len(workouts) / active_days(local),
        workouts_per_week=per_week,
        normalized_frequency=min(1.0, per_week / EXERCISE_TARGET_PER_WEEK),
        average_duration_minutes=_mean([w.duration_minutes for w in workouts]),
        timing_consistency=consistency_score([hour_of_day(t) for t in local]),
    )


def analyze_sleep(
    nights: Sequence[SleepRecord], tz: Optional[tzinfo] = None
) -> Optional[SleepPatterns]:
    if not nights:
        return None
    return SleepPatterns(
        nights=len(nights),
        average_hours=_mean([n.duration_hours for n in nights]),
        average_quality=_mean([min(1.0, max(0.0, n.quality)) for n in nights]),
        bedtime_consistency=consistency_score(
            [hour_of_day(to_local(n.timestamp, tz)) for n in nights]
        ),
    )


def overall_health_score(components: Dict[str, float]) -> Optional[float]:
    used = {k: v for k, v in components.items() if v is not None and k in SCORE_WEIGHTS}
    if not used:
        return None
    total_weight = sum(SCORE_WEIGHTS[k] for k in used)
    return sum(SCORE_WEIGHTS[k] * v for k, v in used.items()) / total_weight


# =============================================================================
# ENTRY POINT
# =============================================================================

def analyze(
    user_id: str,
    now: datetime,
    meals: Sequence[MealRecord] = (),
    sessions: Sequence[FastingSession] = (),
    workouts: Sequence[ExerciseRecord] = (),
    nights: Sequence[SleepRecord] = (),
    window: AnalysisWindow = AnalysisWindow(),
    tz: Optional[tzinfo] = None,
) -> BehaviorSnapshot:
    """Compute a BehaviorSnapshot from raw history, reading local time in ``tz``."""
    since = window.since(now)
    meals = bound_window(
        effective_meals(meals), window.meal_limit, since, lambda m: m.timestamp
    )
    sessions = bound_window(sessions, window.fasting_limit, since, lambda s: s.start_time)
    workouts = bound_window(workouts, window.exercise_limit, since, lambda w: w.timestamp)
    nights = bound_window(nights, window.sleep_limit, since, lambda n: n.timestamp)

    meal_patterns = analyze_meals(meals, tz)
    fasting_patterns = analyze_fasting(sessions, now, tz)
    exercise_patterns = analyze_exercise(workouts, now, tz)
    sleep_patterns = analyze_sleep(nights, tz)

    components: Dict[str, float] = {}
    if meal_patterns and meal_patterns.timing_consistency is not None:
        components["meal_consistency"] = meal_patterns.timing_consistency
    if fasting_patterns and fasting_patterns.success_rate is not None:
        components["fasting_success"] = fasting_patterns.success_rate
    if exercise_patterns:
        components["exercise_frequency"] = exercise_patterns.normalized_frequency
    if sleep_patterns and sleep_patterns.average_quality is not None:
        components["sleep_quality"] = sleep_patterns.average_quality

    return BehaviorSnapshot(
        user_id=user_id,
        computed_at=now,
        meal_patterns=meal_patterns,
        fasting_patterns=fasting_patterns,
        exercise_patterns=exercise_patterns,
        sleep_patterns=sleep_patterns,
        overall_health_score=overall_health_score(components),
        score_components=components,
    )
