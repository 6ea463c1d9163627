"""
Coach Core Types
================

Tagged records for every entity the coach reads or writes.

Each record round-trips through ``to_dict()`` / ``from_dict()`` so the
storage layer only ever sees plain BSON-friendly dicts. Durations are
stored as float seconds, datetimes as timezone-aware UTC values.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes coming back from storage as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# FASTING SESSIONS
# =============================================================================

class FastingType(str, Enum):
    INTERMITTENT_16_8 = "16_8"
    INTERMITTENT_18_6 = "18_6"
    INTERMITTENT_20_4 = "20_4"
    OMAD = "omad"
    ALTERNATE_DAY = "alternate_day"
    EXTENDED_24 = "extended_24"
    EXTENDED_36 = "extended_36"
    EXTENDED_48 = "extended_48"
    CUSTOM = "custom"


FASTING_DURATIONS: Dict[FastingType, timedelta] = {
    FastingType.INTERMITTENT_16_8: timedelta(hours=16),
    FastingType.INTERMITTENT_18_6: timedelta(hours=18),
    FastingType.INTERMITTENT_20_4: timedelta(hours=20),
    FastingType.OMAD: timedelta(hours=23),
    FastingType.ALTERNATE_DAY: timedelta(hours=24),
    FastingType.EXTENDED_24: timedelta(hours=24),
    FastingType.EXTENDED_36: timedelta(hours=36),
    FastingType.EXTENDED_48: timedelta(hours=48),
    FastingType.CUSTOM: timedelta(hours=16),
}


class SessionState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABANDONED = "abandoned"

    @property
    def is_open(self) -> bool:
        return self in (SessionState.ACTIVE, SessionState.PAUSED)

    @property
    def is_finished(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.ABANDONED)


@dataclass(frozen=True)
class PauseInterval:
    started_at: datetime
    ended_at: datetime

    @property
    def duration(self) -> timedelta:
        return self.ended_at - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        return {"started_at": self.started_at, "ended_at": self.ended_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PauseInterval":
        return cls(
            started_at=ensure_utc(data["started_at"]),
            ended_at=ensure_utc(data["ended_at"]),
        )


@dataclass(frozen=True)
class FastingSession:
    """
    One fasting session. Immutable: every transition produces a new
    instance via ``dataclasses.replace`` with ``version`` bumped.

    ``paused_at`` is set only while the session is Paused; the closed
    interval is appended to ``pause_intervals`` on resume (or on end).
    """
    id: str
    user_id: str
    fasting_type: FastingType
    start_time: datetime
    target_duration: timedelta
    state: SessionState = SessionState.ACTIVE
    pause_intervals: Tuple[PauseInterval, ...] = ()
    paused_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    personal_goal: Optional[str] = None
    version: int = 0

    @property
    def is_open(self) -> bool:
        return self.state.is_open

    def evolve(self, **changes: Any) -> "FastingSession":
        """Return a copy with ``changes`` applied and the version bumped."""
        return replace(self, version=self.version + 1, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "user_id": self.user_id,
            "fasting_type": self.fasting_type.value,
            "start_time": self.start_time,
            "target_seconds": self.target_duration.total_seconds(),
            "state": self.state.value,
            "is_open": self.is_open,
            "pause_intervals": [p.to_dict() for p in self.pause_intervals],
            "paused_at": self.paused_at,
            "ended_at": self.ended_at,
            "personal_goal": self.personal_goal,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FastingSession":
        return cls(
            id=data["_id"],
            user_id=data["user_id"],
            fasting_type=FastingType(data["fasting_type"]),
            start_time=ensure_utc(data["start_time"]),
            target_duration=timedelta(seconds=data["target_seconds"]),
            state=SessionState(data["state"]),
            pause_intervals=tuple(
                PauseInterval.from_dict(p) for p in data.get("pause_intervals", [])
            ),
            paused_at=ensure_utc(data.get("paused_at")),
            ended_at=ensure_utc(data.get("ended_at")),
            personal_goal=data.get("personal_goal"),
            version=data.get("version", 0),
        )


# =============================================================================
# ACTIVITY LOG RECORDS
# =============================================================================

class MealType(str, Enum):
    BREAKFAST = "breakfast"
    LUNCH = "lunch"
    DINNER = "dinner"
    SNACK = "snack"


class ActivityKind(str, Enum):
    MEAL = "meal"
    EXERCISE = "exercise"
    SLEEP = "sleep"


@dataclass(frozen=True)
class MealRecord:
    """
    A logged meal. Corrections are written as a new record naming the
    record they replace in ``supersedes``; nothing is edited in place.
    """
    id: str
    user_id: str
    timestamp: datetime
    calories: float
    protein_g: float = 0.0
    carbs_g: float = 0.0
    fat_g: float = 0.0
    meal_type: MealType = MealType.SNACK
    supersedes: Optional[str] = None

    kind = ActivityKind.MEAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "kind": self.kind.value,
            "user_id": self.user_id,
            "timestamp": self.timestamp,
            "calories": self.calories,
            "protein_g": self.protein_g,
            "carbs_g": self.carbs_g,
            "fat_g": self.fat_g,
            "meal_type": self.meal_type.value,
            "supersedes": self.supersedes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MealRecord":
        return cls(
            id=data["_id"],
            user_id=data["user_id"],
            timestamp=ensure_utc(data["timestamp"]),
            calories=float(data.get("calories", 0.0)),
            protein_g=float(data.get("protein_g", 0.0)),
            carbs_g=float(data.get("carbs_g", 0.0)),
            fat_g=float(data.get("fat_g", 0.0)),
            meal_type=MealType(data.get("meal_type", MealType.SNACK.value)),
            supersedes=data.get("supersedes"),
        )


@dataclass(frozen=True)
class ExerciseRecord:
    id: str
    user_id: str
    timestamp: datetime
    duration_minutes: float
    activity: str = "general"

    kind = ActivityKind.EXERCISE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "kind": self.kind.value,
            "user_id": self.user_id,
            "timestamp": self.timestamp,
            "duration_minutes": self.duration_minutes,
            "activity": self.activity,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExerciseRecord":
        return cls(
            id=data["_id"],
            user_id=data["user_id"],
            timestamp=ensure_utc(data["timestamp"]),
            duration_minutes=float(data.get("duration_minutes", 0.0)),
            activity=data.get("activity", "general"),
        )


@dataclass(frozen=True)
class SleepRecord:
    """A night of sleep; ``timestamp`` is bedtime, ``quality`` is 0-1."""
    id: str
    user_id: str
    timestamp: datetime
    duration_hours: float
    quality: float

    kind = ActivityKind.SLEEP

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "kind": self.kind.value,
            "user_id": self.user_id,
            "timestamp": self.timestamp,
            "duration_hours": self.duration_hours,
            "quality": self.quality,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SleepRecord":
        return cls(
            id=data["_id"],
            user_id=data["user_id"],
            timestamp=ensure_utc(data["timestamp"]),
            duration_hours=float(data.get("duration_hours", 0.0)),
            quality=float(data.get("quality", 0.0)),
        )


_RECORD_TYPES = {
    ActivityKind.MEAL: MealRecord,
    ActivityKind.EXERCISE: ExerciseRecord,
    ActivityKind.SLEEP: SleepRecord,
}


def activity_from_dict(data: Dict[str, Any]):
    """Decode any activity-log document by its ``kind`` tag."""
    return _RECORD_TYPES[ActivityKind(data["kind"])].from_dict(data)


# =============================================================================
# HEALTH PROFILE
# =============================================================================

class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


class ActivityLevel(str, Enum):
    SEDENTARY = "sedentary"
    LIGHTLY_ACTIVE = "lightly_active"
    MODERATELY_ACTIVE = "moderately_active"
    VERY_ACTIVE = "very_active"
    EXTREMELY_ACTIVE = "extremely_active"


ACTIVITY_MULTIPLIERS: Dict[ActivityLevel, float] = {
    ActivityLevel.SEDENTARY: 1.2,
    ActivityLevel.LIGHTLY_ACTIVE: 1.375,
    ActivityLevel.MODERATELY_ACTIVE: 1.55,
    ActivityLevel.VERY_ACTIVE: 1.725,
    ActivityLevel.EXTREMELY_ACTIVE: 1.9,
}


class HealthGoal(str, Enum):
    WEIGHT_LOSS = "weight_loss"
    FAT_LOSS = "fat_loss"
    MUSCLE_GAIN = "muscle_gain"
    MAINTENANCE = "maintenance"
    BETTER_SLEEP = "better_sleep"
    MORE_ENERGY = "more_energy"
    GENERAL_HEALTH = "general_health"


class HealthCondition(str, Enum):
    NONE = "none"
    DIABETES = "diabetes"
    HYPERTENSION = "hypertension"
    HEART_DISEASE = "heart_disease"
    HIGH_CHOLESTEROL = "high_cholesterol"
    THYROID = "thyroid"
    PCOS = "pcos"
    OTHER = "other"


@dataclass
class HealthProfile:
    user_id: str
    age: Optional[int] = None
    gender: Optional[Gender] = None
    height_cm: Optional[float] = None
    weight_kg: Optional[float] = None
    target_weight_kg: Optional[float] = None
    activity_level: ActivityLevel = ActivityLevel.SEDENTARY
    goals: List[HealthGoal] = field(default_factory=list)
    dietary_preferences: List[str] = field(default_factory=list)
    health_conditions: List[HealthCondition] = field(default_factory=list)
    allergies: List[str] = field(default_factory=list)
    medications: List[str] = field(default_factory=list)
    time_zone: Optional[str] = None
    receive_advice: bool = True
    advice_feedback: Dict[str, int] = field(default_factory=dict)
    dismissed_advice_types: List[str] = field(default_factory=list)
    personalized_insights: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def bmi(self) -> Optional[float]:
        if not self.height_cm or not self.weight_kg:
            return None
        height_m = self.height_cm / 100
        return round(self.weight_kg / (height_m * height_m), 1)

    @property
    def bmr(self) -> Optional[float]:
        """Basal metabolic rate (Mifflin-St Jeor)."""
        if not (self.height_cm and self.weight_kg and self.age):
            return None
        base = 10 * self.weight_kg + 6.25 * self.height_cm - 5 * self.age
        return base + 5 if self.gender == Gender.MALE else base - 161

    @property
    def tdee(self) -> Optional[float]:
        bmr = self.bmr
        if bmr is None:
            return None
        return round(bmr * ACTIVITY_MULTIPLIERS[self.activity_level])

    @property
    def tzinfo(self) -> Optional[ZoneInfo]:
        """The profile's IANA timezone, or None when unset or unknown."""
        if not self.time_zone:
            return None
        try:
            return ZoneInfo(self.time_zone)
        except (ZoneInfoNotFoundError, ValueError):
            return None

    @property
    def chronic_conditions(self) -> List[HealthCondition]:
        return [c for c in self.health_conditions if c != HealthCondition.NONE]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.user_id,
            "user_id": self.user_id,
            "age": self.age,
            "gender": self.gender.value if self.gender else None,
            "height_cm": self.height_cm,
            "weight_kg": self.weight_kg,
            "target_weight_kg": self.target_weight_kg,
            "activity_level": self.activity_level.value,
            "goals": [g.value for g in self.goals],
            "dietary_preferences": list(self.dietary_preferences),
            "health_conditions": [c.value for c in self.health_conditions],
            "allergies": list(self.allergies),
            "medications": list(self.medications),
            "time_zone": self.time_zone,
            "receive_advice": self.receive_advice,
            "advice_feedback": dict(self.advice_feedback),
            "dismissed_advice_types": list(self.dismissed_advice_types),
            "personalized_insights": dict(self.personalized_insights),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HealthProfile":
        gender = data.get("gender")
        return cls(
            user_id=data.get("user_id") or data["_id"],
            age=data.get("age"),
            gender=Gender(gender) if gender else None,
            height_cm=data.get("height_cm"),
            weight_kg=data.get("weight_kg"),
            target_weight_kg=data.get("target_weight_kg"),
            activity_level=ActivityLevel(
                data.get("activity_level", ActivityLevel.SEDENTARY.value)
            ),
            goals=[HealthGoal(g) for g in data.get("goals", [])],
            dietary_preferences=list(data.get("dietary_preferences", [])),
            health_conditions=[
                HealthCondition(c) for c in data.get("health_conditions", [])
            ],
            allergies=list(data.get("allergies", [])),
            medications=list(data.get("medications", [])),
            time_zone=data.get("time_zone"),
            receive_advice=data.get("receive_advice", True),
            advice_feedback=dict(data.get("advice_feedback", {})),
            dismissed_advice_types=list(data.get("dismissed_advice_types", [])),
            personalized_insights=dict(data.get("personalized_insights", {})),
            created_at=ensure_utc(data.get("created_at")) or utc_now(),
            updated_at=ensure_utc(data.get("updated_at")) or utc_now(),
        )


# =============================================================================
# BEHAVIOR SNAPSHOT
# =============================================================================

@dataclass(frozen=True)
class TrendPoint:
    timestamp: datetime
    value: float

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp, "value": self.value}


def _trend(items: List[Dict[str, Any]]) -> Tuple[TrendPoint, ...]:
    return tuple(TrendPoint(ensure_utc(i["timestamp"]), i["value"]) for i in items)


@dataclass(frozen=True)
class NutritionTrends:
    calories: Tuple[TrendPoint, ...] = ()
    protein: Tuple[TrendPoint, ...] = ()
    carbs: Tuple[TrendPoint, ...] = ()
    fat: Tuple[TrendPoint, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "calories": [p.to_dict() for p in self.calories],
            "protein": [p.to_dict() for p in self.protein],
            "carbs": [p.to_dict() for p in self.carbs],
            "fat": [p.to_dict() for p in self.fat],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NutritionTrends":
        return cls(
            calories=_trend(data.get("calories", [])),
            protein=_trend(data.get("protein", [])),
            carbs=_trend(data.get("carbs", [])),
            fat=_trend(data.get("fat", [])),
        )


@dataclass(frozen=True)
class MealPatterns:
    total_meals: int
    meals_per_day: float
    average_calories: Optional[float]
    average_meal_hour: Optional[float]
    timing_consistency: Optional[float]
    meal_type_distribution: Dict[str, int]
    nutrition_trends: NutritionTrends
    last_meal_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_meals": self.total_meals,
            "meals_per_day": self.meals_per_day,
            "average_calories": self.average_calories,
            "average_meal_hour": self.average_meal_hour,
            "timing_consistency": self.timing_consistency,
            "meal_type_distribution": dict(self.meal_type_distribution),
            "nutrition_trends": self.nutrition_trends.to_dict(),
            "last_meal_at": self.last_meal_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MealPatterns":
        return cls(
            total_meals=data["total_meals"],
            meals_per_day=data["meals_per_day"],
            average_calories=data.get("average_calories"),
            average_meal_hour=data.get("average_meal_hour"),
            timing_consistency=data.get("timing_consistency"),
            meal_type_distribution=dict(data.get("meal_type_distribution", {})),
            nutrition_trends=NutritionTrends.from_dict(data.get("nutrition_trends", {})),
            last_meal_at=ensure_utc(data.get("last_meal_at")),
        )


@dataclass(frozen=True)
class FastingPatterns:
    total_sessions: int
    completed_sessions: int
    success_rate: Optional[float]
    average_duration_hours: Optional[float]
    sessions_per_week: float
    average_start_hour: Optional[float]
    start_consistency: Optional[float]
    current_streak: int
    longest_streak: int
    last_session_at: Optional[datetime]
    sessions_per_active_day: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_sessions": self.total_sessions,
            "completed_sessions": self.completed_sessions,
            "success_rate": self.success_rate,
            "average_duration_hours": self.average_duration_hours,
            "sessions_per_active_day": self.sessions_per_active_day,
            "sessions_per_week": self.sessions_per_week,
            "average_start_hour": self.average_start_hour,
            "start_consistency": self.start_consistency,
            "current_streak": self.current_streak,
            "longest_streak": self.longest_streak,
            "last_session_at": self.last_session_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FastingPatterns":
        return cls(
            total_sessions=data["total_sessions"],
            completed_sessions=data["completed_sessions"],
            success_rate=data.get("success_rate"),
            average_duration_hours=data.get("average_duration_hours"),
            sessions_per_active_day=data.get("sessions_per_active_day", 0.0),
            sessions_per_week=data["sessions_per_week"],
            average_start_hour=data.get("average_start_hour"),
            start_consistency=data.get("start_consistency"),
            current_streak=data.get("current_streak", 0),
            longest_streak=data.get("longest_streak", 0),
            last_session_at=ensure_utc(data.get("last_session_at")),
        )


@dataclass(frozen=True)
class ExercisePatterns:
    total_workouts: int
    workouts_per_week: float
    normalized_frequency: float
    average_duration_minutes: Optional[float]
    timing_consistency: Optional[float]
    workouts_per_active_day: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_workouts": self.total_workouts,
            "workouts_per_active_day": self.workouts_per_active_day,
            "workouts_per_week": self.workouts_per_week,
            "normalized_frequency": self.normalized_frequency,
            "average_duration_minutes": self.average_duration_minutes,
            "timing_consistency": self.timing_consistency,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExercisePatterns":
        return cls(
            workouts_per_active_day=data.get("workouts_per_active_day", 0.0),
            **{k: data.get(k) for k in (
                "total_workouts", "workouts_per_week", "normalized_frequency",
                "average_duration_minutes", "timing_consistency",
            )},
        )


@dataclass(frozen=True)
class SleepPatterns:
    nights: int
    average_hours: Optional[float]
    average_quality: Optional[float]
    bedtime_consistency: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nights": self.nights,
            "average_hours": self.average_hours,
            "average_quality": self.average_quality,
            "bedtime_consistency": self.bedtime_consistency,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SleepPatterns":
        return cls(**{k: data.get(k) for k in (
            "nights", "average_hours", "average_quality", "bedtime_consistency",
        )})


@dataclass(frozen=True)
class BehaviorSnapshot:
    """
    Point-in-time statistical summary of a user's logs.

    A cache: always recomputed whole, never patched. A pattern group is
    None when the window holds no events of that kind.
    """
    user_id: str
    computed_at: datetime
    meal_patterns: Optional[MealPatterns] = None
    fasting_patterns: Optional[FastingPatterns] = None
    exercise_patterns: Optional[ExercisePatterns] = None
    sleep_patterns: Optional[SleepPatterns] = None
    overall_health_score: Optional[float] = None
    score_components: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.user_id,
            "user_id": self.user_id,
            "computed_at": self.computed_at,
            "meal_patterns": self.meal_patterns.to_dict() if self.meal_patterns else None,
            "fasting_patterns": (
                self.fasting_patterns.to_dict() if self.fasting_patterns else None
            ),
            "exercise_patterns": (
                self.exercise_patterns.to_dict() if self.exercise_patterns else None
            ),
            "sleep_patterns": self.sleep_patterns.to_dict() if self.sleep_patterns else None,
            "overall_health_score": self.overall_health_score,
            "score_components": dict(self.score_components),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BehaviorSnapshot":
        def _maybe(key, decoder):
            value = data.get(key)
            return decoder(value) if value else None

        return cls(
            user_id=data["user_id"],
            computed_at=ensure_utc(data["computed_at"]),
            meal_patterns=_maybe("meal_patterns", MealPatterns.from_dict),
            fasting_patterns=_maybe("fasting_patterns", FastingPatterns.from_dict),
            exercise_patterns=_maybe("exercise_patterns", ExercisePatterns.from_dict),
            sleep_patterns=_maybe("sleep_patterns", SleepPatterns.from_dict),
            overall_health_score=data.get("overall_health_score"),
            score_components=dict(data.get("score_components", {})),
        )


# =============================================================================
# NOTIFICATIONS
# =============================================================================

class EventKind(str, Enum):
    SESSION_STARTED = "session_started"
    SESSION_COMPLETED = "session_completed"
    SESSION_ABANDONED = "session_abandoned"
    ADVICE_READY = "advice_ready"


@dataclass(frozen=True)
class NotificationEvent:
    kind: EventKind
    user_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "user_id": self.user_id,
            "payload": dict(self.payload),
            "created_at": self.created_at,
        }
