"""
Advice Records
==============

AdviceRecord content and context snapshot are frozen at creation; only
the rating and read/bookmark/dismiss flags change afterwards, and those
through the repository, never on the instance.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from coach.core.types import ensure_utc


class AdviceType(str, Enum):
    NUTRITION = "nutrition"
    EXERCISE = "exercise"
    FASTING = "fasting"
    SLEEP = "sleep"
    MENTAL_HEALTH = "mental_health"
    HYDRATION = "hydration"
    RECOVERY = "recovery"
    MOTIVATION = "motivation"
    HABIT_BUILDING = "habit_building"
    GOAL_SETTING = "goal_setting"
    MEDICAL_REMINDER = "medical_reminder"
    LIFESTYLE = "lifestyle"
    SOCIAL = "social"
    GENERAL = "general"


class AdviceCategory(str, Enum):
    TIP = "tip"
    REMINDER = "reminder"
    ENCOURAGEMENT = "encouragement"
    WARNING = "warning"
    INSIGHT = "insight"
    RECOMMENDATION = "recommendation"
    CHALLENGE = "challenge"


class AdvicePriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class AdviceTrigger(str, Enum):
    SCHEDULED = "scheduled"
    BEHAVIORAL = "behavioral"
    CONTEXTUAL = "contextual"
    REACTIVE = "reactive"
    MILESTONE = "milestone"
    EMERGENCY = "emergency"
    USER_REQUESTED = "user_requested"


@dataclass(frozen=True)
class Snippet:
    """A ranked knowledge snippet returned by the retriever."""
    source_id: str
    title: str
    text: str
    score: float
    tags: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "title": self.title,
            "text": self.text,
            "score": self.score,
            "tags": list(self.tags),
        }


@dataclass(frozen=True)
class PromptSpec:
    """Everything the text-generation backend needs for one call."""
    system_instruction: str
    prompt: str
    temperature: float = 0.7
    max_output_tokens: int = 1024
    response_mime_type: str = "application/json"


@dataclass(frozen=True)
class AdviceRecord:
    id: str
    user_id: str
    created_at: datetime
    advice_type: AdviceType
    category: AdviceCategory
    priority: AdvicePriority
    title: str
    content: str
    summary: str
    context_snapshot: Dict[str, Any]
    rag_sources: Tuple[str, ...] = ()
    confidence: float = 0.5
    suggested_actions: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()
    trigger: AdviceTrigger = AdviceTrigger.USER_REQUESTED
    proactive: bool = False
    degraded: bool = False
    user_rating: Optional[int] = None
    is_read: bool = False
    is_bookmarked: bool = False
    is_dismissed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "user_id": self.user_id,
            "created_at": self.created_at,
            "advice_type": self.advice_type.value,
            "category": self.category.value,
            "priority": self.priority.value,
            "title": self.title,
            "content": self.content,
            "summary": self.summary,
            "context_snapshot": self.context_snapshot,
            "rag_sources": list(self.rag_sources),
            "confidence": self.confidence,
            "suggested_actions": list(self.suggested_actions),
            "tags": list(self.tags),
            "trigger": self.trigger.value,
            "proactive": self.proactive,
            "degraded": self.degraded,
            "user_rating": self.user_rating,
            "is_read": self.is_read,
            "is_bookmarked": self.is_bookmarked,
            "is_dismissed": self.is_dismissed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AdviceRecord":
        return cls(
            id=data["_id"],
            user_id=data["user_id"],
            created_at=ensure_utc(data["created_at"]),
            advice_type=AdviceType(data["advice_type"]),
            category=AdviceCategory(data["category"]),
            priority=AdvicePriority(data["priority"]),
            title=data["title"],
            content=data["content"],
            summary=data.get("summary", ""),
            context_snapshot=dict(data.get("context_snapshot", {})),
            rag_sources=tuple(data.get("rag_sources", [])),
            confidence=float(data.get("confidence", 0.5)),
            suggested_actions=tuple(data.get("suggested_actions", [])),
            tags=tuple(data.get("tags", [])),
            trigger=AdviceTrigger(data.get("trigger", AdviceTrigger.USER_REQUESTED.value)),
            proactive=data.get("proactive", False),
            degraded=data.get("degraded", False),
            user_rating=data.get("user_rating"),
            is_read=data.get("is_read", False),
            is_bookmarked=data.get("is_bookmarked", False),
            is_dismissed=data.get("is_dismissed", False),
        )


@dataclass(frozen=True)
class FeedbackRecord:
    """Append-only; many per AdviceRecord."""
    id: str
    user_id: str
    advice_id: str
    rating: int
    timestamp: datetime
    advice_type: Optional[AdviceType] = None
    comment: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "user_id": self.user_id,
            "advice_id": self.advice_id,
            "rating": self.rating,
            "timestamp": self.timestamp,
            "advice_type": self.advice_type.value if self.advice_type else None,
            "comment": self.comment,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeedbackRecord":
        advice_type = data.get("advice_type")
        return cls(
            id=data["_id"],
            user_id=data["user_id"],
            advice_id=data["advice_id"],
            rating=int(data["rating"]),
            timestamp=ensure_utc(data["timestamp"]),
            advice_type=AdviceType(advice_type) if advice_type else None,
            comment=data.get("comment"),
        )


@dataclass(frozen=True)
class FeedbackInsights:
    """Coarse, explainable summary written to the profile's insights."""
    total_ratings: int
    average_rating: Optional[float]
    improvement_trend: float
    type_averages: Dict[str, float] = field(default_factory=dict)
    disfavored_types: List[str] = field(default_factory=list)
    last_updated: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_ratings": self.total_ratings,
            "average_rating": self.average_rating,
            "improvement_trend": self.improvement_trend,
            "type_averages": dict(self.type_averages),
            "disfavored_types": list(self.disfavored_types),
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeedbackInsights":
        return cls(
            total_ratings=data.get("total_ratings", 0),
            average_rating=data.get("average_rating"),
            improvement_trend=data.get("improvement_trend", 0.0),
            type_averages=dict(data.get("type_averages", {})),
            disfavored_types=list(data.get("disfavored_types", [])),
            last_updated=ensure_utc(data.get("last_updated")),
        )
