"""
Advice Generator
================

Retrieval-augmented advice for one user:

1. Resolve the advice type and, if no query was given, a template query
2. Build the context (profile facts + behavior snapshot + session + feedback)
3. Retrieve ranked knowledge snippets for the query
4. Ask the generation backend for a structured JSON advice object
5. Persist an AdviceRecord with a frozen copy of the context and sources

Best effort by contract: ``generate()`` never raises. A retrieval or
generation failure, a timeout, an open circuit or an unparseable
response all yield a canned low-confidence record instead.
"""
import copy
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from coach.advice.models import (
    AdviceCategory,
    AdvicePriority,
    AdviceRecord,
    AdviceTrigger,
    AdviceType,
    FeedbackInsights,
    Snippet,
)
from coach.advice.prompts import build_prompt, default_query, infer_advice_type, parse_advice_response
from coach.core.circuit_breaker import CircuitBreaker
from coach.core.errors import (
    BackendUnavailableError,
    GenerationParseError,
    GenerationUnavailableError,
    PersistenceError,
    RetrievalUnavailableError,
)
from coach.core.ports import KnowledgeRetriever, TextGenerationBackend
from coach.core.progress import SessionStatus
from coach.core.types import BehaviorSnapshot, Clock, HealthProfile, utc_now

logger = logging.getLogger(__name__)

FEEDBACK_INSIGHTS_KEY = "feedback_analysis"

# Canned advice never claims more than this
FALLBACK_CONFIDENCE = 0.5
UNAVAILABLE_CONFIDENCE = 0.3


# =============================================================================
# CANNED ADVICE
# =============================================================================

GENERIC_FALLBACK = (
    "Health Tip",
    "Stay hydrated and maintain a balanced diet for optimal health.",
    ("Drink 8 glasses of water daily",),
)

CANNED_ADVICE: Dict[AdviceType, Tuple[str, str, Tuple[str, ...]]] = {
    AdviceType.NUTRITION: (
        "Build Balanced Plates",
        "Aim for a source of protein, plenty of vegetables and some whole grains at each meal.",
        ("Add a vegetable to your next meal",),
    ),
    AdviceType.EXERCISE: (
        "Keep Moving",
        "Short, regular activity adds up. A brisk 20-minute walk counts.",
        ("Take a 20-minute walk today",),
    ),
    AdviceType.FASTING: (
        "Fast Comfortably",
        "Drink water through your fast and break it with a light, protein-rich meal.",
        ("Keep a water bottle nearby during your fast",),
    ),
    AdviceType.SLEEP: (
        "Protect Your Sleep",
        "A consistent bedtime and a screen-free last half hour help you sleep better.",
        ("Set a regular bedtime tonight",),
    ),
    AdviceType.MOTIVATION: (
        "Small Wins Count",
        "Progress comes from small steps repeated. Notice what you did well today.",
        ("Write down one win from today",),
    ),
    AdviceType.MEDICAL_REMINDER: (
        "Check In With Your Care Team",
        "If you have a health condition, review changes to diet or fasting with your doctor.",
        ("Note any questions for your next appointment",),
    ),
}


def _new_advice_id() -> str:
    return uuid.uuid4().hex


def resolve_priority(parsed: Dict[str, Any]) -> AdvicePriority:
    """Deterministic: only the explicit urgent/important flags count."""
    if parsed.get("urgent"):
        return AdvicePriority.URGENT
    if parsed.get("important"):
        return AdvicePriority.HIGH
    return AdvicePriority.MEDIUM


def build_context(
    profile: Optional[HealthProfile],
    snapshot: Optional[BehaviorSnapshot],
    session: Optional[SessionStatus] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Plain-dict context handed to retrieval and generation, and frozen on the record."""
    context: Dict[str, Any] = {}

    if profile is not None:
        context["profile"] = {
            "age": profile.age,
            "gender": profile.gender.value if profile.gender else None,
            "bmi": profile.bmi,
            "tdee": profile.tdee,
            "activity_level": profile.activity_level.value,
            "goals": [g.value for g in profile.goals],
            "dietary_preferences": list(profile.dietary_preferences),
            "allergies": list(profile.allergies),
            "health_conditions": [c.value for c in profile.chronic_conditions],
        }
        feedback = profile.personalized_insights.get(FEEDBACK_INSIGHTS_KEY)
        if feedback:
            insights = FeedbackInsights.from_dict(feedback)
            context["feedback"] = {
                "average_rating": insights.average_rating,
                "improvement_trend": insights.improvement_trend,
                "disfavored_types": insights.disfavored_types,
            }

    if snapshot is not None:
        behavior: Dict[str, Any] = {
            "computed_at": snapshot.computed_at.isoformat(),
            "overall_health_score": snapshot.overall_health_score,
        }
        if snapshot.meal_patterns:
            meals = snapshot.meal_patterns
            behavior["meals"] = {
                "meals_per_day": round(meals.meals_per_day, 2),
                "average_calories": meals.average_calories,
                "timing_consistency": meals.timing_consistency,
                "meal_type_distribution": meals.meal_type_distribution,
            }
        if snapshot.fasting_patterns:
            fasting = snapshot.fasting_patterns
            behavior["fasting"] = {
                "success_rate": fasting.success_rate,
                "sessions_per_week": round(fasting.sessions_per_week, 2),
                "average_duration_hours": fasting.average_duration_hours,
                "current_streak": fasting.current_streak,
            }
        if snapshot.exercise_patterns:
            behavior["exercise"] = {
                "workouts_per_week": round(snapshot.exercise_patterns.workouts_per_week, 2),
            }
        if snapshot.sleep_patterns:
            behavior["sleep"] = {
                "average_hours": snapshot.sleep_patterns.average_hours,
                "average_quality": snapshot.sleep_patterns.average_quality,
            }
        context["behavior"] = behavior

    if session is not None and session.session is not None and session.session.is_open:
        context["fasting_session"] = {
            "state": session.state.value,
            "progress": round(session.progress, 3),
            "remaining_hours": round(session.remaining.total_seconds() / 3600, 2),
        }

    if extra:
        context.update(extra)
    return context


class AdviceGenerator:
    """
    Args:
        retriever: KnowledgeRetriever
        backend: TextGenerationBackend
        advice: AdviceRepository used to persist records
        retrieval_breaker / generation_breaker: per-backend circuit breakers
        retrieval_timeout / generation_timeout: hard per-call limits in seconds
    """

    def __init__(
        self,
        retriever: KnowledgeRetriever,
        backend: TextGenerationBackend,
        advice,
        retrieval_breaker: Optional[CircuitBreaker] = None,
        generation_breaker: Optional[CircuitBreaker] = None,
        retrieval_timeout: float = 5.0,
        generation_timeout: float = 20.0,
        clock: Clock = utc_now,
        id_factory: Callable[[], str] = _new_advice_id,
    ):
        self.retriever = retriever
        self.backend = backend
        self.advice = advice
        self.retrieval_breaker = retrieval_breaker or CircuitBreaker(name="retrieval")
        self.generation_breaker = generation_breaker or CircuitBreaker(name="generation")
        self.retrieval_timeout = retrieval_timeout
        self.generation_timeout = generation_timeout
        self._clock = clock
        self._id_factory = id_factory

    async def generate(
        self,
        user_id: str,
        profile: Optional[HealthProfile] = None,
        snapshot: Optional[BehaviorSnapshot] = None,
        query: Optional[str] = None,
        advice_type: Optional[AdviceType] = None,
        session: Optional[SessionStatus] = None,
        extra_context: Optional[Dict[str, Any]] = None,
        trigger: AdviceTrigger = AdviceTrigger.USER_REQUESTED,
        category: Optional[AdviceCategory] = None,
        priority: Optional[AdvicePriority] = None,
        proactive: bool = False,
    ) -> AdviceRecord:
        advice_type = AdviceType(advice_type) if advice_type else infer_advice_type(query)
        query = query or default_query(advice_type)
        context = build_context(profile, snapshot, session, extra_context)
        context["advice_type"] = advice_type.value
        frozen_context = copy.deepcopy(context)

        base = dict(
            user_id=user_id,
            advice_type=advice_type,
            context=frozen_context,
            trigger=trigger,
            proactive=proactive,
            category=category,
            priority=priority,
        )

        try:
            snippets = await self._retrieve(query, context)
            raw_text = await self._generate_text(query, advice_type, context, snippets)
            parsed = parse_advice_response(raw_text)
            record = self._record_from_parsed(parsed, snippets, **base)
        except BackendUnavailableError as e:
            logger.warning(f"⚠️ Advice backend unavailable for user={user_id}: {e}")
            record = self._fallback(confidence=UNAVAILABLE_CONFIDENCE, **base)
        except GenerationParseError as e:
            logger.warning(f"⚠️ Unparseable advice for user={user_id}: {e}")
            record = self._fallback(confidence=FALLBACK_CONFIDENCE, **base)
        except Exception as e:
            logger.error(f"❌ Advice generation failed for user={user_id}: {e}", exc_info=True)
            record = self._fallback(confidence=UNAVAILABLE_CONFIDENCE, **base)

        try:
            await self.advice.insert(record)
        except PersistenceError as e:
            logger.error(f"❌ Failed to persist advice {record.id} for user={user_id}: {e}")

        logger.info(
            f"💡 Advice generated: user={user_id}, type={advice_type.value}, "
            f"confidence={record.confidence:.2f}, degraded={record.degraded}, "
            f"proactive={proactive}"
        )
        return record

    async def _retrieve(self, query: str, context: Dict[str, Any]) -> List[Snippet]:
        return await self.retrieval_breaker.call(
            lambda: self.retriever.retrieve(query, context),
            timeout=self.retrieval_timeout,
            unavailable=RetrievalUnavailableError,
        )

    async def _generate_text(
        self,
        query: str,
        advice_type: AdviceType,
        context: Dict[str, Any],
        snippets: List[Snippet],
    ) -> str:
        prompt = build_prompt(query, advice_type, context, snippets)
        return await self.generation_breaker.call(
            lambda: self.backend.generate(prompt),
            timeout=self.generation_timeout,
            unavailable=GenerationUnavailableError,
        )

    def _record_from_parsed(
        self,
        parsed: Dict[str, Any],
        snippets: List[Snippet],
        user_id: str,
        advice_type: AdviceType,
        context: Dict[str, Any],
        trigger: AdviceTrigger,
        proactive: bool,
        category: Optional[AdviceCategory],
        priority: Optional[AdvicePriority],
    ) -> AdviceRecord:
        return AdviceRecord(
            id=self._id_factory(),
            user_id=user_id,
            created_at=self._clock(),
            advice_type=advice_type,
            category=category or AdviceCategory.TIP,
            priority=priority or resolve_priority(parsed),
            title=parsed["title"],
            content=parsed["content"],
            summary=parsed["summary"],
            context_snapshot=context,
            rag_sources=tuple(s.source_id for s in snippets),
            confidence=parsed["confidence"],
            suggested_actions=tuple(parsed["actions"]),
            tags=tuple(parsed["tags"]),
            trigger=trigger,
            proactive=proactive,
        )

    def _fallback(
        self,
        confidence: float,
        user_id: str,
        advice_type: AdviceType,
        context: Dict[str, Any],
        trigger: AdviceTrigger,
        proactive: bool,
        category: Optional[AdviceCategory],
        priority: Optional[AdvicePriority],
    ) -> AdviceRecord:
        title, content, actions = CANNED_ADVICE.get(advice_type, GENERIC_FALLBACK)
        return AdviceRecord(
            id=self._id_factory(),
            user_id=user_id,
            created_at=self._clock(),
            advice_type=advice_type,
            category=category or AdviceCategory.TIP,
            priority=priority or AdvicePriority.MEDIUM,
            title=title,
            content=content,
            summary=content,
            context_snapshot=context,
            confidence=min(confidence, FALLBACK_CONFIDENCE),
            suggested_actions=actions,
            tags=(advice_type.value,),
            trigger=trigger,
            proactive=proactive,
            degraded=True,
        )
