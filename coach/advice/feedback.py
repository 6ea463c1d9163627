"""
Feedback Loop
=============

Records user ratings on advice and turns them into a coarse,
explainable signal the generator and the proactive engine consult:

- average rating over the last K feedback records
- improvement trend: mean of the 20 most recent ratings minus the mean
  of the 20 before them (0 with fewer than 10 ratings)
- per-advice-type averages; a type with at least 3 ratings averaging
  below 2.5 is "disfavored"
"""
import logging
import statistics
import uuid
from typing import Callable, Dict, List, Optional, Sequence

from coach.advice.generator import FEEDBACK_INSIGHTS_KEY
from coach.advice.models import FeedbackInsights, FeedbackRecord
from coach.core.types import Clock, utc_now

logger = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 5
MIN_RATINGS_FOR_TREND = 10
TREND_BLOCK = 20
MIN_RATINGS_PER_TYPE = 3
DISFAVORED_BELOW = 2.5


def _new_feedback_id() -> str:
    return uuid.uuid4().hex


def improvement_trend(ratings: Sequence[int]) -> float:
    """``ratings`` most recent first."""
    if len(ratings) < MIN_RATINGS_FOR_TREND:
        return 0.0
    recent = ratings[:TREND_BLOCK]
    older = ratings[TREND_BLOCK:TREND_BLOCK * 2]
    if not older:
        return 0.0
    return statistics.fmean(recent) - statistics.fmean(older)


def summarize_feedback(records: Sequence[FeedbackRecord], now) -> FeedbackInsights:
    """Pure summary of feedback records given most recent first."""
    ratings = [r.rating for r in records]
    by_type: Dict[str, List[int]] = {}
    for record in records:
        if record.advice_type is not None:
            by_type.setdefault(record.advice_type.value, []).append(record.rating)

    type_averages = {t: round(statistics.fmean(r), 3) for t, r in by_type.items()}
    disfavored = sorted(
        t for t, r in by_type.items()
        if len(r) >= MIN_RATINGS_PER_TYPE and statistics.fmean(r) < DISFAVORED_BELOW
    )

    return FeedbackInsights(
        total_ratings=len(ratings),
        average_rating=round(statistics.fmean(ratings), 3) if ratings else None,
        improvement_trend=round(improvement_trend(ratings), 3),
        type_averages=type_averages,
        disfavored_types=disfavored,
        last_updated=now,
    )


class FeedbackLoop:
    def __init__(
        self,
        advice,
        feedback,
        profiles,
        window: int = 100,
        clock: Clock = utc_now,
        id_factory: Callable[[], str] = _new_feedback_id,
    ):
        self.advice = advice
        self.feedback = feedback
        self.profiles = profiles
        self.window = window
        self._clock = clock
        self._id_factory = id_factory

    async def record_feedback(
        self,
        advice_id: str,
        rating: int,
        comment: Optional[str] = None,
    ) -> FeedbackRecord:
        """
        Append a FeedbackRecord and update the denormalized ratings.

        The advice's ``user_rating`` and the profile's ``advice_feedback``
        entry are overwritten (last write wins), creating the profile if
        the user has none yet; the feedback log always grows by one.

        Raises:
            ValueError: rating outside 1-5
            NotFoundError: unknown advice id
        """
        if not MIN_RATING <= rating <= MAX_RATING:
            raise ValueError(f"Rating must be between {MIN_RATING} and {MAX_RATING}")

        advice = await self.advice.require(advice_id)
        record = FeedbackRecord(
            id=self._id_factory(),
            user_id=advice.user_id,
            advice_id=advice_id,
            rating=rating,
            timestamp=self._clock(),
            advice_type=advice.advice_type,
            comment=comment,
        )
        # Idempotent overwrites first so a retried call never duplicates the log
        await self.profiles.set_advice_feedback(advice.user_id, advice_id, rating)
        await self.advice.set_rating(advice_id, rating)
        await self.feedback.append(record)

        logger.info(
            f"⭐ Feedback recorded: advice={advice_id}, user={advice.user_id}, rating={rating}"
        )
        return record

    async def improve_recommendations(self, user_id: str) -> FeedbackInsights:
        """Recompute the feedback summary and store it in the profile's insights."""
        records = await self.feedback.recent(user_id, limit=self.window)
        insights = summarize_feedback(records, self._clock())
        await self.profiles.set_insight(user_id, FEEDBACK_INSIGHTS_KEY, insights.to_dict())

        logger.info(
            f"🔁 Feedback insights updated: user={user_id}, n={insights.total_ratings}, "
            f"avg={insights.average_rating}, trend={insights.improvement_trend}, "
            f"disfavored={insights.disfavored_types}"
        )
        return insights
