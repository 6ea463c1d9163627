"""
Test Feedback Loop
==================
"""
from datetime import timedelta

import pytest

from coach.advice.feedback import FeedbackLoop, improvement_trend, summarize_feedback
from coach.advice.models import (
    AdviceCategory,
    AdvicePriority,
    AdviceRecord,
    AdviceType,
    FeedbackRecord,
)
from coach.core.errors import NotFoundError, PersistenceError
from coach.core.types import HealthProfile
from coach.memory.repositories import AdviceRepository, FeedbackRepository, ProfileRepository
from fakes import FakeClock, InMemoryCollection

USER = "user_1"


def feedback(i, rating, advice_type=AdviceType.NUTRITION, at=None):
    return FeedbackRecord(
        id=f"f{i}",
        user_id=USER,
        advice_id=f"a{i}",
        rating=rating,
        timestamp=at,
        advice_type=advice_type,
    )


class Harness:
    def __init__(self):
        self.clock = FakeClock()
        self.advice = AdviceRepository(InMemoryCollection("advice_records"))
        self.feedback = FeedbackRepository(InMemoryCollection("advice_feedback"))
        self.profile_docs = InMemoryCollection("health_profiles")
        self.profiles = ProfileRepository(self.profile_docs)
        ids = iter(f"f{i}" for i in range(1000))
        self.loop = FeedbackLoop(
            self.advice, self.feedback, self.profiles,
            clock=self.clock, id_factory=lambda: next(ids),
        )

    async def seed(self, advice_id="a1", advice_type=AdviceType.FASTING, with_profile=True):
        if with_profile:
            await self.profiles.save(HealthProfile(user_id=USER))
        record = AdviceRecord(
            id=advice_id,
            user_id=USER,
            created_at=self.clock.now,
            advice_type=advice_type,
            category=AdviceCategory.TIP,
            priority=AdvicePriority.MEDIUM,
            title="t",
            content="c",
            summary="c",
            context_snapshot={},
        )
        await self.advice.insert(record)
        return record


@pytest.fixture
def harness():
    return Harness()


class TestSummaries:

    def test_trend_needs_ten_ratings(self):
        assert improvement_trend([5] * 9) == 0.0

    def test_trend_compares_recent_block_with_previous(self):
        ratings = [5] * 20 + [3] * 20
        assert improvement_trend(ratings) == pytest.approx(2.0)

    def test_trend_zero_without_older_block(self):
        assert improvement_trend([4] * 15) == 0.0

    def test_disfavored_needs_three_low_ratings(self):
        records = [
            feedback(1, 2, AdviceType.FASTING),
            feedback(2, 1, AdviceType.FASTING),
            feedback(3, 3, AdviceType.FASTING),
            feedback(4, 1, AdviceType.SLEEP),
            feedback(5, 1, AdviceType.SLEEP),
        ]

        insights = summarize_feedback(records, now=None)

        assert insights.disfavored_types == ["fasting"]
        assert insights.type_averages["sleep"] == 1.0
        assert insights.average_rating == pytest.approx(1.6)
        assert insights.total_ratings == 5

    def test_empty_feedback(self):
        insights = summarize_feedback([], now=None)
        assert insights.average_rating is None
        assert insights.disfavored_types == []


class TestRecordFeedback:

    @pytest.mark.asyncio
    async def test_updates_record_profile_and_log(self, harness):
        await harness.seed()

        record = await harness.loop.record_feedback("a1", 4, "helpful")

        assert record.advice_type == AdviceType.FASTING
        assert (await harness.advice.get("a1")).user_rating == 4
        assert (await harness.profiles.get(USER)).advice_feedback == {"a1": 4}
        assert len(await harness.feedback.for_advice("a1")) == 1

    @pytest.mark.asyncio
    async def test_rerating_overwrites_but_log_grows(self, harness):
        await harness.seed()
        await harness.loop.record_feedback("a1", 2)
        harness.clock.advance(minutes=5)

        await harness.loop.record_feedback("a1", 5)

        assert (await harness.advice.get("a1")).user_rating == 5
        assert (await harness.profiles.get(USER)).advice_feedback == {"a1": 5}
        log = await harness.feedback.for_advice("a1")
        assert [f.rating for f in log] == [5, 2]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rating", [0, 6])
    async def test_rating_out_of_range(self, harness, rating):
        await harness.seed()

        with pytest.raises(ValueError):
            await harness.loop.record_feedback("a1", rating)

        assert (await harness.feedback.for_advice("a1")) == []

    @pytest.mark.asyncio
    async def test_user_without_profile_gets_one(self, harness):
        await harness.seed(with_profile=False)

        await harness.loop.record_feedback("a1", 4)

        profile = await harness.profiles.get(USER)
        assert profile.advice_feedback == {"a1": 4}
        assert profile.receive_advice is True
        assert (await harness.advice.get("a1")).user_rating == 4
        assert len(await harness.feedback.for_advice("a1")) == 1

    @pytest.mark.asyncio
    async def test_store_failure_leaves_no_log_entry(self, harness):
        await harness.seed()
        harness.profile_docs.fail("merge")

        with pytest.raises(PersistenceError):
            await harness.loop.record_feedback("a1", 4)

        assert (await harness.feedback.for_advice("a1")) == []
        assert (await harness.advice.get("a1")).user_rating is None

        await harness.loop.record_feedback("a1", 4)

        assert len(await harness.feedback.for_advice("a1")) == 1

    @pytest.mark.asyncio
    async def test_unknown_advice(self, harness):
        with pytest.raises(NotFoundError):
            await harness.loop.record_feedback("missing", 3)


class TestImproveRecommendations:

    @pytest.mark.asyncio
    async def test_insights_for_user_without_profile(self, harness):
        await harness.seed(with_profile=False)
        await harness.loop.record_feedback("a1", 5)

        insights = await harness.loop.improve_recommendations(USER)

        assert insights.average_rating == 5.0
        stored = (await harness.profiles.get(USER)).personalized_insights
        assert stored["feedback_analysis"]["total_ratings"] == 1

    @pytest.mark.asyncio
    async def test_insights_written_to_profile(self, harness):
        await harness.seed("a1", AdviceType.SLEEP)
        await harness.seed("a2", AdviceType.SLEEP)
        await harness.seed("a3", AdviceType.SLEEP)
        for i, rating in enumerate((1, 2, 2), start=1):
            await harness.loop.record_feedback(f"a{i}", rating)
            harness.clock.advance(minutes=1)

        insights = await harness.loop.improve_recommendations(USER)

        assert insights.disfavored_types == ["sleep"]
        stored = (await harness.profiles.get(USER)).personalized_insights["feedback_analysis"]
        assert stored["disfavored_types"] == ["sleep"]
        assert stored["last_updated"] == harness.clock.now

    @pytest.mark.asyncio
    async def test_window_limits_records(self, harness):
        harness.loop.window = 2
        await harness.seed("a1")
        await harness.seed("a2")
        await harness.seed("a3")
        for i, rating in enumerate((5, 1, 1), start=1):
            await harness.loop.record_feedback(f"a{i}", rating)
            harness.clock.advance(minutes=1)

        insights = await harness.loop.improve_recommendations(USER)

        assert insights.total_ratings == 2
        assert insights.average_rating == 1.0
