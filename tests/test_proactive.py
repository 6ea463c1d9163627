"""
Test Proactive Trigger Engine
=============================
"""
from datetime import timedelta

import pytest
from unittest.mock import AsyncMock, MagicMock

from coach.advice.generator import AdviceGenerator
from coach.advice.models import AdvicePriority, AdviceTrigger, AdviceType
from coach.advice.proactive import (
    ProactiveTriggerEngine,
    TriggerContext,
    firing_rules,
    suppressed_types,
)
from coach.analytics.snapshot_service import SnapshotService
from coach.core.background import BackgroundTasks
from coach.core.types import (
    BehaviorSnapshot,
    FastingPatterns,
    HealthCondition,
    HealthGoal,
    HealthProfile,
    MealPatterns,
    NutritionTrends,
)
from coach.memory.repositories import (
    ActivityLog,
    AdviceRepository,
    ProfileRepository,
    SessionRepository,
    SnapshotRepository,
)
from fakes import FakeBackend, FakeClock, FakeRetriever, InMemoryCollection, RecordingSink, T0, advice_json

USER = "user_1"
NOW = T0


def meals_last_at(moment):
    return MealPatterns(
        total_meals=10,
        meals_per_day=3.0,
        average_calories=600.0,
        average_meal_hour=13.0,
        timing_consistency=0.7,
        meal_type_distribution={"lunch": 10},
        nutrition_trends=NutritionTrends(),
        last_meal_at=moment,
    )


def fasting(total, completed):
    return FastingPatterns(
        total_sessions=total,
        completed_sessions=completed,
        success_rate=completed / total,
        average_duration_hours=12.0,
        sessions_per_week=2.0,
        average_start_hour=20.0,
        start_consistency=0.9,
        current_streak=0,
        longest_streak=1,
        last_session_at=NOW - timedelta(days=1),
    )


def context(profile=None, **snapshot_fields):
    snapshot_fields.setdefault("meal_patterns", meals_last_at(NOW - timedelta(hours=5)))
    return TriggerContext(
        profile=profile or HealthProfile(user_id=USER),
        snapshot=BehaviorSnapshot(user_id=USER, computed_at=NOW, **snapshot_fields),
        now=NOW,
    )


def names(ctx):
    return [rule.name for rule in firing_rules(ctx)]


class TestRules:

    def test_quiet_user_fires_nothing(self):
        assert names(context()) == []

    def test_meal_lapse_after_three_days(self):
        assert names(context(meal_patterns=meals_last_at(NOW - timedelta(days=2)))) == []
        assert names(context(meal_patterns=meals_last_at(NOW - timedelta(days=4)))) == [
            "meal_logging_lapse"
        ]

    def test_no_meals_logged_counts_as_lapse(self):
        assert names(context(meal_patterns=None)) == ["meal_logging_lapse"]

    def test_weight_loss_goal(self):
        profile = HealthProfile(user_id=USER, goals=[HealthGoal.FAT_LOSS])
        assert names(context(profile)) == ["weight_loss_motivation"]

    def test_chronic_condition(self):
        profile = HealthProfile(
            user_id=USER, health_conditions=[HealthCondition.NONE, HealthCondition.HYPERTENSION]
        )
        fired = firing_rules(context(profile))
        assert [r.name for r in fired] == ["chronic_condition_reminder"]
        assert fired[0].priority == AdvicePriority.HIGH

    def test_none_condition_is_not_chronic(self):
        profile = HealthProfile(user_id=USER, health_conditions=[HealthCondition.NONE])
        assert names(context(profile)) == []

    def test_fasting_struggle(self):
        assert names(context(fasting_patterns=fasting(4, 1))) == ["fasting_struggle"]
        assert names(context(fasting_patterns=fasting(2, 0))) == []
        assert names(context(fasting_patterns=fasting(4, 2))) == []

    def test_rule_order_is_fixed(self):
        profile = HealthProfile(
            user_id=USER,
            goals=[HealthGoal.WEIGHT_LOSS],
            health_conditions=[HealthCondition.DIABETES],
        )
        ctx = context(profile, meal_patterns=None, fasting_patterns=fasting(5, 1))

        assert names(ctx) == [
            "meal_logging_lapse",
            "weight_loss_motivation",
            "chronic_condition_reminder",
            "fasting_struggle",
        ]

    def test_opted_out_user(self):
        profile = HealthProfile(user_id=USER, goals=[HealthGoal.WEIGHT_LOSS], receive_advice=False)
        assert names(context(profile, meal_patterns=None)) == []

    def test_dismissed_and_disfavored_types_are_suppressed(self):
        profile = HealthProfile(
            user_id=USER,
            goals=[HealthGoal.WEIGHT_LOSS],
            dismissed_advice_types=["nutrition"],
            personalized_insights={"feedback_analysis": {"disfavored_types": ["motivation"]}},
        )

        assert suppressed_types(profile) == {"nutrition", "motivation"}
        assert names(context(profile, meal_patterns=None)) == []


class Harness:
    def __init__(self):
        self.clock = FakeClock()
        self.tasks = BackgroundTasks("test")
        self.sink = RecordingSink()
        self.profiles = ProfileRepository(InMemoryCollection("health_profiles"))
        self.advice_docs = InMemoryCollection("advice_records")
        self.snapshots = SnapshotService(
            ActivityLog(InMemoryCollection("activity_log")),
            SessionRepository(InMemoryCollection("fasting_sessions")),
            SnapshotRepository(InMemoryCollection("behavior_snapshots")),
            self.tasks,
            profiles=self.profiles,
            clock=self.clock,
        )
        self.generator = AdviceGenerator(
            FakeRetriever(),
            FakeBackend(advice_json()),
            AdviceRepository(self.advice_docs),
            clock=self.clock,
        )
        self.engine = ProactiveTriggerEngine(
            self.profiles, self.snapshots, self.generator, self.sink, self.tasks,
            clock=self.clock,
        )


@pytest.fixture
def harness():
    return Harness()


class TestEngine:

    @pytest.mark.asyncio
    async def test_evaluate_user_generates_tagged_advice(self, harness):
        await harness.profiles.save(HealthProfile(
            user_id=USER,
            goals=[HealthGoal.WEIGHT_LOSS],
            health_conditions=[HealthCondition.DIABETES],
        ))

        records = await harness.engine.evaluate_user(USER)
        await harness.tasks.drain()

        assert [r.advice_type for r in records] == [
            AdviceType.NUTRITION, AdviceType.MOTIVATION, AdviceType.MEDICAL_REMINDER,
        ]
        assert all(r.proactive for r in records)
        assert records[0].trigger == AdviceTrigger.BEHAVIORAL
        assert records[2].priority == AdvicePriority.HIGH
        assert records[0].context_snapshot["trigger"] == "meal_logging_lapse"
        assert len(harness.advice_docs.docs) == 3
        assert harness.sink.kinds() == ["advice_ready"] * 3

    @pytest.mark.asyncio
    async def test_unknown_user_is_skipped(self, harness):
        assert await harness.engine.evaluate_user("ghost") == []

    @pytest.mark.asyncio
    async def test_scan_all_covers_recipients(self, harness):
        await harness.profiles.save(HealthProfile(user_id="a"))
        await harness.profiles.save(HealthProfile(user_id="b", goals=[HealthGoal.WEIGHT_LOSS]))
        await harness.profiles.save(HealthProfile(user_id="c", receive_advice=False))

        created = await harness.engine.scan_all()
        await harness.tasks.drain()

        # a: meal lapse; b: meal lapse + motivation; c: opted out
        assert created == 3

    @pytest.mark.asyncio
    async def test_scan_isolates_failing_user(self, harness):
        await harness.profiles.save(HealthProfile(user_id="good"))
        await harness.profiles.save(HealthProfile(user_id="bad"))
        real = harness.snapshots.get_snapshot

        async def flaky(user_id, force=False):
            if user_id == "bad":
                raise RuntimeError("snapshot store down")
            return await real(user_id, force)

        harness.engine.snapshots = MagicMock()
        harness.engine.snapshots.get_snapshot = AsyncMock(side_effect=flaky)

        created = await harness.engine.scan_all()
        await harness.tasks.drain()

        assert created == 1

    @pytest.mark.asyncio
    async def test_app_open_runs_in_background(self, harness):
        await harness.profiles.save(HealthProfile(user_id=USER))

        task = harness.engine.on_app_open(USER)
        await harness.tasks.drain()

        assert len(task.result()) == 1
        assert harness.sink.kinds() == ["advice_ready"]
