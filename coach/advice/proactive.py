"""
Proactive Trigger Engine
========================

Evaluates a fixed, ordered rule set against a user's latest snapshot
and profile, and asks the generator for advice (tagged proactive) for
every rule that fires. Each rule fires at most once per pass; throttling
across passes is left to the notification policy downstream.

Runs from the scheduler (all users) and on app-open (one user).
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from coach.advice.generator import FEEDBACK_INSIGHTS_KEY, AdviceGenerator
from coach.advice.models import (
    AdviceCategory,
    AdvicePriority,
    AdviceRecord,
    AdviceTrigger,
    AdviceType,
    FeedbackInsights,
)
from coach.core.background import BackgroundTasks
from coach.core.ports import NotificationSink
from coach.core.types import (
    BehaviorSnapshot,
    Clock,
    EventKind,
    HealthGoal,
    HealthProfile,
    NotificationEvent,
    utc_now,
)

logger = logging.getLogger(__name__)

MEAL_LAPSE = timedelta(days=3)
STRUGGLE_SUCCESS_RATE = 0.5
STRUGGLE_MIN_SESSIONS = 3


@dataclass(frozen=True)
class TriggerContext:
    profile: HealthProfile
    snapshot: BehaviorSnapshot
    now: datetime


@dataclass(frozen=True)
class TriggerRule:
    name: str
    advice_type: AdviceType
    category: AdviceCategory
    trigger: AdviceTrigger
    applies: Callable[[TriggerContext], bool]
    priority: Optional[AdvicePriority] = None


def _meal_logging_lapsed(ctx: TriggerContext) -> bool:
    meals = ctx.snapshot.meal_patterns
    if meals is None or meals.last_meal_at is None:
        return True
    return ctx.now - meals.last_meal_at > MEAL_LAPSE


def _pursuing_weight_loss(ctx: TriggerContext) -> bool:
    return any(g in (HealthGoal.WEIGHT_LOSS, HealthGoal.FAT_LOSS) for g in ctx.profile.goals)


def _has_chronic_condition(ctx: TriggerContext) -> bool:
    return bool(ctx.profile.chronic_conditions)


def _struggling_with_fasting(ctx: TriggerContext) -> bool:
    fasting = ctx.snapshot.fasting_patterns
    return (
        fasting is not None
        and fasting.total_sessions >= STRUGGLE_MIN_SESSIONS
        and fasting.success_rate is not None
        and fasting.success_rate < STRUGGLE_SUCCESS_RATE
    )


DEFAULT_RULES: Sequence[TriggerRule] = (
    TriggerRule(
        name="meal_logging_lapse",
        advice_type=AdviceType.NUTRITION,
        category=AdviceCategory.REMINDER,
        trigger=AdviceTrigger.BEHAVIORAL,
        applies=_meal_logging_lapsed,
    ),
    TriggerRule(
        name="weight_loss_motivation",
        advice_type=AdviceType.MOTIVATION,
        category=AdviceCategory.ENCOURAGEMENT,
        trigger=AdviceTrigger.SCHEDULED,
        applies=_pursuing_weight_loss,
    ),
    TriggerRule(
        name="chronic_condition_reminder",
        advice_type=AdviceType.MEDICAL_REMINDER,
        category=AdviceCategory.WARNING,
        trigger=AdviceTrigger.SCHEDULED,
        applies=_has_chronic_condition,
        priority=AdvicePriority.HIGH,
    ),
    TriggerRule(
        name="fasting_struggle",
        advice_type=AdviceType.FASTING,
        category=AdviceCategory.RECOMMENDATION,
        trigger=AdviceTrigger.BEHAVIORAL,
        applies=_struggling_with_fasting,
    ),
)


def suppressed_types(profile: HealthProfile) -> set:
    """Advice types the user dismissed or rated poorly."""
    suppressed = set(profile.dismissed_advice_types)
    feedback = profile.personalized_insights.get(FEEDBACK_INSIGHTS_KEY)
    if feedback:
        suppressed.update(FeedbackInsights.from_dict(feedback).disfavored_types)
    return suppressed


def firing_rules(
    ctx: TriggerContext, rules: Sequence[TriggerRule] = DEFAULT_RULES
) -> List[TriggerRule]:
    """Rules that fire for this context, in rule order."""
    if not ctx.profile.receive_advice:
        return []
    suppressed = suppressed_types(ctx.profile)
    return [
        rule for rule in rules
        if rule.advice_type.value not in suppressed and rule.applies(ctx)
    ]


class ProactiveTriggerEngine:
    def __init__(
        self,
        profiles,
        snapshots,
        generator: AdviceGenerator,
        notifications: NotificationSink,
        tasks: BackgroundTasks,
        rules: Sequence[TriggerRule] = DEFAULT_RULES,
        concurrency: int = 4,
        clock: Clock = utc_now,
    ):
        self.profiles = profiles
        self.snapshots = snapshots
        self.generator = generator
        self.notifications = notifications
        self.tasks = tasks
        self.rules = tuple(rules)
        self.concurrency = concurrency
        self._clock = clock

    async def evaluate_user(self, user_id: str) -> List[AdviceRecord]:
        """One evaluation pass for one user."""
        profile = await self.profiles.get(user_id)
        if profile is None or not profile.receive_advice:
            return []

        snapshot = await self.snapshots.get_snapshot(user_id)
        ctx = TriggerContext(profile=profile, snapshot=snapshot, now=self._clock())
        fired = firing_rules(ctx, self.rules)

        records: List[AdviceRecord] = []
        for rule in fired:
            record = await self.generator.generate(
                user_id,
                profile=profile,
                snapshot=snapshot,
                advice_type=rule.advice_type,
                extra_context={"trigger": rule.name, "proactive": True},
                trigger=rule.trigger,
                category=rule.category,
                priority=rule.priority,
                proactive=True,
            )
            records.append(record)
            event = NotificationEvent(
                kind=EventKind.ADVICE_READY,
                user_id=user_id,
                payload={
                    "advice_id": record.id,
                    "rule": rule.name,
                    "title": record.title,
                    "priority": record.priority.value,
                },
                created_at=ctx.now,
            )
            self.tasks.spawn(self.notifications.push(event), name=f"notify:{rule.name}")

        if fired:
            logger.info(
                f"🔔 Proactive pass: user={user_id}, fired={[r.name for r in fired]}"
            )
        return records

    async def scan_all(self) -> int:
        """Evaluate every user who accepts advice. Returns the number of records created."""
        user_ids = await self.profiles.list_advice_recipients()
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _one(user_id: str) -> int:
            async with semaphore:
                try:
                    return len(await self.evaluate_user(user_id))
                except Exception as e:
                    logger.error(
                        f"❌ Proactive evaluation failed for user={user_id}: {e}",
                        exc_info=True,
                    )
                    return 0

        created = sum(await asyncio.gather(*(_one(u) for u in user_ids)))
        logger.info(f"🔔 Proactive scan complete: users={len(user_ids)}, advice={created}")
        return created

    def on_app_open(self, user_id: str) -> asyncio.Task:
        return self.tasks.spawn(self.evaluate_user(user_id), name=f"proactive:{user_id}")
