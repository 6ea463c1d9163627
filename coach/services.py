"""
Service Wiring
==============

Every service is constructed once at startup and handed its
collaborators explicitly. ``build_services`` wires the production stack
(MongoDB + Gemini); tests build a CoachServices from in-memory fakes.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from coach.adapters.gemini_adapter import (
    create_gemini_backend,
    create_gemini_client,
    create_gemini_embedder,
)
from coach.adapters.knowledge_retriever import MongoKnowledgeRetriever
from coach.adapters.notifications import MongoNotificationSink
from coach.advice.feedback import FeedbackLoop
from coach.advice.generator import AdviceGenerator
from coach.advice.models import AdviceRecord, AdviceTrigger, AdviceType
from coach.advice.proactive import ProactiveTriggerEngine
from coach.analytics.pattern_analyzer import AnalysisWindow
from coach.analytics.snapshot_service import SnapshotService
from coach.core.background import BackgroundTasks
from coach.core.circuit_breaker import CircuitBreaker
from coach.core.scheduler import CoachScheduler
from coach.core.session_machine import SessionStateMachine
from coach.memory.mongo_store import DatabaseManager
from coach.memory.repositories import (
    ActivityLog,
    AdviceRepository,
    FeedbackRepository,
    ProfileRepository,
    SessionRepository,
    SnapshotRepository,
)
from coach.policy.content_filter import KeywordContentFilter

logger = logging.getLogger(__name__)


@dataclass
class CoachServices:
    profiles: ProfileRepository
    activity_log: ActivityLog
    advice: AdviceRepository
    state_machine: SessionStateMachine
    snapshots: SnapshotService
    generator: AdviceGenerator
    feedback: FeedbackLoop
    proactive: ProactiveTriggerEngine
    tasks: BackgroundTasks
    scheduler: Optional[CoachScheduler] = None
    db_manager: Optional[DatabaseManager] = None

    async def request_advice(
        self,
        user_id: str,
        query: Optional[str] = None,
        advice_type: Optional[AdviceType] = None,
    ) -> AdviceRecord:
        """User-requested advice with the latest profile, snapshot and session."""
        profile = await self.profiles.get(user_id)
        snapshot = await self.snapshots.get_snapshot(user_id)
        session = await self.state_machine.status(user_id)
        return await self.generator.generate(
            user_id,
            profile=profile,
            snapshot=snapshot,
            query=query,
            advice_type=advice_type,
            session=session,
            trigger=AdviceTrigger.USER_REQUESTED,
        )

    async def start(self) -> None:
        if self.scheduler:
            await self.scheduler.start()

    async def stop(self) -> None:
        if self.scheduler:
            await self.scheduler.shutdown()
        await self.tasks.cancel_all()
        if self.db_manager:
            await self.db_manager.disconnect()


async def build_services(settings) -> CoachServices:
    """Connect to MongoDB and Gemini and wire every service."""
    db_manager = DatabaseManager()
    await db_manager.connect(settings.mongodb_uri, settings.mongodb_database)

    tasks = BackgroundTasks()
    profiles = ProfileRepository(db_manager.collection("health_profiles"))
    sessions = SessionRepository(db_manager.collection("fasting_sessions"))
    activity_log = ActivityLog(db_manager.collection("activity_log"))
    advice = AdviceRepository(db_manager.collection("advice_records"))
    feedback_repo = FeedbackRepository(db_manager.collection("advice_feedback"))
    snapshot_repo = SnapshotRepository(db_manager.collection("behavior_snapshots"))
    notifications = MongoNotificationSink(db_manager.collection("notification_outbox"))

    client = create_gemini_client(settings.gemini_api_key)
    backend = create_gemini_backend(
        client,
        model_name=settings.generation_model,
        enable_safety_settings=settings.enable_safety_settings,
    )
    embedder = create_gemini_embedder(client, embedding_model=settings.embedding_model)
    retriever = MongoKnowledgeRetriever(
        db_manager.collection("knowledge_snippets"),
        embedder,
        limit=settings.retrieval_limit,
        index=settings.knowledge_vector_index,
    )

    snapshots = SnapshotService(
        activity_log,
        sessions,
        snapshot_repo,
        tasks,
        profiles=profiles,
        window=AnalysisWindow(
            meal_limit=settings.analysis_meal_limit,
            fasting_limit=settings.analysis_fasting_limit,
            days=settings.analysis_window_days,
        ),
        staleness=timedelta(seconds=settings.snapshot_staleness_seconds),
    )
    state_machine = SessionStateMachine(
        sessions,
        notifications,
        tasks,
        content_policy=KeywordContentFilter(),
        on_session_finished=snapshots.refresh,
        tick_seconds=settings.session_tick_seconds,
    )
    generator = AdviceGenerator(
        retriever,
        backend,
        advice,
        retrieval_breaker=CircuitBreaker(
            name="retrieval",
            failure_threshold=settings.circuit_failure_threshold,
            recovery_timeout=settings.circuit_recovery_seconds,
        ),
        generation_breaker=CircuitBreaker(
            name="generation",
            failure_threshold=settings.circuit_failure_threshold,
            recovery_timeout=settings.circuit_recovery_seconds,
        ),
        retrieval_timeout=settings.retrieval_timeout_seconds,
        generation_timeout=settings.generation_timeout_seconds,
    )
    feedback = FeedbackLoop(advice, feedback_repo, profiles, window=settings.feedback_window)
    proactive = ProactiveTriggerEngine(profiles, snapshots, generator, notifications, tasks)
    scheduler = CoachScheduler(
        proactive,
        state_machine,
        proactive_interval_minutes=settings.proactive_scan_minutes,
        autocomplete_interval_minutes=settings.autocomplete_check_minutes,
    )

    logger.info("✅ Coach services wired")
    return CoachServices(
        profiles=profiles,
        activity_log=activity_log,
        advice=advice,
        state_machine=state_machine,
        snapshots=snapshots,
        generator=generator,
        feedback=feedback,
        proactive=proactive,
        tasks=tasks,
        scheduler=scheduler,
        db_manager=db_manager,
    )
