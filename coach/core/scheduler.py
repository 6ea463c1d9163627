"""
Coach Scheduler
===============

APScheduler-based background jobs:
- Proactive advice scan over every user who accepts advice
- Fasting auto-completion sweep (ends Active sessions whose target is reached)

Usage:
    scheduler = CoachScheduler(proactive_engine, state_machine)
    await scheduler.start()
    # ... on shutdown ...
    await scheduler.shutdown()
"""
import logging
import time
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


async def run_proactive_scan(engine) -> None:
    """Scheduled proactive pass; failures are logged and retried next interval."""
    try:
        start = time.monotonic()
        created = await engine.scan_all()
        duration_ms = (time.monotonic() - start) * 1000
        logger.info(f"🔔 Proactive scan job: {created} advice records, took {duration_ms:.1f}ms")
    except Exception as e:
        logger.error(f"❌ Proactive scan failed: {e}", exc_info=True)


async def run_autocomplete_sweep(machine) -> None:
    try:
        completed = await machine.complete_due_sessions()
        if completed:
            logger.info(f"⏱️ Auto-complete job: {completed} sessions completed")
    except Exception as e:
        logger.error(f"❌ Auto-complete sweep failed: {e}", exc_info=True)


class CoachScheduler:
    """
    APScheduler wrapper for coach background jobs.

    Designed for FastAPI lifespan integration.
    """

    def __init__(
        self,
        proactive_engine,
        state_machine,
        proactive_interval_minutes: int = 360,
        autocomplete_interval_minutes: int = 5,
    ):
        self.proactive_engine = proactive_engine
        self.state_machine = state_machine
        self.proactive_interval_minutes = proactive_interval_minutes
        self.autocomplete_interval_minutes = autocomplete_interval_minutes
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._started = False

    async def start(self) -> None:
        if self._started:
            logger.warning("Scheduler already started")
            return

        self._scheduler = AsyncIOScheduler()

        self._scheduler.add_job(
            run_proactive_scan,
            trigger=IntervalTrigger(minutes=self.proactive_interval_minutes),
            args=[self.proactive_engine],
            id="proactive_scan",
            name="Proactive Advice Scan",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            run_autocomplete_sweep,
            trigger=IntervalTrigger(minutes=self.autocomplete_interval_minutes),
            args=[self.state_machine],
            id="fasting_autocomplete",
            name="Fasting Auto-Complete Sweep",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self._scheduler.start()
        self._started = True
        logger.info(
            f"🚀 Scheduler started: proactive scan every {self.proactive_interval_minutes}m, "
            f"auto-complete every {self.autocomplete_interval_minutes}m"
        )

    async def shutdown(self) -> None:
        if self._scheduler and self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("🛑 Scheduler shutdown complete")

    @property
    def is_running(self) -> bool:
        return self._started and self._scheduler is not None

    def get_jobs(self) -> list:
        """Scheduled jobs (for testing/debugging)."""
        if self._scheduler:
            return self._scheduler.get_jobs()
        return []
