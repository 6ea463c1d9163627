"""
Background Tasks
================

Fire-and-forget work (notification pushes, statistics recompute,
proactive evaluation) that must never block the caller.

Spawned tasks are held by strong reference until they finish, and their
failures are logged rather than lost.
"""
import asyncio
import logging
from typing import Awaitable, Optional, Set

logger = logging.getLogger(__name__)


class BackgroundTasks:
    def __init__(self, name: str = "coach"):
        self.name = name
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"❌ Background task '{task.get_name()}' failed: {exc}",
                exc_info=exc,
            )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until every task spawned so far (and any they spawn) is done."""
        while self._tasks:
            await asyncio.wait(list(self._tasks), timeout=timeout)
            if timeout is not None:
                break

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"🛑 {self.name}: cancelled {len(tasks)} background tasks")

    def __len__(self) -> int:
        return len(self._tasks)
