"""
Session Scheduler
=================
Background tasks that keep sessions alive and stats fresh.
"""

import asyncio
from typing import Optional, List, Callable, Awaitable

import structlog

from .manager import SessionLifecycleManager

logger = structlog.get_logger(__name__)


class SessionScheduler:
    """
    Usage:
        scheduler = SessionScheduler(manager)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        manager: SessionLifecycleManager,
        keepalive_interval: Optional[float] = None,
        refresh_interval: Optional[float] = None,
    ):
        self.manager = manager
        self.keepalive_interval = keepalive_interval or manager.config.keepalive_interval
        self.refresh_interval = refresh_interval or manager.config.refresh_interval
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._every(self.keepalive_interval, self.manager.keepalive), name="pisentinel-keepalive"),
            asyncio.create_task(self._every(self.refresh_interval, self.manager.refresh_all), name="pisentinel-refresh"),
        ]
        logger.info(
            "scheduler_started",
            keepalive_interval=self.keepalive_interval,
            refresh_interval=self.refresh_interval,
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("scheduler_stopped")

    async def _every(self, interval: float, operation: Callable[[], Awaitable[None]]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await operation()
            except Exception:
                logger.exception("scheduled_operation_failed", operation=operation.__name__)
