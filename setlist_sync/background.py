"""
Supervisor for fire-and-forget tasks

spawn() schedules a coroutine on the running loop and returns immediately.
The supervisor holds a strong reference until the task finishes, and the
done-callback logs failures at the task boundary so nothing is raised back
into the code that spawned it.
"""

import asyncio
from typing import Coroutine, Set

import structlog

from .metrics import background_tasks_total

logger = structlog.get_logger(__name__)


class TaskSupervisor:
    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.debug("Background task spawned", task=name)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        name = task.get_name()

        if task.cancelled():
            background_tasks_total.labels(name=name, outcome="cancelled").inc()
            logger.info("Background task cancelled", task=name)
            return

        error = task.exception()
        if error is not None:
            background_tasks_total.labels(name=name, outcome="failed").inc()
            logger.error(
                "Background task failed",
                task=name,
                error=str(error),
                exc_info=(type(error), error, error.__traceback__)
            )
            return

        background_tasks_total.labels(name=name, outcome="ok").inc()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every running task; failures were already logged."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.drain()
