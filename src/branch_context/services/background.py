"""Registry for background tasks with an explicit error channel."""

import asyncio
import logging
from collections import deque
from collections.abc import Coroutine
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskFailure:
    """A background task that ended with an exception."""

    name: str
    error: BaseException
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class BackgroundTasks:
    """Owns fire-and-forget work such as cache warm-ups and expiry sweeps.

    Failures are logged and retained in ``errors``; they never reach the
    code that spawned the task.
    """

    def __init__(self, max_errors: int = 100) -> None:
        self._tasks: dict[asyncio.Task[Any], str] = {}
        self.errors: deque[TaskFailure] = deque(maxlen=max_errors)

    def spawn(self, name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """Schedule a coroutine on the running loop.

        Args:
            name: Label used in logs and failure records
            coro: Coroutine to run

        Returns:
            The created task
        """
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks[task] = name
        task.add_done_callback(self._on_done)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        name = self._tasks.pop(task, task.get_name())
        if task.cancelled():
            return

        error = task.exception()
        if error is not None:
            logger.error("Background task %s failed", name, exc_info=error)
            self.errors.append(TaskFailure(name=name, error=error))

    async def drain(self) -> None:
        """Wait for every currently scheduled task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel outstanding tasks and wait for them to stop."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
