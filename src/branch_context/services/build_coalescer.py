"""Deduplication of concurrent identical build requests."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BuildCoalescer(Generic[T]):
    """Run at most one build per key at a time.

    Callers that arrive while a build for the same key is in flight await
    that build and receive the same result object (or the same exception).
    A caller being cancelled does not cancel the shared build.
    """

    def __init__(self) -> None:
        self._in_flight: dict[str, asyncio.Task[T]] = {}
        self.coalesced_count = 0

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        """Await the in-flight build for ``key`` or start one.

        Args:
            key: Request fingerprint
            factory: Zero-argument callable producing the build coroutine

        Returns:
            The build result
        """
        task = self._in_flight.get(key)
        if task is not None:
            self.coalesced_count += 1
            logger.debug("Coalescing build request %s", key[:12])
        else:
            task = asyncio.ensure_future(factory())
            self._in_flight[key] = task
            task.add_done_callback(lambda done, key=key: self._release(key, done))

        return await asyncio.shield(task)

    def _release(self, key: str, task: asyncio.Task[T]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        # Retrieve the outcome so an unawaited failure is not reported as lost
        if not task.cancelled():
            task.exception()
