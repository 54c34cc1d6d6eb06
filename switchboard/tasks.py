"""Supervised background tasks.

Fire-and-forget work (topic updates, telemetry flushes) is spawned through
BackgroundTaskSupervisor so that:
- exceptions are logged instead of silently dropped with the task
- a reference to every running task is held until it finishes
- shutdown can wait for (or cancel) whatever is still in flight
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

import structlog

log = structlog.get_logger(__name__)


class BackgroundTaskSupervisor:
    """Tracks spawned tasks and logs their failures."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self._failures = 0

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        """Schedule a coroutine on the running loop under supervision.

        Args:
            coro: The coroutine to run.
            name: A short label used in the structured log event.
        """
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            log.debug("background_task.cancelled", task=task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            self._failures += 1
            log.error(
                f"background_task.{task.get_name()}.failed",
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=exc,
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    @property
    def failures(self) -> int:
        return self._failures

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight tasks; cancel whatever is left after the timeout."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            log.warning("background_task.cancelled_on_drain", count=len(pending))

    async def shutdown(self, timeout: float = 5.0) -> None:
        await self.drain(timeout=timeout)
