"""
Best-effort background work.

Fire-and-forget side effects (purging an expired cache document, bumping an
analytics counter) run here as tracked asyncio tasks. The caller's response
never waits on them and their failures are logged, not raised.
"""

import asyncio
from typing import Any, Awaitable, Set

from shared.logging import get_logger


class BackgroundTaskRunner:
    """Keeps references to spawned tasks and logs their failures."""

    def __init__(self, name: str = "background"):
        self.name = name
        self.logger = get_logger(f"costguard.{name}")
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable[Any], *, label: str = "task") -> asyncio.Task:
        """Schedule ``coro`` without awaiting it."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(t, label))
        return task

    def _on_done(self, task: asyncio.Task, label: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.warning("Background task failed", label=label, error=str(exc))

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for outstanding tasks, cancelling whatever misses the deadline."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        done, not_done = await asyncio.wait(tasks, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            self.logger.warning("Cancelled unfinished background tasks", count=len(not_done))
