"""
Detached background tasks.

Fire-and-forget effects (category translation, callbacks) are spawned through
a ``DetachedTaskRunner`` instead of bare ``asyncio.create_task`` calls so
that failures are logged, strong references are held until completion, and
tests or the worker can ``drain()`` outstanding work before shutting down.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Optional, Set

logger = logging.getLogger("tasks")


class DetachedTaskRunner:
    """Owns background tasks spawned by pipeline components."""

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Awaitable, name: Optional[str] = None) -> asyncio.Task:
        """Schedule *coro* on the running loop without awaiting it."""
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done_callback)
        return task

    def _task_done_callback(self, task: asyncio.Task) -> None:
        """Drop the reference and log unexpected errors."""
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s raised unexpected error: %s", task.get_name(), exc)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for every outstanding task (including ones spawned meanwhile)."""
        while self._tasks:
            pending = list(self._tasks)
            _done, not_done = await asyncio.wait(pending, timeout=timeout)
            if not_done:
                logger.warning("%d background task(s) still running after %.1fs", len(not_done), timeout or 0)
                return

    async def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
