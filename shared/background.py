"""
Tracked fire-and-forget tasks.

Side effects that must never delay a response (usage logging, last-used
bumps) are spawned here. Failures are logged and dropped; shutdown drains
what is still running for a bounded time and cancels the rest.
"""

import asyncio
from typing import Awaitable, Optional, Set

from shared.logging import get_logger


class BackgroundTaskSet:
    """Owns a set of detached asyncio tasks."""

    def __init__(self, name: str = "background"):
        self.name = name
        self.logger = get_logger(f"marketplace.{name}")
        self._tasks: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Awaitable, name: Optional[str] = None) -> asyncio.Task:
        """Schedule ``coro`` without awaiting it."""
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.warning(
                "Background task failed",
                task=task.get_name(),
                error=str(exc),
                error_type=type(exc).__name__
            )

    async def drain(self, timeout: float = 5.0) -> int:
        """Wait for pending tasks, cancel whatever is left after ``timeout``.

        Returns the number of tasks that had to be cancelled.
        """
        pending = set(self._tasks)
        if not pending:
            return 0

        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            task.cancel()
        if still_pending:
            await asyncio.gather(*still_pending, return_exceptions=True)
            self.logger.warning("Abandoned background tasks on shutdown", count=len(still_pending))
        return len(still_pending)
