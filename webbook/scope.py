"""Cancellation scopes for stage tasks."""
import asyncio
import logging
from typing import Coroutine, Set

logger = logging.getLogger(__name__)


class TaskScope:
    """
    A named group of stage tasks that can be cancelled together.

    launch() must be called from a running event loop. Finished tasks drop
    out of the scope on their own.
    """

    def __init__(self, name: str = "scope"):
        self.name = name
        self._tasks: Set[asyncio.Task] = set()

    def launch(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def active(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    def cancel(self) -> int:
        """Cancel every running task of the scope; returns how many were cancelled."""
        cancelled = 0
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
                cancelled += 1
        if cancelled:
            logger.info(f"Cancelled {cancelled} task(s) in scope {self.name}")
        return cancelled


# Shared background scope used when the caller supplies none
DEFAULT_SCOPE = TaskScope("default")
