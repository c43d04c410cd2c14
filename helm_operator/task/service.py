"""Task tracking service.

Background tasks are long running loops, such as queue workers, that are
cancelled together on shutdown.
"""

import asyncio
import logging
from typing import Any, Coroutine
from abc import ABC, abstractmethod

_LOGGER = logging.getLogger(__name__)

__all__: list[str] = []


class TaskService(ABC):
    """Service for tracking and cancelling asynchronous tasks."""

    @abstractmethod
    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new long running background task."""

    @abstractmethod
    async def cancel_background_tasks(self) -> None:
        """Cancel all background tasks and wait for them to exit."""


class TaskServiceImpl(TaskService):
    """Tracks tasks in a set, dropping them as they complete."""

    def __init__(self) -> None:
        """Initialize the task service."""
        self._background_tasks: set[asyncio.Task[Any]] = set()

    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        """Drop the completed task and log its failure, if any."""
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        if (err := task.exception()) is not None:
            _LOGGER.error("Task %s failed: %s", task.get_name(), err)

    async def cancel_background_tasks(self) -> None:
        tasks = list(self._background_tasks)
        if not tasks:
            return
        _LOGGER.debug("Cancelling %d background tasks", len(tasks))
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._background_tasks.difference_update(tasks)
