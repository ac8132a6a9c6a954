"""
Deferred task scheduling.

The core only needs "run this coroutine at or after this time". The
trigger mechanism is pluggable; ``AsyncioTaskScheduler`` runs tasks on
the event loop of the serving process.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

TaskFn = Callable[..., Awaitable[Any]]


class TaskScheduler(ABC):
    """Abstract base class for deferred task runners."""

    @abstractmethod
    def schedule(self, run_at: datetime, fn: TaskFn, *args: Any) -> None:
        """Run ``fn(*args)`` at or after ``run_at`` (naive UTC)."""
        pass

    @abstractmethod
    def is_functional(self) -> bool:
        """Whether scheduled tasks are currently expected to run."""
        pass


class AsyncioTaskScheduler(TaskScheduler):
    """Runs scheduled coroutines on the running event loop."""

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    def schedule(self, run_at: datetime, fn: TaskFn, *args: Any) -> None:
        if self._closed:
            raise RuntimeError("Scheduler is shut down")
        delay = max((run_at - datetime.utcnow()).total_seconds(), 0.0)
        task = asyncio.get_running_loop().create_task(self._run(delay, fn, *args))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, delay: float, fn: TaskFn, *args: Any) -> None:
        if delay:
            await asyncio.sleep(delay)
        try:
            await fn(*args)
        except Exception as e:
            logger.exception(f"Scheduled task {getattr(fn, '__name__', fn)} failed: {e}")

    def is_functional(self) -> bool:
        if self._closed:
            return False
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return False
        return True

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every scheduled task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel outstanding tasks and refuse new ones."""
        self._closed = True
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        logger.info("Task scheduler shut down")
