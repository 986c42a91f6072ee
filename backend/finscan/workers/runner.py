"""
In-process Job Runner
═════════════════════

Owns every background extraction task started by the intake dispatcher.

  submit()    → schedules the job coroutine as a tracked asyncio.Task
                raises JobQueueFull once `max_pending` tasks are in flight
  slot()      → async context manager bounding concurrent pipeline runs
                (asyncio.Semaphore of `max_concurrency`)
  drain()     → wait for every tracked task (tests, graceful shutdown)
  shutdown()  → stop accepting work, wait `grace_seconds`, cancel the rest

Tasks are held in a set until they finish so they are never garbage
collected mid-flight, and a crashed task is logged instead of being lost
as "Task exception was never retrieved".
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Coroutine

logger = logging.getLogger(__name__)


class JobQueueFull(RuntimeError):
    """Raised by submit() when the runner cannot take more work."""


class JobRunner:

    def __init__(self, max_concurrency: int = 4, max_pending: int = 100) -> None:
        self._max_concurrency = max(1, max_concurrency)
        self._max_pending     = max(1, max_pending)
        self._semaphore       = asyncio.Semaphore(self._max_concurrency)
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    @property
    def closed(self) -> bool:
        return self._closed

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        async with self._semaphore:
            yield

    def submit(self, job_id: uuid.UUID, coro: Coroutine) -> asyncio.Task:
        if self._closed or len(self._tasks) >= self._max_pending:
            coro.close()
            reason = "shutting down" if self._closed else f"{len(self._tasks)} jobs pending"
            logger.warning("JobRunner rejected job | job=%s reason=%s", job_id, reason)
            raise JobQueueFull(f"Job runner cannot accept more work ({reason})")

        task = asyncio.create_task(coro, name=f"document-job-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.debug("JobRunner accepted job | job=%s pending=%d", job_id, len(self._tasks))
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("JobRunner task crashed | task=%s error=%r", task.get_name(), exc)

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for all tracked tasks. Returns True if none are left running."""
        if not self._tasks:
            return True
        _, still_running = await asyncio.wait(set(self._tasks), timeout=timeout)
        return not still_running

    async def shutdown(self, grace_seconds: float = 10.0) -> None:
        self._closed = True
        if not self._tasks:
            return

        logger.info("JobRunner draining | pending=%d grace_s=%.0f", len(self._tasks), grace_seconds)
        _, still_running = await asyncio.wait(set(self._tasks), timeout=grace_seconds)

        for task in still_running:
            task.cancel()
        if still_running:
            # cancelled tasks still run their failure handlers before finishing
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("JobRunner cancelled unfinished jobs | count=%d", len(still_running))
