"""LeadZap – Background Supervisor.

Runs work that must outlive the HTTP request that triggered it (audio
delivery). Every task gets its own error boundary so a failure is logged and
never reaches the event loop's default handler. The gateway lifespan drains
the supervisor on shutdown: tasks get a bounded grace period, stragglers are
cancelled.
"""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine

import structlog

from app.core.instrumentation import BACKGROUND_TASKS

logger = structlog.get_logger()


class BackgroundSupervisor:
    """Tracks fire-and-forget tasks independently of request lifecycles."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def reopen(self) -> None:
        """Accept work again after a drain (gateway restart within one process)."""
        self._closed = False

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        """Schedule ``coro`` and return immediately.

        Raises:
            RuntimeError: If the supervisor is already draining.
        """
        if self._closed:
            coro.close()
            raise RuntimeError("BackgroundSupervisor is shutting down")
        task = asyncio.create_task(self._guard(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._forget)
        BACKGROUND_TASKS.set(len(self._tasks))
        logger.debug("background.task_spawned", task=name, active=len(self._tasks))
        return task

    def _forget(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        BACKGROUND_TASKS.set(len(self._tasks))

    async def _guard(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            logger.warning("background.task_cancelled", task=name)
            raise
        except Exception as e:
            logger.error("background.task_failed", task=name, error=str(e), exc_info=True)

    async def drain(self, timeout: float) -> None:
        """Stop accepting work, wait up to ``timeout`` seconds, cancel the rest."""
        self._closed = True
        pending = set(self._tasks)
        if not pending:
            return
        logger.info("background.draining", pending=len(pending), timeout=timeout)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("background.drain_cancelled", cancelled=len(still_running))

    async def join(self) -> None:
        """Wait for all currently tracked tasks (tests, scripts)."""
        while self._tasks:
            await asyncio.gather(*set(self._tasks), return_exceptions=True)
