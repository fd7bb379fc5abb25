"""Explicit cancellation token passed through every async boundary of a job."""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

T = TypeVar("T")


class OperationCancelledError(Exception):
    """Raised when work is attempted on a cancelled token."""


class CancellationToken:
    """One-shot cancellation flag that can be awaited.

    Cancelling is idempotent. Callers race ``wait()`` against their own work
    or call ``raise_if_cancelled()`` at checkpoints.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError(self.reason or "cancelled")

    async def run(self, aw: Awaitable[T]) -> T:
        """Await ``aw`` unless the token fires first.

        The pending work is cancelled when the token wins.

        Raises:
            OperationCancelledError: Token cancelled before ``aw`` finished.
        """
        if self.cancelled:
            if asyncio.iscoroutine(aw):
                aw.close()
            raise OperationCancelledError(self.reason or "cancelled")
        work = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
            if work.done():
                return work.result()
            raise OperationCancelledError(self.reason or "cancelled")
        finally:
            for fut in (work, waiter):
                if not fut.done():
                    fut.cancel()
            await asyncio.gather(work, waiter, return_exceptions=True)
