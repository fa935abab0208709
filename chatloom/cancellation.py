"""
Per-turn cancellation token.

One token is created for each turn and handed to every component that
suspends (upload, activation polling, streaming, tool HTTP calls, media
downloads).  Each suspension goes through :meth:`CancelToken.guard`, which
races the awaited operation against the token and abandons the operation
as soon as the token fires.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from chatloom.errors import UserAbort

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "aborted by user") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise UserAbort(self.reason or "aborted by user")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await *awaitable* unless the token fires first.

        Raises ``UserAbort`` when cancelled; the in-flight operation is
        cancelled and awaited so its resources are released.
        """
        if self._event.is_set():
            # Never start work once cancelled.
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _pending = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.debug("Abandoned operation failed during cancellation", exc_info=True)
        raise UserAbort(self.reason or "aborted by user")

    async def sleep(self, seconds: float) -> None:
        """Sleep for *seconds*, waking early with ``UserAbort`` if cancelled."""
        if seconds <= 0:
            self.raise_if_cancelled()
            return
        await self.guard(asyncio.sleep(seconds))
