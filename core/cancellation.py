# core/cancellation.py
"""Cooperative cancellation for backend calls."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

import structlog

from core.errors import GenerationCancelled

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Signal shared between a caller and an in-flight generation call.

    The caller triggers :meth:`cancel`; every suspension point in the engine
    and the backend client checks the token or races against it.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Generation stopped by caller.") -> None:
        if not self._event.is_set():
            self.reason = reason
            logger.info("Cancellation requested.", reason=reason)
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise GenerationCancelled(self.reason or "Generation cancelled.")

    async def wait(self) -> None:
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        When the token wins, the pending operation is cancelled and
        :class:`GenerationCancelled` is raised.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            work.cancel()
            waiter.cancel()
            raise
        if work in done:
            waiter.cancel()
            return work.result()
        work.cancel()
        try:
            await work
        except (asyncio.CancelledError, Exception) as exc:
            logger.debug(
                "Discarded result of cancelled operation.",
                outcome=type(exc).__name__,
            )
        raise GenerationCancelled(self.reason or "Generation cancelled.")
