"""
Cooperative cancellation for background jobs.

A CancellationToken is shared between the job orchestrator, the responder
and the LLM adapter. Cancelling only sets a flag; whoever is awaiting the
slow call is expected to notice it and stop.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

T = TypeVar("T")


class JobCancelledError(Exception):
    """Raised when a token fires while work guarded by it is still running."""


class CancellationToken:

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: str = ""

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
        if self.cancelled:
            raise JobCancelledError(self.reason)

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable`, abandoning it as soon as the token fires.

        The inner task is cancelled (which closes an in-flight HTTP request,
        and with it the model's generation) and JobCancelledError is raised.
        """
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not work.done():
                work.cancel()
                try:
                    await work
                except (asyncio.CancelledError, Exception):
                    pass

        if work.cancelled() or not work.done():
            raise JobCancelledError(self.reason)
        # a result that raced in after the token fired is discarded
        if self.cancelled and work.exception() is None:
            raise JobCancelledError(self.reason)
        return work.result()
