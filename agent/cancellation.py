"""Cooperative cancellation for in-flight inference.

A ``CancelToken`` is threaded through every suspension point of a loop run
(provider requests, retry sleeps, tool execution).  Code checks it
explicitly with ``raise_if_cancelled()``; a cancelled run surfaces as
``InferenceCancelled`` so callers can tell "the user stopped this" apart
from "this failed".
"""

import asyncio
from typing import Optional

CANCELLED_MESSAGE = "Request interrupted by user."


class InferenceCancelled(Exception):
    """Raised when a run is cancelled.  Never retried, never swallowed."""

    def __init__(self, message: str = CANCELLED_MESSAGE):
        super().__init__(message or CANCELLED_MESSAGE)


class CancelToken:
    def __init__(self):
        self._cancelled = False
        self._reason: Optional[str] = None
        self._event: Optional[asyncio.Event] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        if self._event is not None:
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise InferenceCancelled(self._reason or CANCELLED_MESSAGE)

    async def wait(self) -> None:
        if self._cancelled:
            return
        if self._event is None:
            # Created lazily so the event binds to the running loop
            self._event = asyncio.Event()
        await self._event.wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep for *seconds*, raising ``InferenceCancelled`` as soon as the token fires."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()


def raise_if_cancelled(token: Optional[CancelToken]) -> None:
    if token is not None:
        token.raise_if_cancelled()


async def run_cancellable(awaitable, token: Optional[CancelToken] = None):
    """Await *awaitable*, abandoning it as soon as *token* fires.

    The underlying task is cancelled and ``InferenceCancelled`` raised, so an
    in-flight HTTP request does not hold up an interrupt.
    """
    if token is None:
        return await awaitable
    token.raise_if_cancelled()
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
    if not task.done():
        task.cancel()
        await asyncio.wait({task})
        raise InferenceCancelled(token.reason or CANCELLED_MESSAGE)
    return task.result()
