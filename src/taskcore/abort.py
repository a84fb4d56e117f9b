from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from taskcore.exceptions import StepAbortedError

T = TypeVar("T")


class AbortSignal:
    """Cooperative cancellation flag shared by a step and everything it awaits."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = "The operation was aborted."

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def abort(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        if reason:
            self._reason = reason
        self._event.set()

    def raise_if_aborted(self) -> None:
        if self.aborted:
            raise StepAbortedError(self._reason)

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the signal fires first.

        The pending operation is cancelled on abort, or when the awaiting task
        is cancelled itself, and ``StepAbortedError`` is raised on abort.
        """
        if self.aborted:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise StepAbortedError(self._reason)
        operation = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({operation, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            operation.cancel()
            raise
        finally:
            waiter.cancel()
        if operation in done:
            return operation.result()
        operation.cancel()
        try:
            await operation
        except asyncio.CancelledError:
            pass
        raise StepAbortedError(self._reason)
