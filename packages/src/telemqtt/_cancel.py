"""Cancellation handles for task groups.

A :class:`CancellationToken` is the broadcast stop switch for one
independently cancellable task group.  It is passed explicitly into
every task at creation and consulted at every suspension point through
:meth:`CancellationToken.race`.

Properties:

- **Idempotent** — ``cancel()`` on a fired token is a no-op.
- **Unblocking** — any awaitable currently raced against the token is
  cancelled within one event-loop iteration and the caller receives
  :class:`~telemqtt._errors.OperationCancelledError`.
- **No swallowing** — the error propagates up the task's call chain
  until the task's top level returns.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable

from telemqtt._errors import OperationCancelledError

logger = logging.getLogger(__name__)


class CancellationToken:
    """Broadcast, idempotent stop signal scoped to one task group."""

    def __init__(self, name: str = "") -> None:
        self._name = name
        self._event = asyncio.Event()

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else "active"
        return f"CancellationToken({self._name!r}, {state})"

    @property
    def name(self) -> str:
        """Task-group name used in log lines and errors."""
        return self._name

    @property
    def cancelled(self) -> bool:
        """True once :meth:`cancel` has been called."""
        return self._event.is_set()

    def cancel(self) -> None:
        """Fire the token.  Safe to call any number of times."""
        if self._event.is_set():
            return
        logger.debug("Cancellation token '%s' fired", self._name)
        self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise :class:`OperationCancelledError` if the token has fired."""
        if self._event.is_set():
            raise OperationCancelledError(self._name)

    async def wait(self) -> None:
        """Block until the token fires."""
        await self._event.wait()

    async def race[T](self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable* unless the token fires first.

        Returns:
            The awaitable's result when it completes first.  Its
            exceptions propagate unchanged.

        Raises:
            OperationCancelledError: If the token fires before the
                awaitable completes.  The awaitable is cancelled and
                awaited before the error is raised.
        """
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelledError(self._name)

        operation = asyncio.ensure_future(awaitable)
        stop = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait(
                {operation, stop},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (stop, operation):
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task

        if operation.cancelled():
            raise OperationCancelledError(self._name)
        return operation.result()

    async def sleep(self, seconds: float) -> None:
        """Sleep for *seconds* unless the token fires first."""
        await self.race(asyncio.sleep(max(seconds, 0.0)))
