"""Shutdown coordination and task supervision.

:class:`ShutdownCoordinator` is the root of the task tree.  It

- hands out one :class:`~telemqtt.CancellationToken` per task group,
- turns SIGINT/SIGTERM (or any other trigger) into a single, race-free
  shutdown: session teardown is requested and every token fires,
- supervises the session runner and the worker coroutines, so that
  process exit is gated on every task actually returning and any
  unexpected fault surfaces at the top level.

Triggering does not wait for tasks to acknowledge cancellation; the
wait happens in :meth:`ShutdownCoordinator.supervise`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import AsyncIterator, Awaitable, Iterable, Sequence
from enum import StrEnum
from typing import Any

from telemqtt._cancel import CancellationToken
from telemqtt._mqtt import SessionPort

logger = logging.getLogger(__name__)


class Teardown(StrEnum):
    """How the session is torn down on shutdown."""

    DISCONNECT = "disconnect"
    """Graceful: send DISCONNECT and wait for the runner to finish."""

    CANCEL = "cancel"
    """Abandon pending operations immediately."""


class ShutdownCoordinator:
    """Converts one stop trigger into an orderly shutdown.

    Args:
        session: The shared session to tear down.
        teardown: Teardown strategy applied once on trigger.
    """

    def __init__(
        self,
        session: SessionPort,
        *,
        teardown: Teardown = Teardown.DISCONNECT,
    ) -> None:
        self._session = session
        self._teardown = teardown
        self._tokens: dict[str, CancellationToken] = {}
        self._reason: str | None = None
        self._teardown_task: asyncio.Task[None] | None = None
        self._signals: list[signal.Signals] = []

    # -- Tokens ----------------------------------------------------------------

    def token(self, name: str) -> CancellationToken:
        """Return the token for task group *name*, creating it if needed.

        Tokens registered after the trigger are born cancelled.
        """
        token = self._tokens.get(name)
        if token is None:
            token = CancellationToken(name)
            if self.triggered:
                token.cancel()
            self._tokens[name] = token
        return token

    @property
    def tokens(self) -> dict[str, CancellationToken]:
        """All registered tokens by task-group name."""
        return dict(self._tokens)

    # -- Trigger ---------------------------------------------------------------

    @property
    def triggered(self) -> bool:
        """True once :meth:`trigger` has run."""
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        """Reason passed to the first :meth:`trigger` call."""
        return self._reason

    def trigger(self, reason: str = "requested") -> None:
        """Request session teardown and fire every token.

        Exactly-once: later calls are no-ops.  Must be called from the
        running event loop; returns without waiting for anything.
        """
        if self._reason is not None:
            logger.debug("Shutdown already triggered (%s), ignoring %s", self._reason, reason)
            return
        self._reason = reason
        logger.info("Shutdown triggered (%s), teardown=%s", reason, self._teardown)
        self._teardown_task = asyncio.ensure_future(self._teardown_session())
        for token in self._tokens.values():
            token.cancel()

    async def _teardown_session(self) -> None:
        if self._teardown is Teardown.CANCEL:
            self._session.cancel()
        else:
            await self._session.disconnect()

    # -- Signals ---------------------------------------------------------------

    def install_signal_handlers(
        self,
        signals: Iterable[signal.Signals] = (signal.SIGINT, signal.SIGTERM),
    ) -> None:
        """Route *signals* to :meth:`trigger` on the running loop."""
        loop = asyncio.get_running_loop()
        for sig in signals:
            loop.add_signal_handler(sig, self._on_signal, sig)
            self._signals.append(sig)

    def remove_signal_handlers(self) -> None:
        """Undo :meth:`install_signal_handlers`."""
        loop = asyncio.get_running_loop()
        while self._signals:
            loop.remove_signal_handler(self._signals.pop())

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info("Received %s", sig.name)
        self.trigger(f"signal {sig.name}")

    # -- Supervision -----------------------------------------------------------

    async def supervise(
        self,
        runner: Awaitable[None],
        workers: Sequence[Awaitable[Any]],
    ) -> list[Any]:
        """Run the session *runner* and *workers* until all workers return.

        When every worker has returned, shutdown is triggered (if it
        was not already) and the runner is awaited.  If any task raises
        an unexpected exception, shutdown is triggered, the remaining
        workers are cancelled, and the exception is re-raised.

        Returns:
            Worker results in the order given (``None`` for a worker
            that was cancelled from outside).
        """
        runner_task = asyncio.ensure_future(runner)
        worker_tasks = [asyncio.ensure_future(worker) for worker in workers]
        try:
            await self._wait_workers(runner_task, worker_tasks)
        except BaseException:
            self.trigger("fault")
            for task in worker_tasks:
                task.cancel()
            await asyncio.gather(*worker_tasks, return_exceptions=True)
            await self._finish(runner_task, reraise=False)
            raise

        self.trigger("workers finished")
        await self._finish(runner_task, reraise=True)
        return [None if task.cancelled() else task.result() for task in worker_tasks]

    async def _wait_workers(
        self,
        runner_task: asyncio.Future[None],
        worker_tasks: list[asyncio.Future[Any]],
    ) -> None:
        remaining: set[asyncio.Future[Any]] = set(worker_tasks)
        watched: set[asyncio.Future[Any]] = {runner_task, *worker_tasks}
        while remaining:
            done, _ = await asyncio.wait(watched, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                watched.discard(task)
                remaining.discard(task)
                if task.cancelled():
                    continue
                exc = task.exception()
                if exc is not None:
                    raise exc
                if task is runner_task:
                    logger.info("Session runner finished")

    async def _finish(self, runner_task: asyncio.Future[None], *, reraise: bool) -> None:
        if self._teardown_task is not None:
            await self._teardown_task
        if not runner_task.done():
            # Teardown closes the session; a runner that ignores it is
            # cancelled.
            runner_task.cancel()
        try:
            await runner_task
        except asyncio.CancelledError:
            pass
        except Exception:
            if reraise:
                raise
            logger.exception("Session runner failed during shutdown")


async def watch_event(event: asyncio.Event, coordinator: ShutdownCoordinator) -> None:
    """Trigger *coordinator* once *event* is set."""
    await event.wait()
    coordinator.trigger("shutdown event")


@contextlib.asynccontextmanager
async def trigger_on(
    event: asyncio.Event,
    coordinator: ShutdownCoordinator,
) -> AsyncIterator[ShutdownCoordinator]:
    """Bind an :class:`asyncio.Event` to *coordinator* for the block's duration."""
    watcher = asyncio.create_task(watch_event(event, coordinator))
    try:
        yield coordinator
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher
