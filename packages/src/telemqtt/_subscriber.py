"""Subscribe operation and the subscribe-and-receive loop.

State machine driven by :class:`ReceiveLoop`::

    NOT_SUBSCRIBED → SUBSCRIBING → RECEIVING
                          ↑            │ session expired
                          └────────────┘
    any failure ───────────────────────→ TERMINATED

Ordering guarantees:

- ``subscribe`` always precedes the first ``receive``.  Receiving without
  an established subscription would park the loop forever, so a failed
  initial subscribe terminates the loop without receiving.
- After a session expiry the identical :class:`SubscriptionIntent` is
  re-submitted before delivery processing resumes.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from enum import StrEnum

from telemqtt._cancel import CancellationToken
from telemqtt._errors import (
    OperationCancelledError,
    SessionError,
    SessionExpiredError,
)
from telemqtt._mqtt import (
    DeliveredMessage,
    MessageCallback,
    SessionPort,
    SubscriptionIntent,
)

logger = logging.getLogger(__name__)


class LoopState(StrEnum):
    """States of the subscribe-and-receive loop."""

    NOT_SUBSCRIBED = "not_subscribed"
    SUBSCRIBING = "subscribing"
    RECEIVING = "receiving"
    TERMINATED = "terminated"


async def _guarded[T](token: CancellationToken | None, awaitable: Awaitable[T]) -> T:
    if token is None:
        return await awaitable
    return await token.race(awaitable)


async def subscribe(
    session: SessionPort,
    intent: SubscriptionIntent,
    *,
    token: CancellationToken | None = None,
) -> bool:
    """Issue *intent* and report whether the subscription is established.

    Blocks until the session returns one outcome per filter or fails.
    Errors (bad parameters, transport failure, cancellation) are
    logged and reported as ``False``; retrying is the caller's call.

    Returns:
        True when every requested filter was granted.
    """
    try:
        outcomes = await _guarded(token, session.subscribe(intent))
    except (SessionError, OperationCancelledError) as exc:
        logger.warning("Subscribe error occurred: %s", exc)
        return False

    if not outcomes:
        logger.warning("Subscribe to %s returned no outcome", intent.topic)
        return False

    logger.info(
        "Result of subscribe request for %s: %s",
        intent.topic,
        ", ".join(outcome.describe() for outcome in outcomes),
    )
    return all(outcome.granted for outcome in outcomes)


async def log_message(topic: str, payload: str) -> None:
    """Default message consumer: one INFO line per message."""
    logger.info("Received message on %s: %s", topic, payload)


class ReceiveLoop:
    """Subscribe once, then receive until the session gives up.

    Args:
        session: Shared session handle.
        intent: The subscription to establish (and re-establish).
        on_message: Consumer for delivered messages.  Exceptions it
            raises are treated as faults and propagate.
        token: Cancellation token of the receiver task group.
        max_resubscribes: Maximum consecutive session expiries without
            a delivered message in between.  ``None`` is unbounded.
    """

    def __init__(
        self,
        session: SessionPort,
        intent: SubscriptionIntent,
        *,
        on_message: MessageCallback = log_message,
        token: CancellationToken | None = None,
        max_resubscribes: int | None = None,
    ) -> None:
        self._session = session
        self._intent = intent
        self._on_message = on_message
        self._token = token
        self._max_resubscribes = max_resubscribes
        self._state = LoopState.NOT_SUBSCRIBED
        self._history: list[LoopState] = [LoopState.NOT_SUBSCRIBED]
        self._received = 0
        self._resubscriptions = 0

    @property
    def state(self) -> LoopState:
        """Current state."""
        return self._state

    @property
    def history(self) -> list[LoopState]:
        """Every state entered so far, in order."""
        return list(self._history)

    @property
    def received(self) -> int:
        """Messages handed to the consumer."""
        return self._received

    @property
    def resubscriptions(self) -> int:
        """Re-subscriptions issued after session expiry."""
        return self._resubscriptions

    async def run(self) -> LoopState:
        """Drive the state machine to TERMINATED and return the final state."""
        reason = "fault"
        try:
            reason = await self._drive()
        finally:
            self._enter(LoopState.TERMINATED)
            logger.info("Receive loop for %s terminated: %s", self._intent.topic, reason)
        return self._state

    async def _drive(self) -> str:
        self._enter(LoopState.SUBSCRIBING)
        if not await subscribe(self._session, self._intent, token=self._token):
            return "subscription not established"
        self._enter(LoopState.RECEIVING)

        expiries = 0
        while True:
            try:
                message = await _guarded(self._token, self._session.receive())
            except SessionExpiredError:
                expiries += 1
                if (
                    self._max_resubscribes is not None
                    and expiries > self._max_resubscribes
                ):
                    return f"session expired {expiries} times in a row"
                if not await self._resubscribe():
                    return "re-subscription failed"
                continue
            except OperationCancelledError:
                return "cancelled"
            except SessionError as exc:
                return f"session error: {exc}"

            expiries = 0
            await self._deliver(message)

    async def _resubscribe(self) -> bool:
        logger.info("Session expired, re-subscribing to %s", self._intent.topic)
        self._enter(LoopState.SUBSCRIBING)
        self._resubscriptions += 1
        if not await subscribe(self._session, self._intent, token=self._token):
            return False
        self._enter(LoopState.RECEIVING)
        return True

    async def _deliver(self, message: DeliveredMessage) -> None:
        self._received += 1
        await self._on_message(message.topic, message.payload)

    def _enter(self, state: LoopState) -> None:
        if state is self._state:
            return
        logger.debug("Receive loop %s -> %s", self._state, state)
        self._state = state
        self._history.append(state)
