"""MQTT session port and adapters.

Provides SessionPort (Protocol), the value objects exchanged through it,
and three implementations:

- MqttSession — real aiomqtt-based session with reconnection
- MockMqttSession — test double that records calls and scripts events
- NullMqttSession — dry-run adapter that logs and discards

Design decisions:

- aiomqtt (and paho's SubscribeOptions) are imported lazily inside
  MqttSession so Mock/Null work without aiomqtt installed
- Subscriptions are NOT restored by the adapter; every reconnection
  opens a clean MQTT v5 session and the next ``receive()`` raises
  SessionExpiredError so the caller re-subscribes its own intent
- At most one delivered message is buffered (``Queue(maxsize=1)``)
- ``cancel()`` abandons pending operations at once; ``disconnect()``
  leaves the aiomqtt context (sending DISCONNECT) and waits for the
  runner to finish
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Protocol, Self, runtime_checkable

from telemqtt._cancel import CancellationToken
from telemqtt._errors import (
    OperationCancelledError,
    PublishError,
    SessionClosedError,
    SessionExpiredError,
    SubscribeError,
)
from telemqtt._settings import MqttSettings, SubscriptionSettings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Type aliases
# ---------------------------------------------------------------------------

MessageCallback = Callable[[str, str], Awaitable[None]]
"""Async callback receiving (topic, payload) for each delivered message."""

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


class QoS(IntEnum):
    """MQTT delivery guarantee level."""

    AT_MOST_ONCE = 0
    AT_LEAST_ONCE = 1
    EXACTLY_ONCE = 2


class RetainHandling(IntEnum):
    """When the broker sends retained messages for a new subscription."""

    SEND = 0
    SEND_IF_NEW = 1
    DO_NOT_SEND = 2

    @classmethod
    def from_name(cls, name: str) -> RetainHandling:
        """Map the settings spelling (``send``/``send_if_new``/``never``)."""
        mapping = {
            "send": cls.SEND,
            "send_if_new": cls.SEND_IF_NEW,
            "never": cls.DO_NOT_SEND,
        }
        try:
            return mapping[name]
        except KeyError:
            msg = f"Unknown retain handling {name!r}"
            raise ValueError(msg) from None


class SubscribeOutcome(IntEnum):
    """Per-filter SUBACK reason code (MQTT v5).

    Codes below ``0x80`` grant a QoS level; everything else is a
    refusal.  Unknown codes map to :attr:`UNSPECIFIED_ERROR`.
    """

    GRANTED_QOS_0 = 0x00
    GRANTED_QOS_1 = 0x01
    GRANTED_QOS_2 = 0x02
    UNSPECIFIED_ERROR = 0x80
    IMPLEMENTATION_SPECIFIC_ERROR = 0x83
    NOT_AUTHORIZED = 0x87
    TOPIC_FILTER_INVALID = 0x8F
    PACKET_IDENTIFIER_IN_USE = 0x91
    QUOTA_EXCEEDED = 0x97
    SHARED_SUBSCRIPTIONS_NOT_SUPPORTED = 0x9E
    SUBSCRIPTION_IDENTIFIERS_NOT_SUPPORTED = 0xA1
    WILDCARD_SUBSCRIPTIONS_NOT_SUPPORTED = 0xA2

    @classmethod
    def _missing_(cls, value: object) -> SubscribeOutcome:
        return cls.UNSPECIFIED_ERROR

    @classmethod
    def granting(cls, qos: int) -> SubscribeOutcome:
        """Outcome that grants *qos*."""
        return cls(int(qos))

    @property
    def granted(self) -> bool:
        """True when the broker accepted the filter."""
        return self.value < 0x80

    def describe(self) -> str:
        """Human-readable form used in log lines."""
        if self.granted:
            return f"granted QoS {self.value}"
        return self.name.lower().replace("_", " ")


@dataclass(frozen=True, slots=True)
class SubscriptionIntent:
    """Topic filter plus delivery options.

    Immutable so that the exact same intent can be re-submitted after
    a session expiry.
    """

    topic: str
    qos: QoS = QoS.AT_MOST_ONCE
    no_local: bool = False
    retain_as_published: bool = False
    retain_handling: RetainHandling = RetainHandling.SEND

    @classmethod
    def from_settings(cls, settings: SubscriptionSettings, topic: str) -> Self:
        """Build an intent for the absolute *topic* from settings."""
        return cls(
            topic=topic,
            qos=QoS(settings.qos),
            no_local=settings.no_local,
            retain_as_published=settings.retain_as_published,
            retain_handling=RetainHandling.from_name(settings.retain_handling),
        )


@dataclass(frozen=True, slots=True)
class DeliveredMessage:
    """A (topic, payload) pair delivered for an established subscription."""

    topic: str
    payload: str


# ---------------------------------------------------------------------------
# Port (Protocol)
# ---------------------------------------------------------------------------


@runtime_checkable
class SessionPort(Protocol):
    """Port contract for one logical, possibly reconnecting, MQTT session.

    All tasks share a single instance by reference.  Implementations
    serialise concurrent operations themselves.
    """

    @property
    def is_running(self) -> bool: ...

    async def run(self) -> None: ...

    async def subscribe(
        self,
        intent: SubscriptionIntent,
    ) -> list[SubscribeOutcome]: ...

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        qos: QoS = QoS.AT_MOST_ONCE,
        retain: bool = False,
    ) -> None: ...

    async def receive(self) -> DeliveredMessage: ...

    def cancel(self) -> None: ...

    async def disconnect(self) -> None: ...


async def _race_closed[T](closed: CancellationToken, awaitable: Awaitable[T]) -> T:
    """Await *awaitable* unless the session closes first."""
    try:
        return await closed.race(awaitable)
    except OperationCancelledError:
        msg = "Session is closed"
        raise SessionClosedError(msg) from None


# ---------------------------------------------------------------------------
# Null adapter
# ---------------------------------------------------------------------------


@dataclass
class NullMqttSession:
    """Dry-run session adapter.

    Grants every subscription, logs and discards publishes, and never
    delivers a message.  ``run()`` idles until cancel or disconnect.
    """

    _closed: CancellationToken = field(
        default_factory=lambda: CancellationToken("null-session"),
        init=False,
        repr=False,
    )
    _running: bool = field(default=False, init=False, repr=False)

    @property
    def is_running(self) -> bool:
        return self._running and not self._closed.cancelled

    async def run(self) -> None:
        """Idle until the session is closed."""
        logger.info("Dry-run session started; no broker connection is made")
        self._running = True
        try:
            await self._closed.wait()
        finally:
            self._running = False

    async def subscribe(self, intent: SubscriptionIntent) -> list[SubscribeOutcome]:
        """Pretend the broker granted *intent*."""
        if self._closed.cancelled:
            msg = "Session is closed"
            raise SessionClosedError(msg)
        logger.debug("NullMqttSession.subscribe(%s) — granted", intent.topic)
        return [SubscribeOutcome.granting(intent.qos)]

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        qos: QoS = QoS.AT_MOST_ONCE,
        retain: bool = False,
    ) -> None:
        """Log a publish request and discard it."""
        if self._closed.cancelled:
            msg = "Session is closed"
            raise SessionClosedError(msg)
        logger.info(
            "Dry-run publish %s = %s (qos=%d, retain=%s)",
            topic,
            payload,
            qos,
            retain,
        )

    async def receive(self) -> DeliveredMessage:
        """Block until the session closes, then raise."""
        await self._closed.wait()
        msg = "Session is closed"
        raise SessionClosedError(msg)

    def cancel(self) -> None:
        self._closed.cancel()

    async def disconnect(self) -> None:
        self._closed.cancel()


# ---------------------------------------------------------------------------
# Mock / test-double adapter
# ---------------------------------------------------------------------------

_PublishHook = Callable[[str, str], Awaitable[None]]


@dataclass
class MockMqttSession:
    """In-memory test double that records session interactions.

    Records subscriptions and publishes for assertion.  Tests script
    inbound events with :meth:`deliver`, :meth:`expire` and
    :meth:`fail`, and subscribe/publish results with
    :meth:`script_subscribe` and :meth:`fail_next_publish`.

    ``publish_hook`` is awaited inside every publish, which lets a test
    advance a fake clock or park the publisher on a pending operation.
    """

    subscriptions: list[SubscriptionIntent] = field(default_factory=list)
    published: list[tuple[str, str, int, bool]] = field(default_factory=list)
    history: list[str] = field(default_factory=list)
    publish_hook: _PublishHook | None = field(default=None, repr=False)
    receive_count: int = 0
    cancel_count: int = 0
    disconnect_count: int = 0
    _inbox: asyncio.Queue[DeliveredMessage | Exception] = field(
        default_factory=asyncio.Queue,
        init=False,
        repr=False,
    )
    _subscribe_script: deque[list[SubscribeOutcome] | Exception] = field(
        default_factory=deque,
        init=False,
        repr=False,
    )
    _publish_errors: deque[Exception] = field(
        default_factory=deque,
        init=False,
        repr=False,
    )
    _closed: CancellationToken = field(
        default_factory=lambda: CancellationToken("mock-session"),
        init=False,
        repr=False,
    )
    _running: bool = field(default=False, init=False, repr=False)

    # -- SessionPort methods -------------------------------------------------

    @property
    def is_running(self) -> bool:
        """True while run() is active and the session is open."""
        return self._running and not self._closed.cancelled

    async def run(self) -> None:
        """Stay "connected" until cancel or disconnect."""
        self._running = True
        try:
            await self._closed.wait()
        finally:
            self._running = False

    async def subscribe(self, intent: SubscriptionIntent) -> list[SubscribeOutcome]:
        """Record *intent* and return the next scripted outcome.

        Without a script the requested QoS is granted.
        """
        if self._closed.cancelled:
            msg = "Session is closed"
            raise SessionClosedError(msg)
        self.subscriptions.append(intent)
        self.history.append("subscribe")
        if not self._subscribe_script:
            return [SubscribeOutcome.granting(intent.qos)]
        scripted = self._subscribe_script.popleft()
        if isinstance(scripted, Exception):
            raise scripted
        return list(scripted)

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        qos: QoS = QoS.AT_MOST_ONCE,
        retain: bool = False,
    ) -> None:
        """Record a publish call (after running ``publish_hook``)."""
        if self._closed.cancelled:
            msg = "Session is closed"
            raise SessionClosedError(msg)
        if self.publish_hook is not None:
            await self.publish_hook(topic, payload)
        if self._publish_errors:
            raise self._publish_errors.popleft()
        self.published.append((topic, payload, int(qos), retain))

    async def receive(self) -> DeliveredMessage:
        """Return the next scripted message or raise the scripted error."""
        self.receive_count += 1
        self.history.append("receive")
        item = await _race_closed(self._closed, self._inbox.get())
        if isinstance(item, Exception):
            raise item
        return item

    def cancel(self) -> None:
        self.cancel_count += 1
        self._closed.cancel()

    async def disconnect(self) -> None:
        self.disconnect_count += 1
        self._closed.cancel()

    # -- Test helpers -------------------------------------------------------

    @property
    def closed(self) -> bool:
        """True after cancel() or disconnect()."""
        return self._closed.cancelled

    def deliver(self, topic: str, payload: str) -> None:
        """Queue an inbound message for the next ``receive()``."""
        self._inbox.put_nowait(DeliveredMessage(topic=topic, payload=payload))

    def expire(self) -> None:
        """Queue a session expiry for the next ``receive()``."""
        self._inbox.put_nowait(SessionExpiredError())

    def fail(self, error: Exception) -> None:
        """Queue an arbitrary error for the next ``receive()``."""
        self._inbox.put_nowait(error)

    def script_subscribe(self, *results: list[SubscribeOutcome] | Exception) -> None:
        """Queue outcome lists (or errors) for upcoming subscribes."""
        self._subscribe_script.extend(results)

    def fail_next_publish(self, *errors: Exception) -> None:
        """Make the next publishes raise *errors* in order."""
        self._publish_errors.extend(errors)

    @property
    def publish_count(self) -> int:
        """Number of recorded publishes."""
        return len(self.published)

    @property
    def subscribe_count(self) -> int:
        """Number of recorded subscriptions."""
        return len(self.subscriptions)

    def get_messages_for(self, topic: str) -> list[tuple[str, int, bool]]:
        """Return ``(payload, qos, retain)`` tuples for *topic*."""
        return [
            (payload, qos, retain)
            for t, payload, qos, retain in self.published
            if t == topic
        ]


# ---------------------------------------------------------------------------
# Real adapter
# ---------------------------------------------------------------------------


@dataclass
class MqttSession:
    """Production session adapter backed by *aiomqtt* (MQTT v5).

    ``run()`` maintains a persistent connection with exponential
    backoff between attempts.  ``aiomqtt`` is imported lazily so the
    mock and null adapters work without the dependency installed.
    """

    settings: MqttSettings

    # internal state --------------------------------------------------------
    _client: Any = field(default=None, init=False, repr=False)
    _run_task: asyncio.Task[None] | None = field(
        default=None,
        init=False,
        repr=False,
    )
    _inbox: asyncio.Queue[DeliveredMessage] = field(
        default_factory=lambda: asyncio.Queue(maxsize=1),
        init=False,
        repr=False,
    )
    _connected: asyncio.Event = field(
        default_factory=asyncio.Event,
        init=False,
        repr=False,
    )
    _expired: asyncio.Event = field(
        default_factory=asyncio.Event,
        init=False,
        repr=False,
    )
    _closed: CancellationToken = field(
        default_factory=lambda: CancellationToken("mqtt-session"),
        init=False,
        repr=False,
    )
    _generation: int = field(default=0, init=False, repr=False)
    _subscribed_generation: int = field(default=0, init=False, repr=False)
    _reported_generation: int = field(default=0, init=False, repr=False)
    _stopping: bool = field(default=False, init=False, repr=False)
    _rng: random.Random = field(
        default_factory=random.Random,
        init=False,
        repr=False,
    )

    # -- State ----------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        """Whether the session currently holds a broker connection."""
        return self._connected.is_set()

    @property
    def is_running(self) -> bool:
        """Whether ``run()`` is active and the session is not closed."""
        return self._run_task is not None and not self._closed.cancelled

    @property
    def generation(self) -> int:
        """Number of successful connections so far."""
        return self._generation

    # -- connect-and-run -------------------------------------------------------

    async def run(self) -> None:
        """Connect and keep the session alive until cancel or disconnect.

        Reconnects after connection loss, waiting ``reconnect_interval``
        seconds and doubling the wait (plus jitter) after each failed
        attempt, capped at ``reconnect_max_interval``.

        Raises:
            RuntimeError: If aiomqtt is missing or ``run()`` is already
                active on this session.
        """
        try:
            import aiomqtt  # noqa: PLC0415
        except ModuleNotFoundError as exc:
            msg = "aiomqtt is required to use MqttSession"
            raise RuntimeError(msg) from exc

        if self._run_task is not None:
            msg = "MqttSession.run() is already active"
            raise RuntimeError(msg)
        self._run_task = asyncio.current_task()

        delay = self.settings.reconnect_interval
        try:
            while not self._stopping:
                try:
                    async with self._open(aiomqtt) as client:
                        self._client = client
                        try:
                            self._on_connected()
                            delay = self.settings.reconnect_interval
                            async for message in client.messages:
                                delivered = self._decode(message)
                                if delivered is not None:
                                    await self._inbox.put(delivered)
                        finally:
                            self._connected.clear()
                            self._client = None
                    logger.warning("MQTT connection closed by the broker")
                except asyncio.CancelledError:
                    raise
                except aiomqtt.MqttError as exc:
                    logger.warning(
                        "MQTT connection lost (%s), reconnecting in %.1fs",
                        exc,
                        delay,
                    )
                    await asyncio.sleep(delay + self._rng.uniform(0, delay / 10))
                    delay = min(delay * 2, self.settings.reconnect_max_interval)
        finally:
            self._run_task = None
            self._closed.cancel()
            logger.info("MQTT session to %s stopped", self.endpoint)

    @property
    def endpoint(self) -> str:
        """``host:port`` of the broker."""
        return f"{self.settings.host}:{self.settings.port}"

    # -- SessionPort operations -----------------------------------------------

    async def subscribe(self, intent: SubscriptionIntent) -> list[SubscribeOutcome]:
        """Subscribe to *intent* and return one outcome per filter.

        Waits for the connection to be established first.

        Raises:
            SubscribeError: On invalid parameters or transport failure.
            SessionClosedError: If the session closes meanwhile.
        """
        import aiomqtt  # noqa: PLC0415
        from paho.mqtt.subscribeoptions import SubscribeOptions  # noqa: PLC0415

        client = await self._wait_connected()
        generation = self._generation
        try:
            options = SubscribeOptions(
                qos=int(intent.qos),
                noLocal=intent.no_local,
                retainAsPublished=intent.retain_as_published,
                retainHandling=int(intent.retain_handling),
            )
            codes = await _race_closed(
                self._closed,
                client.subscribe(intent.topic, options=options),
            )
        except ValueError as exc:
            msg = f"Invalid subscription for {intent.topic!r}: {exc}"
            raise SubscribeError(msg) from exc
        except aiomqtt.MqttError as exc:
            msg = f"Subscribe to {intent.topic!r} failed: {exc}"
            raise SubscribeError(msg) from exc
        self._subscribed_generation = max(self._subscribed_generation, generation)
        return [SubscribeOutcome(int(getattr(code, "value", code))) for code in codes]

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        qos: QoS = QoS.AT_MOST_ONCE,
        retain: bool = False,
    ) -> None:
        """Publish once connected.

        Raises:
            PublishError: If the broker connection fails the publish.
            SessionClosedError: If the session closes meanwhile.
        """
        import aiomqtt  # noqa: PLC0415

        client = await self._wait_connected()
        try:
            await _race_closed(
                self._closed,
                client.publish(topic, payload, qos=int(qos), retain=retain),
            )
        except aiomqtt.MqttError as exc:
            msg = f"Publish to {topic!r} failed: {exc}"
            raise PublishError(msg) from exc
        logger.debug("Published to %s (qos=%d, retain=%s)", topic, qos, retain)

    async def receive(self) -> DeliveredMessage:
        """Return the next delivered message.

        A reconnection only expires the session when no subscribe has
        been issued on the new connection yet.

        Raises:
            SessionExpiredError: Once after every reconnection that
                predates the latest subscribe.
            SessionClosedError: If the session is or becomes closed.
        """
        while True:
            self._expired.clear()
            if self._expiry_pending():
                self._reported_generation = self._generation
                raise SessionExpiredError(self._generation)

            getter = asyncio.ensure_future(self._inbox.get())
            expiry = asyncio.ensure_future(self._expired.wait())
            try:
                await _race_closed(
                    self._closed,
                    asyncio.wait({getter, expiry}, return_when=asyncio.FIRST_COMPLETED),
                )
            finally:
                for task in (getter, expiry):
                    if not task.done():
                        task.cancel()
                        with contextlib.suppress(asyncio.CancelledError):
                            await task

            if getter.done() and not getter.cancelled():
                return getter.result()

    def cancel(self) -> None:
        """Abandon pending operations and stop the runner (no DISCONNECT wait)."""
        self._stopping = True
        self._closed.cancel()
        if self._run_task is not None:
            self._run_task.cancel()

    async def disconnect(self) -> None:
        """Leave the broker gracefully and wait for the runner to finish.

        Idempotent — safe to call multiple times.
        """
        self._stopping = True
        task = self._run_task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._closed.cancel()

    # -- Internal -----------------------------------------------------------

    def _open(self, aiomqtt: Any) -> Any:
        """Build the aiomqtt client for one connection attempt."""
        password: str | None = None
        if self.settings.password is not None:
            password = self.settings.password.get_secret_value()
        return aiomqtt.Client(
            hostname=self.settings.host,
            port=self.settings.port,
            username=self.settings.username,
            password=password,
            identifier=self.settings.client_id or None,
            keepalive=self.settings.keepalive,
            protocol=aiomqtt.ProtocolVersion.V5,
        )

    def _on_connected(self) -> None:
        self._generation += 1
        if self._generation > 1:
            # Every connection starts a clean session: prior
            # subscriptions are gone.  Wakes a pending receive().
            self._expired.set()
        self._connected.set()
        logger.info(
            "MQTT connected to %s (connection #%d)",
            self.endpoint,
            self._generation,
        )

    def _expiry_pending(self) -> bool:
        """Whether the current connection still lacks a subscribe and is unreported."""
        current = self._generation
        return (
            current > 1
            and current > self._subscribed_generation
            and current > self._reported_generation
        )

    async def _wait_connected(self) -> Any:
        if not self._connected.is_set():
            await _race_closed(self._closed, self._connected.wait())
        client = self._client
        if client is None:
            msg = "Session is closed"
            raise SessionClosedError(msg)
        return client

    @staticmethod
    def _decode(message: Any) -> DeliveredMessage | None:
        """Decode an aiomqtt message; ``None`` payloads are skipped."""
        topic = str(message.topic)
        if message.payload is None:
            logger.debug("Skipping message with None payload on %s", topic)
            return None
        payload = (
            message.payload.decode("utf-8", errors="replace")
            if isinstance(message.payload, (bytes, bytearray))
            else str(message.payload)
        )
        return DeliveredMessage(topic=topic, payload=payload)
