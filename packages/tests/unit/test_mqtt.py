"""Unit tests for telemqtt._mqtt — session port, value objects, adapters.

Test Techniques Used:
    - Specification-based Testing: SUBACK outcomes, intents, Null/Mock behaviour
    - Protocol Conformance: isinstance checks for SessionPort structural subtyping
    - State Transition Testing: MqttSession connect/reconnect/cancel/disconnect
    - Mock-based Isolation: aiomqtt patched via sys.modules for MqttSession
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Callable
from dataclasses import FrozenInstanceError
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from telemqtt._errors import (
    PublishError,
    SessionClosedError,
    SessionExpiredError,
    SubscribeError,
)
from telemqtt._mqtt import (
    DeliveredMessage,
    MockMqttSession,
    MqttSession,
    NullMqttSession,
    QoS,
    RetainHandling,
    SessionPort,
    SubscribeOutcome,
    SubscriptionIntent,
)
from telemqtt._settings import MqttSettings, SubscriptionSettings

# ---------------------------------------------------------------------------
# Helpers & fixtures
# ---------------------------------------------------------------------------


async def _wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the loop until *predicate* holds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.001)


@pytest.fixture
def mqtt_settings() -> MqttSettings:
    """Fast-reconnecting settings against a fake broker."""
    return MqttSettings(
        host="broker.test",
        client_id="unit",
        reconnect_interval=0.01,
        reconnect_max_interval=0.02,
    )


@pytest.fixture
def intent() -> SubscriptionIntent:
    return SubscriptionIntent(
        topic="prefix/+",
        qos=QoS.EXACTLY_ONCE,
        retain_as_published=True,
    )


class _FakeBroker:
    """Controls what the mocked aiomqtt client's ``messages`` yields.

    Each connection gets a fresh iterator: inbound messages put on
    :attr:`inbound` are yielded; :meth:`drop` makes the current
    connection fail with ``MqttError``.
    """

    def __init__(self, error_type: type[Exception]) -> None:
        self._error_type = error_type
        self.inbound: asyncio.Queue[object] = asyncio.Queue()
        self.connections = 0

    def drop(self) -> None:
        self.inbound.put_nowait(self._error_type("connection lost"))

    async def messages(self):  # noqa: ANN201
        self.connections += 1
        while True:
            item = await self.inbound.get()
            if isinstance(item, Exception):
                raise item
            yield item


@pytest.fixture
def mock_aiomqtt():
    """Mock aiomqtt module for testing MqttSession internals.

    Patches ``sys.modules`` so the lazy ``import aiomqtt`` inside
    ``run()``, ``subscribe()`` and ``publish()`` resolves to a
    controllable mock.
    """
    mock_module = MagicMock()
    mock_module.MqttError = type("MqttError", (Exception,), {})
    broker = _FakeBroker(mock_module.MqttError)

    mock_client_instance = AsyncMock()
    mock_client_instance.__aenter__ = AsyncMock(return_value=mock_client_instance)
    mock_client_instance.__aexit__ = AsyncMock(return_value=False)
    type(mock_client_instance).messages = property(lambda self: broker.messages())
    mock_client_instance.subscribe = AsyncMock(return_value=[SimpleNamespace(value=2)])
    mock_client_instance.publish = AsyncMock()

    mock_module.Client.return_value = mock_client_instance

    with patch.dict(sys.modules, {"aiomqtt": mock_module}):
        yield mock_module, mock_client_instance, broker


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


class TestSubscribeOutcome:
    """Tests for SUBACK reason codes.

    Technique: Specification-based Testing.
    """

    @pytest.mark.parametrize("qos", [0, 1, 2])
    def test_granting_codes_are_granted(self, qos: int) -> None:
        outcome = SubscribeOutcome.granting(qos)
        assert outcome.granted is True
        assert outcome.describe() == f"granted QoS {qos}"

    def test_refusal_is_not_granted(self) -> None:
        outcome = SubscribeOutcome(0x87)
        assert outcome is SubscribeOutcome.NOT_AUTHORIZED
        assert outcome.granted is False
        assert outcome.describe() == "not authorized"

    def test_unknown_code_maps_to_unspecified_error(self) -> None:
        assert SubscribeOutcome(0xFE) is SubscribeOutcome.UNSPECIFIED_ERROR


class TestRetainHandling:
    """Tests for retain-handling name mapping.

    Technique: Specification-based Testing.
    """

    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("send", RetainHandling.SEND),
            ("send_if_new", RetainHandling.SEND_IF_NEW),
            ("never", RetainHandling.DO_NOT_SEND),
        ],
    )
    def test_from_name(self, name: str, expected: RetainHandling) -> None:
        assert RetainHandling.from_name(name) is expected

    def test_unknown_name_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unknown retain handling"):
            RetainHandling.from_name("sometimes")


class TestSubscriptionIntent:
    """Tests for the immutable subscription request.

    Technique: Specification-based Testing.
    """

    def test_frozen(self, intent: SubscriptionIntent) -> None:
        with pytest.raises(FrozenInstanceError):
            intent.topic = "other"  # type: ignore[misc]

    def test_from_settings(self) -> None:
        settings = SubscriptionSettings(qos=1, no_local=True, retain_handling="never")
        built = SubscriptionIntent.from_settings(settings, "prefix/+")
        assert built == SubscriptionIntent(
            topic="prefix/+",
            qos=QoS.AT_LEAST_ONCE,
            no_local=True,
            retain_as_published=True,
            retain_handling=RetainHandling.DO_NOT_SEND,
        )


# ---------------------------------------------------------------------------
# SessionPort Protocol
# ---------------------------------------------------------------------------


class TestSessionPortProtocol:
    """Protocol conformance checks for all adapters.

    Technique: Protocol Conformance.
    """

    def test_mqtt_session_satisfies_protocol(self, mqtt_settings: MqttSettings) -> None:
        assert isinstance(MqttSession(settings=mqtt_settings), SessionPort)

    def test_mock_session_satisfies_protocol(self) -> None:
        assert isinstance(MockMqttSession(), SessionPort)

    def test_null_session_satisfies_protocol(self) -> None:
        assert isinstance(NullMqttSession(), SessionPort)

    def test_class_missing_receive_does_not_satisfy(self) -> None:
        class Incomplete:
            async def publish(self, topic: str, payload: str) -> None: ...

        assert not isinstance(Incomplete(), SessionPort)


# ---------------------------------------------------------------------------
# NullMqttSession
# ---------------------------------------------------------------------------


class TestNullMqttSession:
    """Tests for the dry-run adapter.

    Technique: Specification-based Testing.
    """

    async def test_subscribe_grants_requested_qos(
        self,
        intent: SubscriptionIntent,
    ) -> None:
        outcomes = await NullMqttSession().subscribe(intent)
        assert outcomes == [SubscribeOutcome.GRANTED_QOS_2]

    async def test_publish_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="telemqtt._mqtt"):
            await NullMqttSession().publish("p/speed", "42.000000", retain=True)
        assert "Dry-run publish p/speed = 42.000000" in caplog.text

    async def test_receive_blocks_until_disconnect(self) -> None:
        session = NullMqttSession()
        receiver = asyncio.create_task(session.receive())
        await asyncio.sleep(0)
        assert not receiver.done()

        await session.disconnect()

        with pytest.raises(SessionClosedError):
            await asyncio.wait_for(receiver, timeout=1.0)

    async def test_run_returns_after_cancel(self) -> None:
        session = NullMqttSession()
        runner = asyncio.create_task(session.run())
        await asyncio.sleep(0)
        session.cancel()
        await asyncio.wait_for(runner, timeout=1.0)

    async def test_operations_after_close_fail(self, intent: SubscriptionIntent) -> None:
        session = NullMqttSession()
        session.cancel()
        with pytest.raises(SessionClosedError):
            await session.publish("t", "p")
        with pytest.raises(SessionClosedError):
            await session.subscribe(intent)


# ---------------------------------------------------------------------------
# MockMqttSession
# ---------------------------------------------------------------------------


class TestMockMqttSession:
    """Tests for the recording test double.

    Technique: Specification-based Testing.
    """

    async def test_records_publish_tuple(self, mock_session: MockMqttSession) -> None:
        await mock_session.publish("a/b", "1.5", qos=QoS.AT_LEAST_ONCE, retain=True)
        assert mock_session.published == [("a/b", "1.5", 1, True)]
        assert mock_session.publish_count == 1

    async def test_get_messages_for_filters_by_topic(
        self,
        mock_session: MockMqttSession,
    ) -> None:
        await mock_session.publish("a", "1")
        await mock_session.publish("b", "2", retain=True)
        await mock_session.publish("a", "3", qos=QoS.EXACTLY_ONCE)
        assert mock_session.get_messages_for("a") == [("1", 0, False), ("3", 2, False)]

    async def test_subscribe_grants_by_default(
        self,
        mock_session: MockMqttSession,
        intent: SubscriptionIntent,
    ) -> None:
        outcomes = await mock_session.subscribe(intent)
        assert outcomes == [SubscribeOutcome.GRANTED_QOS_2]
        assert mock_session.subscriptions == [intent]
        assert mock_session.history == ["subscribe"]

    async def test_scripted_subscribe_results(
        self,
        mock_session: MockMqttSession,
        intent: SubscriptionIntent,
    ) -> None:
        mock_session.script_subscribe(
            [SubscribeOutcome.NOT_AUTHORIZED],
            SubscribeError("bad filter"),
        )
        assert await mock_session.subscribe(intent) == [SubscribeOutcome.NOT_AUTHORIZED]
        with pytest.raises(SubscribeError):
            await mock_session.subscribe(intent)
        assert await mock_session.subscribe(intent) == [SubscribeOutcome.GRANTED_QOS_2]

    async def test_receive_returns_delivered_messages_in_order(
        self,
        mock_session: MockMqttSession,
    ) -> None:
        mock_session.deliver("p/speed", "31.0")
        mock_session.deliver("p/temperature", "26.0")
        assert await mock_session.receive() == DeliveredMessage("p/speed", "31.0")
        assert await mock_session.receive() == DeliveredMessage("p/temperature", "26.0")
        assert mock_session.receive_count == 2

    async def test_expire_raises_on_receive(self, mock_session: MockMqttSession) -> None:
        mock_session.expire()
        with pytest.raises(SessionExpiredError):
            await mock_session.receive()

    async def test_fail_next_publish(self, mock_session: MockMqttSession) -> None:
        mock_session.fail_next_publish(PublishError("broker gone"))
        with pytest.raises(PublishError):
            await mock_session.publish("t", "1")
        await mock_session.publish("t", "2")
        assert mock_session.published == [("t", "2", 0, False)]

    async def test_publish_hook_runs_before_recording(
        self,
        mock_session: MockMqttSession,
    ) -> None:
        seen: list[tuple[str, str]] = []

        async def hook(topic: str, payload: str) -> None:
            seen.append((topic, payload))

        mock_session.publish_hook = hook
        await mock_session.publish("t", "1")
        assert seen == [("t", "1")]

    async def test_cancel_unblocks_pending_receive(
        self,
        mock_session: MockMqttSession,
    ) -> None:
        receiver = asyncio.create_task(mock_session.receive())
        await asyncio.sleep(0)

        mock_session.cancel()

        with pytest.raises(SessionClosedError):
            await asyncio.wait_for(receiver, timeout=1.0)
        assert mock_session.closed is True
        assert mock_session.cancel_count == 1

    async def test_publish_after_disconnect_fails(
        self,
        mock_session: MockMqttSession,
    ) -> None:
        await mock_session.disconnect()
        with pytest.raises(SessionClosedError):
            await mock_session.publish("t", "1")
        assert mock_session.disconnect_count == 1

    async def test_is_running_tracks_runner(self, mock_session: MockMqttSession) -> None:
        assert mock_session.is_running is False
        runner = asyncio.create_task(mock_session.run())
        await asyncio.sleep(0)
        assert mock_session.is_running is True

        await mock_session.disconnect()
        await asyncio.wait_for(runner, timeout=1.0)

        assert mock_session.is_running is False


# ---------------------------------------------------------------------------
# MqttSession: connection lifecycle
# ---------------------------------------------------------------------------


class TestMqttSessionLifecycle:
    """Tests for MqttSession.run() with a mocked aiomqtt.

    Technique: State Transition Testing.
    """

    async def test_connects_with_v5_and_settings(
        self,
        mock_aiomqtt: tuple[MagicMock, AsyncMock, _FakeBroker],
        mqtt_settings: MqttSettings,
    ) -> None:
        mock_module, _client, _broker = mock_aiomqtt
        session = MqttSession(settings=mqtt_settings)
        runner = asyncio.create_task(session.run())
        await _wait_until(lambda: session.is_connected)

        kwargs = mock_module.Client.call_args.kwargs
        assert kwargs["hostname"] == "broker.test"
        assert kwargs["port"] == 1883
        assert kwargs["identifier"] == "unit"
        assert kwargs["protocol"] is mock_module.ProtocolVersion.V5
        assert session.generation == 1

        session.cancel()
        await asyncio.gather(runner, return_exceptions=True)

    async def test_second_run_rejected(
        self,
        mock_aiomqtt: tuple[MagicMock, AsyncMock, _FakeBroker],
        mqtt_settings: MqttSettings,
    ) -> None:
        session = MqttSession(settings=mqtt_settings)
        runner = asyncio.create_task(session.run())
        await _wait_until(lambda: session.is_running)

        with pytest.raises(RuntimeError, match="already active"):
            await session.run()

        session.cancel()
        await asyncio.gather(runner, return_exceptions=True)

    async def test_missing_aiomqtt_raises_runtime_error(
        self,
        mqtt_settings: MqttSettings,
    ) -> None:
        session = MqttSession(settings=mqtt_settings)
        with (
            patch.dict(sys.modules, {"aiomqtt": None}),
            pytest.raises(RuntimeError, match="aiomqtt is required"),
        ):
            await session.run()

    async def test_reconnect_expires_session_once(
        self,
        mock_aiomqtt: tuple[MagicMock, AsyncMock, _FakeBroker],
        mqtt_settings: MqttSettings,
    ) -> None:
        """A dropped connection reconnects and the next receive() expires."""
        _module, _client, broker = mock_aiomqtt
        session = MqttSession(settings=mqtt_settings)
        runner = asyncio.create_task(session.run())
        await _wait_until(lambda: session.is_connected)

        broker.drop()
        await _wait_until(lambda: session.generation == 2)

        with pytest.raises(SessionExpiredError) as exc_info:
            await session.receive()
        assert exc_info.value.generation == 2

        broker.inbound.put_nowait(SimpleNamespace(topic="p/speed", payload=b"33.0"))
        assert await asyncio.wait_for(session.receive(), timeout=1.0) == DeliveredMessage(
            "p/speed",
            "33.0",
        )

        session.cancel()
        await asyncio.gather(runner, return_exceptions=True)

    async def test_pending_receive_sees_expiry(
        self,
        mock_aiomqtt: tuple[MagicMock, AsyncMock, _FakeBroker],
        mqtt_settings: MqttSettings,
    ) -> None:
        _module, _client, broker = mock_aiomqtt
        session = MqttSession(settings=mqtt_settings)
        runner = asyncio.create_task(session.run())
        await _wait_until(lambda: session.is_connected)

        receiver = asyncio.create_task(session.receive())
        await asyncio.sleep(0)
        broker.drop()

        with pytest.raises(SessionExpiredError):
            await asyncio.wait_for(receiver, timeout=1.0)

        session.cancel()
        await asyncio.gather(runner, return_exceptions=True)

    async def test_subscribe_on_new_connection_clears_expiry(
        self,
        mock_aiomqtt: tuple[MagicMock, AsyncMock, _FakeBroker],
        mqtt_settings: MqttSettings,
        intent: SubscriptionIntent,
    ) -> None:
        """A subscribe parked across a reconnect covers that reconnect."""
        _module, client, broker = mock_aiomqtt
        session = MqttSession(
            settings=mqtt_settings.model_copy(update={"reconnect_interval": 0.2}),
        )
        runner = asyncio.create_task(session.run())
        await _wait_until(lambda: session.is_connected)
        await session.subscribe(intent)

        broker.drop()
        await _wait_until(lambda: not session.is_connected)
        resubscribe = asyncio.create_task(session.subscribe(intent))

        await asyncio.wait_for(resubscribe, timeout=1.0)
        assert session.generation == 2

        broker.inbound.put_nowait(SimpleNamespace(topic="prefix/speed", payload=b"41.0"))
        message = await asyncio.wait_for(session.receive(), timeout=1.0)

        assert message == DeliveredMessage("prefix/speed", "41.0")
        assert client.subscribe.await_count == 2

        session.cancel()
        await asyncio.gather(runner, return_exceptions=True)

    async def test_cancel_closes_pending_receive(
        self,
        mock_aiomqtt: tuple[MagicMock, AsyncMock, _FakeBroker],
        mqtt_settings: MqttSettings,
    ) -> None:
        session = MqttSession(settings=mqtt_settings)
        runner = asyncio.create_task(session.run())
        await _wait_until(lambda: session.is_connected)
        receiver = asyncio.create_task(session.receive())
        await asyncio.sleep(0)

        session.cancel()

        with pytest.raises(SessionClosedError):
            await asyncio.wait_for(receiver, timeout=1.0)
        await asyncio.gather(runner, return_exceptions=True)
        assert session.is_running is False

    async def test_disconnect_leaves_client_context(
        self,
        mock_aiomqtt: tuple[MagicMock, AsyncMock, _FakeBroker],
        mqtt_settings: MqttSettings,
    ) -> None:
        """disconnect() exits the aiomqtt context (sending DISCONNECT)."""
        _module, client, _broker = mock_aiomqtt
        session = MqttSession(settings=mqtt_settings)
        runner = asyncio.create_task(session.run())
        await _wait_until(lambda: session.is_connected)

        await session.disconnect()

        assert runner.done()
        client.__aexit__.assert_awaited()
        with pytest.raises(SessionClosedError):
            await session.publish("t", "1")

    async def test_disconnect_before_run_is_noop(self, mqtt_settings: MqttSettings) -> None:
        session = MqttSession(settings=mqtt_settings)
        await session.disconnect()
        await session.disconnect()
        assert session.is_running is False


# ---------------------------------------------------------------------------
# MqttSession: operations
# ---------------------------------------------------------------------------


class TestMqttSessionOperations:
    """Tests for subscribe/publish/receive against a mocked client.

    Technique: Mock-based Isolation.
    """

    @pytest.fixture
    async def connected(
        self,
        mock_aiomqtt: tuple[MagicMock, AsyncMock, _FakeBroker],
        mqtt_settings: MqttSettings,
    ):
        session = MqttSession(settings=mqtt_settings)
        runner = asyncio.create_task(session.run())
        await _wait_until(lambda: session.is_connected)
        yield session, mock_aiomqtt
        session.cancel()
        await asyncio.gather(runner, return_exceptions=True)

    async def test_subscribe_passes_v5_options(
        self,
        connected: tuple[MqttSession, tuple[MagicMock, AsyncMock, _FakeBroker]],
        intent: SubscriptionIntent,
    ) -> None:
        session, (_module, client, _broker) = connected

        outcomes = await session.subscribe(intent)

        assert outcomes == [SubscribeOutcome.GRANTED_QOS_2]
        topic = client.subscribe.call_args.args[0]
        options = client.subscribe.call_args.kwargs["options"]
        assert topic == "prefix/+"
        assert options.QoS == 2
        assert options.retainAsPublished is True
        assert options.noLocal is False
        assert options.retainHandling == 0

    async def test_subscribe_refusal_reported_as_outcome(
        self,
        connected: tuple[MqttSession, tuple[MagicMock, AsyncMock, _FakeBroker]],
        intent: SubscriptionIntent,
    ) -> None:
        session, (_module, client, _broker) = connected
        client.subscribe.return_value = [SimpleNamespace(value=0x87)]

        assert await session.subscribe(intent) == [SubscribeOutcome.NOT_AUTHORIZED]

    async def test_subscribe_transport_error(
        self,
        connected: tuple[MqttSession, tuple[MagicMock, AsyncMock, _FakeBroker]],
        intent: SubscriptionIntent,
    ) -> None:
        session, (module, client, _broker) = connected
        client.subscribe.side_effect = module.MqttError("timeout")

        with pytest.raises(SubscribeError, match="timeout"):
            await session.subscribe(intent)

    async def test_publish_forwards_qos_and_retain(
        self,
        connected: tuple[MqttSession, tuple[MagicMock, AsyncMock, _FakeBroker]],
    ) -> None:
        session, (_module, client, _broker) = connected

        await session.publish("p/speed", "41.5", qos=QoS.AT_LEAST_ONCE, retain=True)

        client.publish.assert_awaited_once_with("p/speed", "41.5", qos=1, retain=True)

    async def test_publish_transport_error(
        self,
        connected: tuple[MqttSession, tuple[MagicMock, AsyncMock, _FakeBroker]],
    ) -> None:
        session, (module, client, _broker) = connected
        client.publish.side_effect = module.MqttError("gone")

        with pytest.raises(PublishError, match="gone"):
            await session.publish("p/speed", "41.5")

    async def test_receive_decodes_payload(
        self,
        connected: tuple[MqttSession, tuple[MagicMock, AsyncMock, _FakeBroker]],
    ) -> None:
        session, (_module, _client, broker) = connected
        broker.inbound.put_nowait(SimpleNamespace(topic="p/a", payload=None))
        broker.inbound.put_nowait(SimpleNamespace(topic="p/b", payload=b"\xff1"))

        message = await asyncio.wait_for(session.receive(), timeout=1.0)

        assert message == DeliveredMessage("p/b", "\ufffd1")
