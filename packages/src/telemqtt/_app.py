"""Entry-point applications: the receiver and the sender.

Each application is a small composition root.  It resolves settings,
configures logging, creates the shared session and a
:class:`~telemqtt._coordinator.ShutdownCoordinator`, builds its worker
coroutines, and hands everything to
:meth:`~telemqtt._coordinator.ShutdownCoordinator.supervise`.  The
process exits once every worker has returned and the session runner
has finished.

Typical usage::

    from telemqtt import ReceiverApp

    app = ReceiverApp()
    app.run()        # or app.cli() for argument parsing
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import uuid
from typing import Any, ClassVar

from telemqtt._clock import ClockPort, SystemClock
from telemqtt._coordinator import ShutdownCoordinator, Teardown, trigger_on
from telemqtt._logging import configure_logging
from telemqtt._mqtt import (
    MessageCallback,
    MqttSession,
    NullMqttSession,
    SessionPort,
    SubscriptionIntent,
)
from telemqtt._publisher import PeriodicPublishTask, PublisherScheduler
from telemqtt._settings import ReceiverSettings, SenderSettings, Settings
from telemqtt._subscriber import ReceiveLoop

logger = logging.getLogger(__name__)


async def print_message(topic: str, payload: str) -> None:
    """Write a delivered message to standard output."""
    print("Received message from the broker")
    print(f"\t topic: {topic}")
    print(f"\t payload: {payload}", flush=True)


class _BaseApp:
    """Shared lifecycle of the receiver and sender applications.

    Subclasses set :attr:`teardown` and implement :meth:`_build_workers`.
    """

    teardown: ClassVar[Teardown] = Teardown.DISCONNECT

    def __init__(
        self,
        name: str,
        version: str = "0.0.0",
        *,
        description: str = "",
        settings_class: type[Settings] = Settings,
        dry_run: bool = False,
    ) -> None:
        self._name = name
        self._version = version
        self._description = description
        self._settings_class = settings_class
        self._dry_run = dry_run

    @property
    def name(self) -> str:
        return self._name

    @property
    def version(self) -> str:
        return self._version

    # --- Lifecycle ---------------------------------------------------------

    def run(
        self,
        *,
        session: SessionPort | None = None,
        settings: Settings | None = None,
        shutdown_event: asyncio.Event | None = None,
        clock: ClockPort | None = None,
    ) -> None:
        """Start the application (blocking).

        Args:
            session: Override the session (e.g. ``MockMqttSession``).
            settings: Override settings (skip environment loading).
            shutdown_event: Trigger shutdown when set instead of
                installing SIGINT/SIGTERM handlers.
            clock: Override the clock used by timed workers.
        """
        with contextlib.suppress(KeyboardInterrupt):
            asyncio.run(
                self._run_async(
                    session=session,
                    settings=settings,
                    shutdown_event=shutdown_event,
                    clock=clock,
                ),
            )

    def cli(self) -> None:
        """Start the application with command-line parsing."""
        from telemqtt._cli import build_cli

        cli = build_cli(self)
        cli(standalone_mode=True)

    async def _run_async(
        self,
        *,
        session: SessionPort | None = None,
        settings: Settings | None = None,
        shutdown_event: asyncio.Event | None = None,
        clock: ClockPort | None = None,
    ) -> list[Any]:
        """Bootstrap, supervise the workers, and tear down.

        Returns:
            The worker results, in the order :meth:`_build_workers`
            returned them.
        """
        resolved_settings = settings if settings is not None else self._settings_class()
        configure_logging(
            resolved_settings.logging,
            service=self._name,
            version=self._version,
        )
        resolved_clock = clock if clock is not None else SystemClock()
        session = self._create_session(session, resolved_settings)
        coordinator = ShutdownCoordinator(session, teardown=self.teardown)
        logger.info("%s v%s starting", self._name, self._version)

        async with contextlib.AsyncExitStack() as stack:
            if shutdown_event is not None:
                await stack.enter_async_context(trigger_on(shutdown_event, coordinator))
            else:
                coordinator.install_signal_handlers()
                stack.callback(coordinator.remove_signal_handlers)

            workers = self._build_workers(
                resolved_settings,
                session,
                coordinator,
                resolved_clock,
            )
            results = await coordinator.supervise(session.run(), workers)

        logger.info("Shutdown complete")
        return results

    # --- _run_async helpers ------------------------------------------------

    def _create_session(
        self,
        session: SessionPort | None,
        resolved_settings: Settings,
    ) -> SessionPort:
        """Return the injected session, or create one from settings.

        Without an explicit ``client_id`` one is generated from the app
        name and a short random suffix (e.g. ``"telemqtt-sender-1a2b3c4d"``).
        """
        if session is not None:
            return session
        if self._dry_run:
            logger.info("Dry-run mode: no broker connection will be made")
            return NullMqttSession()
        mqtt_settings = resolved_settings.mqtt
        if not mqtt_settings.client_id:
            generated_id = f"{self._name}-{uuid.uuid4().hex[:8]}"
            mqtt_settings = mqtt_settings.model_copy(
                update={"client_id": generated_id},
            )
        return MqttSession(settings=mqtt_settings)

    def _build_workers(
        self,
        settings: Settings,
        session: SessionPort,
        coordinator: ShutdownCoordinator,
        clock: ClockPort,
    ) -> list[Any]:
        raise NotImplementedError


class ReceiverApp(_BaseApp):
    """Subscribes to ``{prefix}/{topic}`` and prints every delivered message.

    Shutdown abandons pending operations at once (:attr:`Teardown.CANCEL`).

    Args:
        on_message: Consumer for delivered messages.  Defaults to
            :func:`print_message`.
    """

    teardown: ClassVar[Teardown] = Teardown.CANCEL

    def __init__(
        self,
        name: str = "telemqtt-receiver",
        version: str = "0.0.0",
        *,
        description: str = "Subscribe and print telemetry",
        settings_class: type[ReceiverSettings] = ReceiverSettings,
        dry_run: bool = False,
        on_message: MessageCallback = print_message,
    ) -> None:
        super().__init__(
            name,
            version,
            description=description,
            settings_class=settings_class,
            dry_run=dry_run,
        )
        self._on_message = on_message

    def _build_workers(
        self,
        settings: Settings,
        session: SessionPort,
        coordinator: ShutdownCoordinator,
        clock: ClockPort,
    ) -> list[Any]:
        if not isinstance(settings, ReceiverSettings):
            msg = f"{type(self).__name__} requires ReceiverSettings"
            raise TypeError(msg)
        subscription = settings.subscription
        intent = SubscriptionIntent.from_settings(
            subscription,
            settings.mqtt.topic(subscription.topic),
        )
        loop = ReceiveLoop(
            session,
            intent,
            on_message=self._on_message,
            token=coordinator.token("receiver"),
            max_resubscribes=subscription.max_resubscribes,
        )
        return [loop.run()]


class SenderApp(_BaseApp):
    """Publishes every configured sensor on its own fixed period.

    Shutdown disconnects gracefully (:attr:`Teardown.DISCONNECT`).

    Args:
        seed: When set, each sensor's generator is seeded from
            ``"{seed}:{sensor name}"`` so runs are reproducible.
    """

    teardown: ClassVar[Teardown] = Teardown.DISCONNECT

    def __init__(
        self,
        name: str = "telemqtt-sender",
        version: str = "0.0.0",
        *,
        description: str = "Publish simulated sensor telemetry",
        settings_class: type[SenderSettings] = SenderSettings,
        dry_run: bool = False,
        seed: int | None = None,
    ) -> None:
        super().__init__(
            name,
            version,
            description=description,
            settings_class=settings_class,
            dry_run=dry_run,
        )
        self._seed = seed

    def _rng_for(self, sensor_name: str) -> random.Random | None:
        if self._seed is None:
            return None
        return random.Random(f"{self._seed}:{sensor_name}")

    def _build_workers(
        self,
        settings: Settings,
        session: SessionPort,
        coordinator: ShutdownCoordinator,
        clock: ClockPort,
    ) -> list[Any]:
        if not isinstance(settings, SenderSettings):
            msg = f"{type(self).__name__} requires SenderSettings"
            raise TypeError(msg)
        publisher = settings.publisher
        tasks = [
            PeriodicPublishTask.from_settings(
                sensor,
                settings.mqtt.topic(sensor.name),
                rng=self._rng_for(sensor.name),
            )
            for sensor in publisher.sensors
        ]
        scheduler = PublisherScheduler(
            session,
            tasks,
            clock=clock,
            token_factory=coordinator.token,
            max_consecutive_failures=publisher.max_consecutive_failures,
        )
        return [scheduler.run()]
