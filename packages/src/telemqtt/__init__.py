"""telemqtt.

Concurrent MQTT v5 telemetry: a subscriber that survives session
expiry and periodic sensor publishers, sharing one session and shutting
down cleanly on SIGINT/SIGTERM.
"""

from importlib.metadata import PackageNotFoundError, version

from telemqtt._app import ReceiverApp, SenderApp, print_message
from telemqtt._cancel import CancellationToken
from telemqtt._clock import ClockPort, SystemClock
from telemqtt._coordinator import ShutdownCoordinator, Teardown
from telemqtt._errors import (
    OperationCancelledError,
    PublishError,
    SessionClosedError,
    SessionError,
    SessionExpiredError,
    SubscribeError,
    TelemqttError,
)
from telemqtt._logging import JsonFormatter, configure_logging
from telemqtt._mqtt import (
    DeliveredMessage,
    MessageCallback,
    MockMqttSession,
    MqttSession,
    NullMqttSession,
    QoS,
    RetainHandling,
    SessionPort,
    SubscribeOutcome,
    SubscriptionIntent,
)
from telemqtt._publisher import PeriodicPublishTask, PublisherScheduler, run_periodic
from telemqtt._settings import (
    LoggingSettings,
    MqttSettings,
    PublisherSettings,
    ReceiverSettings,
    SenderSettings,
    SensorSettings,
    Settings,
    SubscriptionSettings,
)
from telemqtt._sources import RandomSensor, SensorSource
from telemqtt._subscriber import LoopState, ReceiveLoop, subscribe

try:
    __version__ = version("telemqtt")
except PackageNotFoundError:
    # Source checkout without installed metadata
    __version__ = "0.0.0+unknown"

__all__ = [
    # Version
    "__version__",
    # Apps
    "ReceiverApp",
    "SenderApp",
    "print_message",
    # Cancellation and shutdown
    "CancellationToken",
    "ShutdownCoordinator",
    "Teardown",
    # Clock
    "ClockPort",
    "SystemClock",
    # Errors
    "OperationCancelledError",
    "PublishError",
    "SessionClosedError",
    "SessionError",
    "SessionExpiredError",
    "SubscribeError",
    "TelemqttError",
    # Logging
    "JsonFormatter",
    "configure_logging",
    # MQTT session
    "DeliveredMessage",
    "MessageCallback",
    "MockMqttSession",
    "MqttSession",
    "NullMqttSession",
    "QoS",
    "RetainHandling",
    "SessionPort",
    "SubscribeOutcome",
    "SubscriptionIntent",
    # Publishing
    "PeriodicPublishTask",
    "PublisherScheduler",
    "RandomSensor",
    "SensorSource",
    "run_periodic",
    # Subscribing
    "LoopState",
    "ReceiveLoop",
    "subscribe",
    # Settings
    "LoggingSettings",
    "MqttSettings",
    "PublisherSettings",
    "ReceiverSettings",
    "SenderSettings",
    "SensorSettings",
    "Settings",
    "SubscriptionSettings",
]
