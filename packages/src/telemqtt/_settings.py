"""Application configuration via pydantic-settings.

Configuration is loaded from environment variables and/or ``.env``
files.  All variables carry the ``TELEMQTT_`` prefix and nested models
use ``__`` as the delimiter, e.g. ``TELEMQTT_MQTT__HOST=broker.local``.

The schema is split into:

* **MQTT** — broker endpoint, credentials, reconnect policy and the
  topic namespace shared by both entry points.
* **Logging** — level, format, optional file sink, rotation.
* **Subscription** — the receiver's topic filter and delivery options.
* **Publisher** — the sender's simulated sensors and failure policy.

All durations are in **seconds**.
"""

from __future__ import annotations

from typing import Annotated, Literal, Self

from pydantic import (
    BaseModel,
    Field,
    SecretStr,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BROKER_HOST = "test.mosquitto.org"
DEFAULT_TOPIC_PREFIX = "3b688015-20ce-4da1-9636-15b11e8d8161"

# -------------------------------------------------------------------
# Sub-models (BaseModel, NOT BaseSettings: nested via composition)
# -------------------------------------------------------------------


class MqttSettings(BaseModel):
    """MQTT broker connection and topic configuration.

    Environment variables (with ``__`` nesting)::

        TELEMQTT_MQTT__HOST=broker.local
        TELEMQTT_MQTT__PORT=1883
        TELEMQTT_MQTT__USERNAME=user
        TELEMQTT_MQTT__PASSWORD=secret
        TELEMQTT_MQTT__TOPIC_PREFIX=plant-7
    """

    host: str = Field(
        default=DEFAULT_BROKER_HOST,
        description="MQTT broker hostname or IP address.",
    )
    port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=1883,
        description="MQTT broker port.",
    )
    username: str | None = Field(
        default=None,
        description="MQTT authentication username (optional).",
    )
    password: SecretStr | None = Field(
        default=None,
        description="MQTT authentication password (optional).",
    )
    client_id: str = Field(
        default="",
        description=(
            "MQTT client identifier. When empty, the app generates "
            "'{name}-{hex8}' at startup."
        ),
    )
    keepalive: Annotated[int, Field(ge=1)] = Field(
        default=60,
        description="Keep-alive interval negotiated with the broker.",
    )
    reconnect_interval: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description=(
            "Initial seconds to wait before reconnecting after "
            "connection loss.  Doubles on each consecutive failure "
            "(exponential backoff with jitter) up to "
            "``reconnect_max_interval``."
        ),
    )
    reconnect_max_interval: Annotated[float, Field(gt=0)] = Field(
        default=300.0,
        description="Upper bound (seconds) for the reconnect backoff.",
    )
    topic_prefix: str = Field(
        default=DEFAULT_TOPIC_PREFIX,
        description="Namespace prepended to every published or subscribed topic.",
    )

    def topic(self, name: str) -> str:
        """Return ``{topic_prefix}/{name}`` (or *name* when no prefix)."""
        if not self.topic_prefix:
            return name
        return f"{self.topic_prefix}/{name}"


class LoggingSettings(BaseModel):
    """Logging configuration.

    When ``file`` is set, logs are also written to a rotating file
    (size-based rotation, ``backup_count`` generations kept).  When
    ``None``, logs go to stderr only.

    The ``format`` field selects the output format:

    - ``"text"`` (default) — human-readable timestamped lines.
    - ``"json"`` — structured JSON lines for log aggregators.
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Root log level.",
    )
    format: Literal["json", "text"] = Field(
        default="text",
        description="Log output format ('json' or 'text').",
    )
    file: str | None = Field(
        default=None,
        description="Optional log file path. ``None`` means stderr only.",
    )
    max_file_size_mb: Annotated[int, Field(ge=1)] = Field(
        default=10,
        description="Maximum log file size in megabytes before rotation.",
    )
    backup_count: Annotated[int, Field(ge=0)] = Field(
        default=3,
        description="Number of rotated log files to keep.",
    )


class SubscriptionSettings(BaseModel):
    """Receiver subscription: topic filter plus MQTT v5 delivery options.

    ``topic`` is relative to ``mqtt.topic_prefix``.
    """

    topic: str = Field(
        default="+",
        description="Topic filter below the prefix (wildcards allowed).",
    )
    qos: Literal[0, 1, 2] = Field(
        default=2,
        description="Maximum QoS at which messages are delivered.",
    )
    no_local: bool = Field(
        default=False,
        description="Suppress messages published by this same client.",
    )
    retain_as_published: bool = Field(
        default=True,
        description="Keep the original RETAIN flag on delivery.",
    )
    retain_handling: Literal["send", "send_if_new", "never"] = Field(
        default="send",
        description="When the broker sends retained messages on subscribe.",
    )
    max_resubscribes: Annotated[int, Field(ge=0)] | None = Field(
        default=None,
        description=(
            "Maximum consecutive re-subscriptions after session expiry "
            "without a delivered message in between.  ``None`` means "
            "unbounded."
        ),
    )


class SensorSettings(BaseModel):
    """One simulated sensor published under ``{prefix}/{name}``."""

    name: str = Field(min_length=1)
    minimum: float
    maximum: float
    period: Annotated[float, Field(gt=0)] = Field(
        default=1.0,
        description="Publish period in seconds.",
    )
    qos: Literal[0, 1, 2] = 0
    retain: bool = True
    precision: Annotated[int, Field(ge=0)] = Field(
        default=6,
        description="Decimal places in the published payload.",
    )

    @model_validator(mode="after")
    def _check_range(self) -> Self:
        if self.minimum > self.maximum:
            msg = (
                f"Sensor '{self.name}': minimum ({self.minimum}) "
                f"exceeds maximum ({self.maximum})"
            )
            raise ValueError(msg)
        return self


def _default_sensors() -> list[SensorSettings]:
    return [
        SensorSettings(name="speed", minimum=30.0, maximum=60.0, period=1.0),
        SensorSettings(name="temperature", minimum=25.0, maximum=40.0, period=5.0),
    ]


class PublisherSettings(BaseModel):
    """Sender configuration.

    Sensors can be overridden as JSON::

        TELEMQTT_PUBLISHER__SENSORS='[{"name": "rpm", "minimum": 0, "maximum": 9}]'
    """

    sensors: list[SensorSettings] = Field(
        default_factory=_default_sensors,
        description="Simulated sensors, one periodic publish task each.",
    )
    max_consecutive_failures: Annotated[int, Field(ge=1)] | None = Field(
        default=None,
        description=(
            "Abort a publish task after this many consecutive publish "
            "failures.  ``None`` keeps publishing indefinitely."
        ),
    )

    @model_validator(mode="after")
    def _check_unique_names(self) -> Self:
        names = [sensor.name for sensor in self.sensors]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            msg = f"Duplicate sensor names: {', '.join(duplicates)}"
            raise ValueError(msg)
        return self


# -------------------------------------------------------------------
# Root settings
# -------------------------------------------------------------------


class Settings(BaseSettings):
    """Root settings shared by the receiver and the sender.

    Loaded from environment variables with the prefix ``TELEMQTT_``,
    nested delimiter ``__`` and an optional ``.env`` file in the
    working directory.

    Example ``.env``::

        TELEMQTT_MQTT__HOST=broker.local
        TELEMQTT_MQTT__PORT=1883
        TELEMQTT_LOGGING__LEVEL=DEBUG
        TELEMQTT_LOGGING__FORMAT=json
    """

    model_config = SettingsConfigDict(
        env_prefix="TELEMQTT_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    mqtt: MqttSettings = Field(
        default_factory=MqttSettings,
        description="MQTT broker connection settings.",
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Logging configuration.",
    )


class ReceiverSettings(Settings):
    """Settings for the subscribe-and-receive entry point."""

    subscription: SubscriptionSettings = Field(
        default_factory=SubscriptionSettings,
        description="Topic filter and delivery options.",
    )


class SenderSettings(Settings):
    """Settings for the periodic publisher entry point."""

    publisher: PublisherSettings = Field(
        default_factory=PublisherSettings,
        description="Simulated sensors and publish failure policy.",
    )
