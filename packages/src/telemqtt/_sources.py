"""Data sources for periodic publishing.

A source is anything with a pure, non-blocking ``read() -> float``.
:class:`RandomSensor` simulates a sensor with a uniform distribution
and owns its pseudo-random generator, so two sensors never share
generator state and tests can seed each one independently.
"""

from __future__ import annotations

import random
from typing import Protocol, runtime_checkable

from telemqtt._settings import SensorSettings


@runtime_checkable
class SensorSource(Protocol):
    """Port for a value source read once per publish cycle."""

    def read(self) -> float: ...


class RandomSensor:
    """Simulated sensor returning uniform values in ``[minimum, maximum]``.

    Args:
        minimum: Lower bound of the readings.
        maximum: Upper bound of the readings.
        rng: Generator owned by this sensor.  A fresh, OS-seeded
            ``random.Random`` is created when omitted.
    """

    def __init__(
        self,
        minimum: float,
        maximum: float,
        *,
        rng: random.Random | None = None,
    ) -> None:
        if minimum > maximum:
            msg = f"minimum ({minimum}) exceeds maximum ({maximum})"
            raise ValueError(msg)
        self._minimum = minimum
        self._maximum = maximum
        self._rng = rng if rng is not None else random.Random()

    def __repr__(self) -> str:
        return f"RandomSensor({self._minimum}, {self._maximum})"

    @classmethod
    def from_settings(
        cls,
        settings: SensorSettings,
        *,
        rng: random.Random | None = None,
    ) -> RandomSensor:
        return cls(settings.minimum, settings.maximum, rng=rng)

    def read(self) -> float:
        """Draw one reading."""
        return self._rng.uniform(self._minimum, self._maximum)
