"""Public test-support utilities for telemqtt.

Re-exports test doubles and factories so that test suites can import
everything from a single ``telemqtt.testing`` namespace instead of
reaching into private modules.

Provided symbols:

- :class:`AppHarness` — receiver/sender app wired to test doubles.
- :class:`MockMqttSession` — in-memory session double that records calls.
- :class:`NullMqttSession` — dry-run session adapter.
- :class:`FakeClock` — deterministic clock for cadence tests.
- :func:`make_settings` — settings factory ignoring ``.env`` and environment.
"""

from telemqtt._mqtt import MockMqttSession, NullMqttSession
from telemqtt.testing._clock import FakeClock
from telemqtt.testing._harness import AppHarness
from telemqtt.testing._settings import make_settings

__all__ = [
    "AppHarness",
    "FakeClock",
    "MockMqttSession",
    "NullMqttSession",
    "make_settings",
]
