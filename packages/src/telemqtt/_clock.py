"""Monotonic clock port and system adapter.

Provides ClockPort (Protocol) and SystemClock.  The periodic publisher
computes absolute deadlines from ``now()`` and waits with ``sleep()``,
so tests can drive the cadence with a fake clock.

**Why monotonic?** time.monotonic() is immune to NTP adjustments and
manual system-clock changes, making it suitable for scheduling fixed
cadences.  The epoch is arbitrary — only *differences* between now()
calls are meaningful (PEP 418).
"""

from __future__ import annotations

import asyncio
import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class ClockPort(Protocol):
    """Monotonic clock used for deadline scheduling.

    The default implementation wraps ``time.monotonic()`` and
    ``asyncio.sleep()``.  Tests inject a deterministic fake clock.
    """

    def now(self) -> float:
        """Return monotonic time in seconds.

        Returns:
            A float representing seconds from an arbitrary epoch.
            Only the *difference* between two calls is meaningful.
        """
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the caller for *seconds* (non-positive: yield once)."""
        ...


class SystemClock:
    """Production clock wrapping ``time.monotonic()``.

    Satisfies :class:`ClockPort` via structural subtyping — no
    base-class inheritance required (PEP 544).

    Usage::

        clock = SystemClock()
        deadline = clock.now() + 5.0
        await clock.sleep(deadline - clock.now())
    """

    def now(self) -> float:
        """Return monotonic time in seconds."""
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        """Sleep on the running event loop."""
        await asyncio.sleep(max(seconds, 0.0))
