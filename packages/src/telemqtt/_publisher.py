"""Periodic publish tasks and the scheduler running them concurrently.

Each :class:`PeriodicPublishTask` runs the cycle::

    read source → publish → deadline += period → wait(deadline | cancel)

Deadlines are absolute (``t0 + k·period``), never "now + period", so
time spent reading and publishing does not accumulate as drift.  When
a cycle overruns one or more deadlines, the missed slots are skipped
and the task resumes on the original grid.

Publish failure policy:

- :class:`~telemqtt._errors.PublishError` — logged (first failure of a
  streak at ERROR, repeats at DEBUG); the task keeps its cadence.  With
  ``max_consecutive_failures`` set, the task gives up after that many
  failures in a row.
- :class:`~telemqtt._errors.SessionClosedError` — the session is
  unusable; the task returns.
- Cancellation token fired — the task returns without publishing again.
- Anything else is a fault and propagates.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from telemqtt._cancel import CancellationToken
from telemqtt._clock import ClockPort, SystemClock
from telemqtt._errors import OperationCancelledError, PublishError, SessionClosedError
from telemqtt._mqtt import QoS, SessionPort
from telemqtt._settings import SensorSettings
from telemqtt._sources import RandomSensor, SensorSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PeriodicPublishTask:
    """Binds a source to a topic, a fixed period and a publish policy."""

    source: SensorSource
    topic: str
    period: float
    qos: QoS = QoS.AT_MOST_ONCE
    retain: bool = False
    precision: int = 6

    def __post_init__(self) -> None:
        if self.period <= 0:
            msg = f"Publish period must be positive, got {self.period}"
            raise ValueError(msg)

    @classmethod
    def from_settings(
        cls,
        sensor: SensorSettings,
        topic: str,
        *,
        rng: random.Random | None = None,
    ) -> PeriodicPublishTask:
        """Build a task publishing a :class:`RandomSensor` to *topic*."""
        return cls(
            source=RandomSensor.from_settings(sensor, rng=rng),
            topic=topic,
            period=sensor.period,
            qos=QoS(sensor.qos),
            retain=sensor.retain,
            precision=sensor.precision,
        )

    def format(self, value: float) -> str:
        """Render a reading as the MQTT payload."""
        return f"{value:.{self.precision}f}"


def next_deadline(previous: float, period: float, now: float) -> tuple[float, int]:
    """Return the next deadline on the ``previous + k·period`` grid.

    Returns:
        ``(deadline, skipped)`` where *skipped* counts the slots that
        already lie in the past at *now*.
    """
    deadline = previous + period
    if deadline >= now:
        return deadline, 0
    skipped = math.ceil((now - deadline) / period)
    return deadline + skipped * period, skipped


async def run_periodic(
    task: PeriodicPublishTask,
    session: SessionPort,
    token: CancellationToken,
    *,
    clock: ClockPort,
    max_consecutive_failures: int | None = None,
) -> int:
    """Run *task* until cancelled, the session closes, or failures cap out.

    Returns:
        Number of successful publishes.
    """
    published = 0
    failures = 0
    reason = "cancelled"
    deadline = clock.now()
    logger.info("Publishing %s every %.3fs", task.topic, task.period)
    try:
        while True:
            payload = task.format(task.source.read())
            try:
                await token.race(
                    session.publish(
                        task.topic,
                        payload,
                        qos=task.qos,
                        retain=task.retain,
                    ),
                )
            except SessionClosedError:
                reason = "session closed"
                break
            except PublishError as exc:
                failures += 1
                level = logging.ERROR if failures == 1 else logging.DEBUG
                logger.log(level, "Publish to %s failed: %s", task.topic, exc)
                if (
                    max_consecutive_failures is not None
                    and failures >= max_consecutive_failures
                ):
                    reason = f"{failures} consecutive publish failures"
                    break
            else:
                published += 1
                if failures:
                    logger.info(
                        "Publishing to %s recovered after %d failure(s)",
                        task.topic,
                        failures,
                    )
                failures = 0

            deadline, skipped = next_deadline(deadline, task.period, clock.now())
            if skipped:
                logger.warning(
                    "Publish cycle for %s overran, skipped %d slot(s)",
                    task.topic,
                    skipped,
                )
            await token.race(clock.sleep(deadline - clock.now()))
    except OperationCancelledError:
        reason = "cancelled"
    finally:
        logger.info(
            "Publish task for %s stopped (%s) after %d publish(es)",
            task.topic,
            reason,
            published,
        )
    return published


class PublisherScheduler:
    """Runs independent periodic publish tasks on a shared session.

    Each task gets its own cancellation token from *token_factory*
    (named ``publish:{topic}``), so tasks can be stopped individually
    or all at once via :meth:`cancel`.  No ordering between tasks is
    implied.

    Args:
        session: Shared session handle.
        tasks: One entry per data source.
        clock: Clock for deadlines (defaults to :class:`SystemClock`).
        token_factory: Creates the per-task cancellation token.
        max_consecutive_failures: Forwarded to :func:`run_periodic`.
    """

    def __init__(
        self,
        session: SessionPort,
        tasks: Sequence[PeriodicPublishTask],
        *,
        clock: ClockPort | None = None,
        token_factory: Callable[[str], CancellationToken] = CancellationToken,
        max_consecutive_failures: int | None = None,
    ) -> None:
        topics = [t.topic for t in tasks]
        if len(set(topics)) != len(topics):
            msg = "Publish tasks must target distinct topics"
            raise ValueError(msg)
        self._session = session
        self._tasks = list(tasks)
        self._clock = clock if clock is not None else SystemClock()
        self._tokens = {t.topic: token_factory(f"publish:{t.topic}") for t in tasks}
        self._max_consecutive_failures = max_consecutive_failures

    @property
    def tokens(self) -> dict[str, CancellationToken]:
        """Cancellation token per topic."""
        return dict(self._tokens)

    def cancel(self) -> None:
        """Fire every task's token (idempotent)."""
        for token in self._tokens.values():
            token.cancel()

    async def run(self) -> dict[str, int]:
        """Run all tasks until each returns.

        A fault in one task cancels the others and propagates.

        Returns:
            Successful publish count per topic.
        """
        if not self._tasks:
            logger.warning("No publish tasks configured")
            return {}

        runners = [
            asyncio.create_task(
                run_periodic(
                    task,
                    self._session,
                    self._tokens[task.topic],
                    clock=self._clock,
                    max_consecutive_failures=self._max_consecutive_failures,
                ),
                name=f"publish:{task.topic}",
            )
            for task in self._tasks
        ]
        try:
            counts = await asyncio.gather(*runners)
        except BaseException:
            for runner in runners:
                runner.cancel()
            await asyncio.gather(*runners, return_exceptions=True)
            raise
        return {task.topic: count for task, count in zip(self._tasks, counts, strict=True)}
