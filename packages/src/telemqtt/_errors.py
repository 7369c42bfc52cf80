"""Error taxonomy for the orchestration layer.

Four classes of failure are distinguished:

- **Parameter / local errors** (bad subscription options) —
  :class:`SubscribeError`; reported, never retried automatically.
- **Session expired** — :class:`SessionExpiredError`; the broker
  discarded the subscription state after a reconnect.  Recovered by
  re-subscribing, never surfaced to the message consumer.
- **Transport / session-fatal** — :class:`SessionError` and its
  subclasses, including :class:`SessionClosedError` after an operator
  requested cancel or disconnect.  Ends the affected loop or task
  without crashing the process.
- **Unexpected faults** — any other exception.  Propagates to the
  top-level supervisor and is fatal to the process.

:class:`OperationCancelledError` is raised when a
:class:`~telemqtt.CancellationToken` fires while an operation is
suspended on its behalf.
"""

from __future__ import annotations


class TelemqttError(Exception):
    """Base class for all expected orchestration-layer errors."""


class SessionError(TelemqttError):
    """The session failed an operation or became unusable."""


class SubscribeError(SessionError):
    """A subscribe request was rejected locally or failed in transit."""


class PublishError(SessionError):
    """A publish request failed."""


class SessionExpiredError(SessionError):
    """The session reconnected and the broker dropped prior subscriptions."""

    def __init__(self, generation: int = 0) -> None:
        super().__init__(f"Session expired (connection #{generation})")
        self.generation = generation


class SessionClosedError(SessionError):
    """The session was cancelled, disconnected, or its runner stopped."""


class OperationCancelledError(TelemqttError):
    """A cancellation token fired while an operation was pending."""

    def __init__(self, token_name: str = "") -> None:
        detail = f" ({token_name})" if token_name else ""
        super().__init__(f"Operation cancelled{detail}")
        self.token_name = token_name
