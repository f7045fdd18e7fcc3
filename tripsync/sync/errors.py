"""Error taxonomy for generation-progress synchronization.

Only the source adapters raise. Network and parse failures are caught at
the StreamSource/PollSource boundary and reclassified into one of the
exceptions below; the arbiter and completion gate never raise.

Failures that end or degrade a session are surfaced as values rather than
exceptions: :class:`TerminalReason` is handed to ``on_error`` and
``ExhaustedRetries`` is reported through the supervisor's ``on_exhausted``
callback.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class SyncError(Exception):
    """Base class for errors raised inside source adapters."""


class TransientConnectionError(SyncError):
    """A push channel or poll request failed in a way that may recover.

    Handled by the reconnect supervisor (stream) or by simply waiting for
    the next poll (poller). Never shown to the user on its own.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedFrameError(SyncError):
    """A single frame or poll body could not be parsed.

    The frame is dropped and logged; the session continues.
    """

    def __init__(self, message: str, *, kind: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind


class TerminalReason(str, Enum):
    """Reason passed to ``on_error`` when a session ends unsuccessfully."""

    stalled = "stalled"  # Absolute ceiling elapsed without a terminal state
    job_failed = "job_failed"  # Explicit job-level failure signal
    stage_failed = "stage_failed"  # A stage failure failed the whole job


@dataclass(frozen=True)
class ExhaustedRetries:
    """The stream was abandoned after the bounded number of attempts.

    Non-fatal: the session keeps running on the poller alone. Delivered to
    ``on_exhausted`` so the caller can show a dismissible warning or offer
    a manual retry.
    """

    attempts: int
    last_error: str | None = None


__all__ = [
    "ExhaustedRetries",
    "MalformedFrameError",
    "SyncError",
    "TerminalReason",
    "TransientConnectionError",
]
