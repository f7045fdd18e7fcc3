"""
Reconnect supervision for the push channel.

Runs a :class:`StreamSource` with exponential backoff between attempts and
a bound on consecutive failures. The state machine is::

    connecting -> connected -(error)-> errored -> disconnected (backoff)
        -> connecting -> ... -> exhausted

A successful open resets the failure count. After
``max_attempts`` consecutive failures the supervisor stops trying and
reports :class:`ExhaustedRetries`; this is not fatal because the poller
keeps the session going. :meth:`ReconnectSupervisor.retry` starts a fresh
cycle on demand.

Every transition publishes a new immutable :class:`ConnectionState`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from tripsync.sync.errors import ExhaustedRetries, TransientConnectionError
from tripsync.sync.models import ConnectionPhase, ConnectionState
from tripsync.sync.stream import StreamSource

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_BACKOFF = 2.0  # seconds
DEFAULT_MAX_BACKOFF = 30.0  # seconds


def backoff_delay(retry_index: int, base: float, cap: float) -> float:
    """Delay before retry ``retry_index`` (0-based): ``min(base * 2**n, cap)``."""
    return min(base * (2**retry_index), cap)


class ReconnectSupervisor:
    """Owns the lifecycle of one stream source.

    The source must report into :meth:`notify_open` and
    :meth:`notify_error` through its handlers.

    Args:
        source: Stream source to supervise.
        max_attempts: Consecutive failures before giving up. Zero disables
            the stream entirely.
        initial_backoff: Base delay in seconds.
        max_backoff: Delay cap in seconds.
        on_state: Called with every new ConnectionState.
        on_exhausted: Called once per cycle when the retry bound is hit.
    """

    def __init__(
        self,
        source: StreamSource | None = None,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
        max_backoff: float = DEFAULT_MAX_BACKOFF,
        on_state: Callable[[ConnectionState], None] | None = None,
        on_exhausted: Callable[[ExhaustedRetries], None] | None = None,
    ) -> None:
        self.source = source
        self.max_attempts = max_attempts
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self._on_state = on_state
        self._on_exhausted = on_exhausted

        self._state = ConnectionState()
        self._failures = 0
        self._attempts_made = 0
        self._last_error: TransientConnectionError | None = None
        self._task: asyncio.Task | None = None
        self._stopped = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def phase(self) -> ConnectionPhase:
        return self._state.phase

    @property
    def attempts_made(self) -> int:
        """Total channel openings tried over the supervisor's lifetime."""
        return self._attempts_made

    @property
    def exhausted(self) -> bool:
        return self._state.phase is ConnectionPhase.exhausted

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the supervision loop as a background task."""
        if self.source is None:
            raise RuntimeError("ReconnectSupervisor has no stream source")
        if self._stopped or self.running:
            return
        self._task = asyncio.create_task(
            self._run(), name=f"stream-{self.source.job_id}"
        )

    def stop(self) -> None:
        """Close the channel and halt the state machine."""
        if self._stopped:
            return
        self._stopped = True
        if self.source is not None:
            self.source.close()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        if self._state.phase is not ConnectionPhase.exhausted:
            self._publish(ConnectionPhase.disconnected, attempt=self._state.attempt)
        logger.debug("Stream supervision stopped")

    def retry(self) -> bool:
        """Start a fresh retry cycle after exhaustion.

        Returns False if the supervisor is stopped or not exhausted.
        """
        if self._stopped or not self.exhausted:
            return False
        logger.info("Manual stream retry requested")
        self._failures = 0
        self._last_error = None
        self.start()
        return True

    # ------------------------------------------------------------------
    # Reports from the source
    # ------------------------------------------------------------------

    def notify_open(self) -> None:
        if self._stopped:
            return
        if self._failures:
            logger.info("Stream reconnected after %d failure(s)", self._failures)
        self._failures = 0
        self._publish(ConnectionPhase.connected, attempt=self._state.attempt)

    def notify_error(self, error: TransientConnectionError) -> None:
        if self._stopped:
            return
        self._last_error = error
        self._publish(
            ConnectionPhase.errored,
            attempt=self._state.attempt,
            last_error=str(error),
        )

    # ------------------------------------------------------------------

    async def _run(self) -> None:
        if self.max_attempts <= 0:
            logger.info("Stream disabled (max_attempts=0), relying on polling")
            self._exhaust()
            return

        while not self._stopped:
            self._last_error = None
            self._attempts_made += 1
            self._publish(ConnectionPhase.connecting, attempt=self._failures + 1)

            await self.source.run()

            if self._stopped:
                return
            if self._last_error is None:
                # Channel delivered a completion and closed cleanly
                self._publish(
                    ConnectionPhase.disconnected, attempt=self._state.attempt
                )
                return

            self._failures += 1
            if self._failures >= self.max_attempts:
                self._exhaust()
                return

            delay = backoff_delay(
                self._failures - 1, self.initial_backoff, self.max_backoff
            )
            logger.warning(
                "Stream error (attempt %d/%d): %s. Backing off %.1fs...",
                self._failures,
                self.max_attempts,
                self._last_error,
                delay,
            )
            self._publish(
                ConnectionPhase.disconnected,
                attempt=self._failures,
                next_retry_at=time.time() + delay,
                last_error=str(self._last_error),
            )
            await asyncio.sleep(delay)

    def _exhaust(self) -> None:
        last_error = str(self._last_error) if self._last_error else None
        logger.warning(
            "Stream abandoned after %d attempt(s), continuing on polling only",
            self._failures,
        )
        self._publish(
            ConnectionPhase.exhausted, attempt=self._failures, last_error=last_error
        )
        if self._on_exhausted is not None:
            try:
                self._on_exhausted(
                    ExhaustedRetries(attempts=self._failures, last_error=last_error)
                )
            except Exception:
                logger.exception("on_exhausted callback raised")

    def _publish(
        self,
        phase: ConnectionPhase,
        *,
        attempt: int,
        next_retry_at: float | None = None,
        last_error: str | None = None,
    ) -> None:
        self._state = ConnectionState(
            attempt=attempt,
            phase=phase,
            next_retry_at=next_retry_at,
            last_error=last_error,
        )
        logger.debug("Connection %s (attempt %d)", phase.value, attempt)
        if self._on_state is not None:
            try:
                self._on_state(self._state)
            except Exception:
                logger.exception("on_state callback raised")


__all__ = [
    "DEFAULT_INITIAL_BACKOFF",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_MAX_BACKOFF",
    "ReconnectSupervisor",
    "backoff_delay",
]
