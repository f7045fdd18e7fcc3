"""
Exactly-once terminal callback latch.

Several independent triggers can decide that a job is over: an explicit
completion frame on the stream, the arbiter seeing every stage complete, a
poll snapshot with a terminal status, a user pressing "continue" past the
manual-override threshold, or the absolute ceiling running out. They race,
and more than one of them usually fires. The gate lets the first one win
and turns every later one into a no-op.

Completion goes through a short settle delay before ``on_complete`` is
called so the display can visibly reach 100; errors are delivered
immediately. Callback exceptions are logged and swallowed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from enum import Enum

from tripsync.sync.errors import TerminalReason

logger = logging.getLogger(__name__)


class GateOutcome(str, Enum):
    """How the latch was closed."""

    completed = "completed"
    errored = "errored"
    frozen = "frozen"


class CompletionGate:
    """Wraps one ``on_complete()`` and one ``on_error(reason)``.

    Args:
        on_complete: Called once, after the settle delay, on completion.
        on_error: Called once with a :class:`TerminalReason` on failure.
        settle_s: Delay between completion detection and ``on_complete``.
        ceiling_s: Wall-clock budget armed by :meth:`start`; when it runs
            out the gate fires ``on_error(TerminalReason.stalled)``.
        manual_override_threshold: Shown progress at which
            :meth:`manual_complete` is accepted. None disables the override.
        on_decided: Optional hook called synchronously the moment the latch
            flips to completed or errored (before any settle delay), so the
            owner can stop its signal sources.
    """

    def __init__(
        self,
        on_complete: Callable[[], None],
        on_error: Callable[[TerminalReason], None],
        *,
        settle_s: float = 1.0,
        ceiling_s: float = 300.0,
        manual_override_threshold: int | None = 90,
        on_decided: Callable[[GateOutcome], None] | None = None,
    ) -> None:
        self._on_complete = on_complete
        self._on_error = on_error
        self._on_decided = on_decided
        self.settle_s = settle_s
        self.ceiling_s = ceiling_s
        self.manual_override_threshold = manual_override_threshold

        self._outcome: GateOutcome | None = None
        self._reason: TerminalReason | None = None
        self._trigger: str | None = None
        self._fired = False
        self._ceiling_handle: asyncio.TimerHandle | None = None
        self._settle_handle: asyncio.TimerHandle | None = None

    @property
    def is_latched(self) -> bool:
        return self._outcome is not None

    @property
    def outcome(self) -> GateOutcome | None:
        return self._outcome

    @property
    def reason(self) -> TerminalReason | None:
        return self._reason

    @property
    def trigger(self) -> str | None:
        """Name of the trigger that won the race."""
        return self._trigger

    @property
    def fired(self) -> bool:
        """True once a callback has actually been invoked."""
        return self._fired

    @property
    def settling(self) -> bool:
        return self._settle_handle is not None

    def start(self) -> None:
        """Arm the ceiling timer. Must be called from a running event loop."""
        if self.is_latched or self._ceiling_handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._ceiling_handle = loop.call_later(self.ceiling_s, self._on_ceiling)
        logger.debug("Ceiling armed for %.1fs", self.ceiling_s)

    def manual_override_available(self, shown_progress: float) -> bool:
        if self.is_latched or self.manual_override_threshold is None:
            return False
        return shown_progress >= self.manual_override_threshold

    def trigger_complete(self, source: str) -> bool:
        """Report that ``source`` has seen the job complete.

        Returns True if this trigger won the latch.
        """
        if self.is_latched:
            logger.debug(
                "Completion from %s ignored, gate already %s",
                source,
                self._outcome.value,
            )
            return False
        self._latch(GateOutcome.completed, source)
        if self.settle_s > 0:
            loop = asyncio.get_running_loop()
            self._settle_handle = loop.call_later(self.settle_s, self._fire_complete)
        else:
            self._fire_complete()
        return True

    def trigger_error(self, reason: TerminalReason, source: str = "arbiter") -> bool:
        """Report a terminal failure. Returns True if this trigger won the latch."""
        if self.is_latched:
            logger.debug(
                "Error %s from %s ignored, gate already %s",
                reason.value,
                source,
                self._outcome.value,
            )
            return False
        self._reason = reason
        self._latch(GateOutcome.errored, source)
        self._fire_error(reason)
        return True

    def manual_complete(self, shown_progress: float) -> bool:
        """Accept an explicit user "continue" once past the threshold."""
        if not self.manual_override_available(shown_progress):
            logger.info(
                "Manual completion refused at %.0f%% (threshold %s)",
                shown_progress,
                self.manual_override_threshold,
            )
            return False
        return self.trigger_complete("manual")

    def freeze(self) -> None:
        """Close the latch without firing and cancel pending timers."""
        self._cancel_ceiling()
        if self._settle_handle is not None:
            self._settle_handle.cancel()
            self._settle_handle = None
        if self._outcome is None:
            self._outcome = GateOutcome.frozen
            self._trigger = "freeze"
            logger.debug("Gate frozen")

    # ------------------------------------------------------------------

    def _latch(self, outcome: GateOutcome, source: str) -> None:
        self._outcome = outcome
        self._trigger = source
        self._cancel_ceiling()
        logger.info("Gate latched %s by %s", outcome.value, source)
        if self._on_decided is not None:
            try:
                self._on_decided(outcome)
            except Exception:
                logger.exception("on_decided hook raised")

    def _cancel_ceiling(self) -> None:
        if self._ceiling_handle is not None:
            self._ceiling_handle.cancel()
            self._ceiling_handle = None

    def _on_ceiling(self) -> None:
        self._ceiling_handle = None
        if self.is_latched:
            return
        logger.warning("No terminal state after %.1fs, giving up", self.ceiling_s)
        self.trigger_error(TerminalReason.stalled, source="ceiling")

    def _fire_complete(self) -> None:
        self._settle_handle = None
        self._fired = True
        try:
            self._on_complete()
        except Exception:
            logger.exception("on_complete callback raised")

    def _fire_error(self, reason: TerminalReason) -> None:
        self._fired = True
        try:
            self._on_error(reason)
        except Exception:
            logger.exception("on_error callback raised")


__all__ = ["CompletionGate", "GateOutcome"]
