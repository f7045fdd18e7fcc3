"""
Display progress animation.

The shown value climbs towards the authoritative value by at most
``step_per_tick`` per tick. It never decreases and never passes the
authoritative value, so the display keeps moving through long silent
gaps without ever implying more progress than the job has made.

The stage message rotates on its own timer, independent of the numeric
value, so the display does not claim to know exactly which stage is
running when per-stage detail is sparse or stale.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from tripsync.sync.models import DisplayState

logger = logging.getLogger(__name__)

STATUS_MESSAGES: tuple[str, ...] = (
    "Processing with AI models...",
    "Personalizing for you...",
    "Fetching latest data...",
    "Optimizing daily itineraries...",
    "Analyzing preferences...",
    "Generating recommendations...",
)

RETRY_MESSAGES: tuple[str, ...] = (
    "Retrying with backup AI providers...",
    "Switching to alternative data sources...",
    "Attempting different approach...",
    "Using fallback processing method...",
)

COMPLETED_MESSAGE = "Generation complete! Loading your itinerary..."

# (lower bound of shown progress, icon). Checked from the top down.
STAGE_ICONS: tuple[tuple[float, str], ...] = (
    (100.0, "\u2713"),
    (75.0, "\u25d5"),
    (50.0, "\u25d1"),
    (25.0, "\u25d4"),
    (0.0, "\u25cb"),
)
FAILED_ICON = "\u2717"


def icon_for(progress: float) -> str:
    """Pick the stage icon for a shown progress value."""
    for lower, icon in STAGE_ICONS:
        if progress >= lower:
            return icon
    return STAGE_ICONS[-1][1]


class Animator:
    """Bounded-rate climb of the shown progress towards a moving ceiling.

    Args:
        step_per_tick: Maximum advance of the shown value per tick.
        messages: Phrases cycled while the job runs normally.
        retry_messages: Phrases cycled while the stream is reconnecting.
    """

    def __init__(
        self,
        step_per_tick: float = 2.0,
        messages: Sequence[str] = STATUS_MESSAGES,
        retry_messages: Sequence[str] = RETRY_MESSAGES,
    ) -> None:
        if step_per_tick <= 0:
            raise ValueError("step_per_tick must be positive")
        self.step_per_tick = step_per_tick
        self._messages = tuple(messages) or STATUS_MESSAGES
        self._retry_messages = tuple(retry_messages) or RETRY_MESSAGES
        self._message_index = 0
        self._retrying = False
        self._pinned_message: str | None = None
        self._pinned_icon: str | None = None
        self._finished = False
        self.state = DisplayState(
            shown_progress=0.0,
            stage_message=self._messages[0],
            stage_icon=icon_for(0.0),
        )

    @property
    def shown_progress(self) -> float:
        return self.state.shown_progress

    def tick(self, ceiling: float) -> float:
        """Advance one tick towards ``ceiling`` (the authoritative progress)."""
        current = self.state.shown_progress
        target = min(float(ceiling), current + self.step_per_tick)
        if target > current:
            self.state.shown_progress = target
            if self._pinned_icon is None:
                self.state.stage_icon = icon_for(target)
        return self.state.shown_progress

    def finish(self, ceiling: float) -> None:
        """Snap to the authoritative value once the job has completed."""
        if ceiling > self.state.shown_progress:
            self.state.shown_progress = float(ceiling)
        self._finished = True
        self._pinned_message = COMPLETED_MESSAGE
        self._pinned_icon = None
        self.state.stage_message = COMPLETED_MESSAGE
        self.state.stage_icon = icon_for(self.state.shown_progress)

    def rotate_message(self) -> str:
        """Move to the next status phrase unless a message is pinned."""
        if self._pinned_message is not None:
            return self.state.stage_message
        pool = self._retry_messages if self._retrying else self._messages
        self._message_index = (self._message_index + 1) % len(pool)
        self.state.stage_message = pool[self._message_index]
        return self.state.stage_message

    def set_retrying(self, retrying: bool) -> None:
        """Switch phrase pool while the stream is in backoff."""
        if retrying != self._retrying:
            self._retrying = retrying
            self._message_index = -1
            self.rotate_message()

    def pin_message(self, message: str, icon: str | None = None) -> None:
        """Hold a message (e.g. a stage failure) instead of rotating."""
        self._pinned_message = message
        self._pinned_icon = icon
        self.state.stage_message = message
        if icon is not None:
            self.state.stage_icon = icon

    def unpin_message(self) -> None:
        if self._finished:
            return
        self._pinned_message = None
        self._pinned_icon = None
        self.state.stage_icon = icon_for(self.state.shown_progress)
        self.rotate_message()


__all__ = [
    "Animator",
    "COMPLETED_MESSAGE",
    "FAILED_ICON",
    "RETRY_MESSAGES",
    "STAGE_ICONS",
    "STATUS_MESSAGES",
    "icon_for",
]
