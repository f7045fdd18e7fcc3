"""Session progress display with Rich or logging fallback.

Renders the :class:`SessionView` stream of one generation session as a
transient Rich progress bar, and prints a per-stage summary table when the
session ends. Falls back to structured logging when the terminal is not
interactive (pipes, CI, ``NO_COLOR``).

Logging handlers are raised to WARNING while the bar is live so that log
lines cannot break the display.
"""

import logging
import time
from collections.abc import Mapping
from contextlib import contextmanager
from typing import Any

from rich.cells import cell_len
from rich.console import Console
from rich.markup import escape as _rich_escape
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from tripsync.sync.models import (
    AgentSignal,
    AgentsSummary,
    ConnectionPhase,
    JobStatus,
    SessionView,
    StageStatus,
)

_CONNECTION_STYLES = {
    ConnectionPhase.connecting: "yellow",
    ConnectionPhase.connected: "green",
    ConnectionPhase.disconnected: "yellow",
    ConnectionPhase.errored: "red",
    ConnectionPhase.exhausted: "dim",
}

_STAGE_STYLES = {
    StageStatus.queued: "dim",
    StageStatus.running: "cyan",
    StageStatus.completed: "green",
    StageStatus.failed: "red",
}


def _resolve_rich(use_rich: bool | None) -> bool:
    """Determine whether to use Rich display."""
    if use_rich is not None:
        return use_rich
    from tripsync.cli.rich_output import should_use_rich

    return should_use_rich()


def clip_text(text: str, max_len: int = 48) -> str:
    """Clip end of text with ellipsis, measured in terminal cells."""
    if cell_len(text) <= max_len:
        return text
    target = max_len - 3
    result = []
    width = 0
    for ch in text:
        ch_width = cell_len(ch)
        if width + ch_width > target:
            break
        result.append(ch)
        width += ch_width
    return "".join(result) + "..."


def format_time(seconds: float) -> str:
    """Format duration: 1h 23m, 5m 30s, 45s"""
    if seconds < 0:
        return "--"
    if seconds < 60:
        return f"{int(seconds)}s"
    if seconds < 3600:
        mins, secs = divmod(int(seconds), 60)
        return f"{mins}m {secs:02d}s" if secs else f"{mins}m"
    hours, rem = divmod(int(seconds), 3600)
    mins = rem // 60
    return f"{hours}h {mins:02d}m" if mins else f"{hours}h"


def format_agents_summary(summary: AgentsSummary) -> str:
    """``2/3 agents`` or ``2/3 agents, 1 failed``."""
    if summary.total == 0:
        return "waiting for agents"
    text = f"{summary.completed}/{summary.total} agents"
    if summary.failed:
        text += f", {summary.failed} failed"
    return text


class SessionProgressMonitor:
    """Renders one session's views.

    Pass :meth:`render` to ``GenerationSession.subscribe`` inside
    :meth:`managed`.

    Args:
        use_rich: Force Rich on or off; None auto-detects.
        logger: Logger for the plain fallback.
        console: Console to draw on (tests pass a recording console).
        log_step: Minimum progress change (percent) between fallback log
            lines.
    """

    def __init__(
        self,
        use_rich: bool | None = None,
        logger: logging.Logger | None = None,
        console: Console | None = None,
        log_step: int = 10,
    ):
        self.logger = logger or logging.getLogger(__name__)
        self._use_rich = _resolve_rich(use_rich)
        self._console = console
        self.log_step = log_step

        self._progress: Progress | None = None
        self._task_id: TaskID | None = None
        self._suppressed_handlers: dict[int, int] = {}
        self._started_at: float | None = None
        self._last_view: SessionView | None = None
        self._last_logged_progress = -1
        self._last_connection: ConnectionPhase | None = None
        self._last_status: JobStatus | None = None

    @property
    def use_rich(self) -> bool:
        return self._use_rich

    @property
    def last_view(self) -> SessionView | None:
        return self._last_view

    @contextmanager
    def managed(self, job_id: str):
        """Show the live bar for the duration of the block."""
        self._started_at = time.monotonic()
        if not self._use_rich:
            self.logger.info(f"Tracking generation job {job_id}")
            try:
                yield self
            finally:
                self._log_final()
            return

        self._console = self._console or Console()
        self._console.print(
            f"\n[bold blue]Itinerary generation[/bold blue] [dim]{job_id}[/dim]"
        )
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TextColumn("{task.fields[agents]}", style="dim"),
            TextColumn("{task.fields[connection]}"),
            TimeElapsedColumn(),
            console=self._console,
            transient=True,
        )
        self._suppress_logging()
        self._progress.start()
        self._task_id = self._progress.add_task(
            "Starting...", total=100, agents="", connection=""
        )
        try:
            yield self
        finally:
            self._progress.stop()
            self._progress = None
            self._task_id = None
            self._restore_logging()
            self._print_summary()

    def render(self, view: SessionView) -> None:
        """Subscription listener: draw or log one view."""
        self._last_view = view
        if self._progress is not None and self._task_id is not None:
            style = _CONNECTION_STYLES.get(view.connection_status, "")
            description = (
                f"{view.stage_icon} {_rich_escape(clip_text(view.stage_message))}"
            )
            if view.manual_override_available:
                description += " [dim](continue available)[/dim]"
            self._progress.update(
                self._task_id,
                completed=view.shown_progress,
                description=description,
                agents=format_agents_summary(view.agents_summary),
                connection=f"[{style}]{view.connection_status.value}[/{style}]",
            )
            return
        if not self._use_rich:
            self._log_view(view)

    def notice(self, message: str) -> None:
        """Show a dismissible warning (e.g. stream abandoned)."""
        if self._progress is not None:
            self._progress.console.print(f"  [yellow]{_rich_escape(message)}[/yellow]")
        else:
            self.logger.warning(message)

    # ------------------------------------------------------------------

    def _log_view(self, view: SessionView) -> None:
        progress = int(view.shown_progress)
        if view.connection_status is not self._last_connection:
            self._last_connection = view.connection_status
            self.logger.info(f"Stream {view.connection_status.value}")
        if view.overall_status is not self._last_status:
            self._last_status = view.overall_status
            self.logger.info(f"Job {view.overall_status.value}")
        if progress - self._last_logged_progress >= self.log_step or (
            progress == 100 and self._last_logged_progress < 100
        ):
            self._last_logged_progress = progress
            self.logger.info(
                f"{progress:3d}% {view.stage_message} "
                f"({format_agents_summary(view.agents_summary)})"
            )

    def _log_final(self) -> None:
        view = self._last_view
        if view is None:
            return
        elapsed = time.monotonic() - (self._started_at or time.monotonic())
        self.logger.info(
            f"Finished {view.job_id}: {view.overall_status.value} at "
            f"{view.overall_progress}% after {format_time(elapsed)}"
        )
        for stage_id, signal in view.stages.items():
            self.logger.info(
                f"  {stage_id}: {signal.status.value} {signal.progress or 0}%"
                + (f" - {signal.message}" if signal.message else "")
            )

    def _suppress_logging(self) -> None:
        root = logging.getLogger()
        for handler in root.handlers:
            self._suppressed_handlers[id(handler)] = handler.level
            handler.setLevel(max(handler.level, logging.WARNING))

    def _restore_logging(self) -> None:
        root = logging.getLogger()
        for handler in root.handlers:
            orig = self._suppressed_handlers.get(id(handler))
            if orig is not None:
                handler.setLevel(orig)
        self._suppressed_handlers.clear()

    def _print_summary(self) -> None:
        view = self._last_view
        if self._console is None or view is None:
            return

        elapsed = time.monotonic() - (self._started_at or time.monotonic())
        if view.overall_status is JobStatus.completed:
            headline = f"[green]\u2713[/green] completed in {format_time(elapsed)}"
        elif view.overall_status is JobStatus.failed:
            headline = f"[red]\u2717[/red] failed after {format_time(elapsed)}"
        else:
            headline = (
                f"[yellow]-[/yellow] stopped at {view.overall_progress}% "
                f"after {format_time(elapsed)}"
            )
        self._console.print(f"  {headline}")

        if not view.stages:
            return
        table = Table(title="Agents", show_header=True, padding=(0, 1))
        table.add_column("Agent", style="cyan", no_wrap=True)
        table.add_column("Status", justify="center")
        table.add_column("Progress", justify="right")
        table.add_column("Message", style="dim")
        for stage_id, signal in view.stages.items():
            style = _STAGE_STYLES.get(signal.status, "")
            table.add_row(
                stage_id,
                f"[{style}]{signal.status.value}[/{style}]",
                f"{signal.progress or 0}%",
                _rich_escape(clip_text(signal.message or "")),
            )
        self._console.print(table)
        self._console.print()


def summary_rows(stages: Mapping[str, AgentSignal]) -> list[dict[str, Any]]:
    """Per-stage rows for machine-readable output."""
    return [
        {
            "agent": stage_id,
            "status": signal.status.value,
            "progress": signal.progress or 0,
            "message": signal.message,
        }
        for stage_id, signal in stages.items()
    ]


def create_session_monitor(
    use_rich: bool | None = None,
    logger: logging.Logger | None = None,
) -> SessionProgressMonitor:
    """Create a session progress monitor."""
    return SessionProgressMonitor(use_rich=use_rich, logger=logger)
