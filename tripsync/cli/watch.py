"""Job watching commands: ``tripsync watch`` and ``tripsync status``."""

from __future__ import annotations

import asyncio
import json
import logging

import click
import httpx
from rich.console import Console
from rich.table import Table

from tripsync.cli.logging import configure_cli_logging
from tripsync.core.progress_monitor import (
    SessionProgressMonitor,
    format_agents_summary,
    summary_rows,
)
from tripsync.settings import load_sync_config
from tripsync.sync.arbiter import ProgressArbiter
from tripsync.sync.errors import ExhaustedRetries
from tripsync.sync.models import SyncConfig
from tripsync.sync.poll import PollSource
from tripsync.sync.session import GenerationSession, StreamFactory

logger = logging.getLogger(__name__)

EXIT_COMPLETED = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


def _load_config(**overrides) -> SyncConfig:
    try:
        return load_sync_config(**overrides)
    except ValueError as e:
        # pydantic.ValidationError is a ValueError
        raise click.ClickException(f"Invalid configuration: {e}") from e


async def run_watch(
    job_id: str,
    config: SyncConfig,
    monitor: SessionProgressMonitor,
    *,
    client: httpx.AsyncClient | None = None,
    stream_factory: StreamFactory | None = None,
) -> GenerationSession:
    """Follow one job until it ends, rendering through ``monitor``."""

    def on_exhausted(info: ExhaustedRetries) -> None:
        monitor.notice(
            f"Live updates unavailable after {info.attempts} attempt(s); "
            "still checking status every "
            f"{config.polling_interval_ms / 1000:g}s"
        )

    session = GenerationSession(
        job_id,
        config,
        on_exhausted=on_exhausted,
        client=client,
        stream_factory=stream_factory,
    )
    session.subscribe(monitor.render)
    with monitor.managed(job_id):
        async with session:
            await session.wait()
    logger.debug("Session metrics: %s", session.metrics.to_dict())
    return session


async def fetch_status(
    job_id: str,
    config: SyncConfig,
    *,
    client: httpx.AsyncClient | None = None,
) -> ProgressArbiter:
    """Poll the status endpoint once and merge the snapshot.

    Raises:
        click.ClickException: If the request or the response failed.
    """
    arbiter = ProgressArbiter(config.stage_failure_policy)
    poller = PollSource(job_id, config, arbiter.apply, client=client)
    await poller.poll_once()
    if poller.error_count:
        raise click.ClickException(
            f"Could not read status for {job_id}: {poller.last_error}"
        )
    return arbiter


@click.command("watch")
@click.argument("job_id")
@click.option("--base-url", default=None, help="REST base URL of the job service")
@click.option(
    "--transport",
    type=click.Choice(["sse", "socket"], case_sensitive=False),
    default=None,
    help="Push channel transport (default: sse)",
)
@click.option(
    "--poll-interval",
    type=click.IntRange(min=1),
    default=None,
    help="Status poll interval in milliseconds (default: 5000)",
)
@click.option(
    "--timeout",
    type=click.IntRange(min=1),
    default=None,
    help="Give up after this many milliseconds (default: 300000)",
)
@click.option("--token", default=None, help="Bearer token forwarded to the service")
@click.option("--json", "as_json", is_flag=True, help="Print the outcome as JSON")
@click.option("--verbose", "-v", is_flag=True, help="Show info-level log output")
def watch(
    job_id: str,
    base_url: str | None,
    transport: str | None,
    poll_interval: int | None,
    timeout: int | None,
    token: str | None,
    as_json: bool,
    verbose: bool,
) -> None:
    """Follow a generation job until it completes or fails.

    Exit status is 0 when the job completes, 1 when it fails or stalls,
    and 130 when interrupted.

    \b
    Examples:
        tripsync watch job-42
        tripsync watch job-42 --transport socket --poll-interval 2000
    """
    log_file = configure_cli_logging("watch", job_id=job_id, verbose=verbose)
    logger.debug("Logging to %s", log_file)
    config = _load_config(
        base_url=base_url,
        stream_transport=transport,
        polling_interval_ms=poll_interval,
        max_timeout_ms=timeout,
        token=token,
    )
    monitor = SessionProgressMonitor(use_rich=False if as_json else None)

    try:
        session = asyncio.run(run_watch(job_id, config, monitor))
    except KeyboardInterrupt:
        click.echo("Cancelled.", err=True)
        raise SystemExit(EXIT_CANCELLED) from None

    view = session.view
    if as_json:
        click.echo(
            json.dumps(
                {
                    "job_id": job_id,
                    "outcome": session.outcome,
                    "reason": session.reason.value if session.reason else None,
                    "overall_status": view.overall_status.value,
                    "overall_progress": view.overall_progress,
                    "agents": summary_rows(view.stages),
                    "metrics": session.metrics.to_dict(),
                },
                indent=2,
            )
        )

    if session.outcome == "completed":
        if not as_json:
            click.echo(f"Job {job_id} completed.")
        return
    if session.outcome == "cancelled":
        raise SystemExit(EXIT_CANCELLED)
    reason = session.reason.value if session.reason else "unknown"
    raise click.ClickException(f"Job {job_id} did not complete ({reason})")


@click.command("status")
@click.argument("job_id")
@click.option("--base-url", default=None, help="REST base URL of the job service")
@click.option("--token", default=None, help="Bearer token forwarded to the service")
@click.option("--json", "as_json", is_flag=True, help="Print the status as JSON")
def status(
    job_id: str, base_url: str | None, token: str | None, as_json: bool
) -> None:
    """Show a generation job's current status once."""
    configure_cli_logging("status", job_id=job_id)
    config = _load_config(base_url=base_url, token=token)
    arbiter = asyncio.run(fetch_status(job_id, config))
    snapshot = arbiter.snapshot()

    if as_json:
        click.echo(
            json.dumps(
                {
                    "job_id": job_id,
                    "overall_status": snapshot.overall_status.value,
                    "overall_progress": snapshot.overall_progress,
                    "agents": summary_rows(snapshot.per_stage),
                },
                indent=2,
            )
        )
        return

    console = Console()
    console.print(
        f"[bold]{job_id}[/bold]: {snapshot.overall_status.value} "
        f"{snapshot.overall_progress}% "
        f"[dim]({format_agents_summary(arbiter.agents_summary())})[/dim]"
    )
    if not snapshot.per_stage:
        return
    table = Table(show_header=True, padding=(0, 1))
    table.add_column("Agent", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Message", style="dim")
    for row in summary_rows(snapshot.per_stage):
        table.add_row(
            row["agent"], row["status"], f"{row['progress']}%", row["message"] or ""
        )
    console.print(table)
