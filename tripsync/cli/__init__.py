"""CLI interface for tripsync.

Command modules register themselves on the ``main`` group below.
"""

import logging

import click
from dotenv import load_dotenv

from tripsync import __version__

# Load environment variables from .env file
load_dotenv(override=True)

logger = logging.getLogger(__name__)


@click.group(invoke_without_command=True)
@click.option(
    "--version",
    is_flag=True,
    help="Show the tripsync version and exit.",
)
@click.pass_context
def main(ctx: click.Context, version: bool) -> None:
    """tripsync - follow itinerary generation jobs from the terminal.

    \b
      tripsync watch JOB_ID    Follow a job live until it finishes
      tripsync status JOB_ID   Show a job's current status once
    """
    if version:
        click.echo(__version__)
        ctx.exit()

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


def register_commands() -> None:
    """Register all commands with the main CLI."""
    from tripsync.cli.watch import status, watch

    main.add_command(watch)
    main.add_command(status)


register_commands()

__all__ = ["main"]
