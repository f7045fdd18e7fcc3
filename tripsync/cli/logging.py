"""Log files for CLI runs.

Each ``tripsync`` invocation appends to its own rotating file under
``~/.local/share/tripsync/logs/``. The file is keyed on the command and
the job id, so a ``watch`` on one job and a ``status`` on another leave
separate traces::

    watch_job-42.log
    status_job-7.log
    watch.log           # no job id given

The file always receives DEBUG records. The terminal only sees warnings
unless ``--verbose`` is passed::

    configure_cli_logging("watch", job_id=job_id, verbose=verbose)
"""

from __future__ import annotations

import logging
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Under XDG_DATA_HOME's default location
LOG_DIR = Path.home() / ".local" / "share" / "tripsync" / "logs"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")

_FILE_FORMAT = logging.Formatter(
    "%(asctime)s %(levelname)-8s %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
)
_CONSOLE_FORMAT = logging.Formatter("%(levelname)s: %(message)s")


def get_log_dir() -> Path:
    """Log directory, created on first use."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    return LOG_DIR


def get_log_file(command: str, job_id: str | None = None) -> Path:
    """Path of the log file for ``command`` run against ``job_id``.

    Runs of characters outside ``[A-Za-z0-9._-]`` in the job id collapse
    to a single ``_``.
    """
    stem = f"{command}_{_UNSAFE_CHARS.sub('_', job_id)}" if job_id else command
    return get_log_dir() / f"{stem}.log"


def configure_cli_logging(
    command: str,
    *,
    job_id: str | None = None,
    verbose: bool = False,
    console_level: int | None = None,
    file_level: int = logging.DEBUG,
    max_bytes: int = 10_000_000,
    backup_count: int = 3,
) -> Path:
    """Attach a rotating file handler and a stderr handler to ``tripsync``.

    Handlers left by an earlier call are closed and replaced, so a command
    can call this once per run without doubling its output.

    Args:
        command: Subcommand name, used as the file stem.
        job_id: Job being followed. Appended to the file stem when given.
        verbose: Show INFO on stderr instead of WARNING.
        console_level: Explicit stderr level. Wins over ``verbose``.
        file_level: Level for the log file.
        max_bytes: Size at which the file is rotated.
        backup_count: Rotated files kept next to the live one.

    Returns:
        The log file in use.
    """
    log_file = get_log_file(command, job_id=job_id)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    package_logger = logging.getLogger("tripsync")

    # Drop whatever a previous run installed
    for handler in package_logger.handlers[:]:
        if isinstance(handler, logging.StreamHandler):
            package_logger.removeHandler(handler)
            handler.close()

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(file_level)
    file_handler.setFormatter(_FILE_FORMAT)
    package_logger.addHandler(file_handler)

    if console_level is None:
        console_level = logging.INFO if verbose else logging.WARNING
    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(_CONSOLE_FORMAT)
    package_logger.addHandler(console_handler)

    # The logger level gates both handlers, so it must admit the lower one
    lowest = min(file_level, console_level)
    if package_logger.level == logging.NOTSET or package_logger.level > lowest:
        package_logger.setLevel(lowest)

    return log_file
