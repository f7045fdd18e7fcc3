"""Automatic rich output detection for CLI commands.

Decides whether ``tripsync watch`` draws a live Rich progress bar or falls
back to plain log lines. Commands call ``should_use_rich()`` rather than
taking a ``--no-rich`` flag.

Detection priority:
1. ``TRIPSYNC_RICH`` env var, explicit override (``0``/``false``/``no``
   disables, ``1``/``true``/``yes`` forces)
2. ``NO_COLOR`` env var disables rich
3. ``CI`` env var disables rich
4. ``stdout.isatty()`` is false in pipes, redirects and cron
"""

from __future__ import annotations

import os
import sys

from tripsync.settings import _parse_bool


def should_use_rich() -> bool:
    """Determine whether to use Rich interactive output."""
    override = os.environ.get("TRIPSYNC_RICH", "").strip()
    if override:
        return _parse_bool(override)

    # NO_COLOR convention (https://no-color.org/)
    if os.environ.get("NO_COLOR") is not None:
        return False

    if os.environ.get("CI"):
        return False

    try:
        return sys.stdout.isatty()
    except (AttributeError, ValueError):
        # Detached or closed stdout
        return False
