"""Project settings loaded from pyproject.toml [tool.tripsync] section.

Configuration is organized into subsections:
  [tool.tripsync]         : general settings (base-url, token)
  [tool.tripsync.stream]  : push channel transport and socket URL
  [tool.tripsync.sync]    : polling, reconnect, timeout and animation tuning

All settings support environment variable overrides (TRIPSYNC_* prefix).
"""

import importlib.resources
import os
from functools import cache
from pathlib import Path
from typing import Any

import tomllib

from tripsync.sync.models import SyncConfig


@cache
def _load_pyproject_settings() -> dict:
    """Load settings from pyproject.toml [tool.tripsync] section.

    Returns:
        Dictionary of settings from pyproject.toml, empty dict if not found.
    """
    try:
        # Try package resources first (installed package)
        files = importlib.resources.files("tripsync")
        pyproject_path = files.joinpath("..", "pyproject.toml")

        # If package resource doesn't exist, try filesystem
        if not pyproject_path.is_file():  # type: ignore[union-attr]
            # Walk up to find pyproject.toml (for development)
            current = Path(__file__).resolve().parent
            while current != current.parent:
                candidate = current / "pyproject.toml"
                if candidate.exists():
                    pyproject_path = candidate
                    break
                current = current.parent
            else:
                return {}

        content = pyproject_path.read_text()  # type: ignore[union-attr]
        data = tomllib.loads(content)
        return data.get("tool", {}).get("tripsync", {})
    except (OSError, tomllib.TOMLDecodeError):
        return {}


def _get_section(section: str) -> dict:
    """Get a subsection from [tool.tripsync.{section}]."""
    value = _load_pyproject_settings().get(section, {})
    return value if isinstance(value, dict) else {}


def _parse_bool(value: str | bool) -> bool:
    """Parse a boolean value from string or bool."""
    if isinstance(value, bool):
        return value
    return value.lower() in ("true", "1", "yes")


# ─── General settings ──────────────────────────────────────────────────────


def get_base_url() -> str:
    """Get the REST base URL of the job service.

    Priority: TRIPSYNC_BASE_URL env → [tool.tripsync].base-url → SyncConfig default.
    """
    if env := os.getenv("TRIPSYNC_BASE_URL"):
        return env
    return _load_pyproject_settings().get(
        "base-url", SyncConfig.model_fields["base_url"].default
    )


def get_token() -> str | None:
    """Get the externally supplied stream/poll token, if any.

    Priority: TRIPSYNC_TOKEN env → [tool.tripsync].token → None.
    """
    if env := os.getenv("TRIPSYNC_TOKEN"):
        return env
    return _load_pyproject_settings().get("token")


# ─── Stream settings ───────────────────────────────────────────────────────


def get_stream_transport() -> str:
    """Get the push channel transport (``sse`` or ``socket``).

    Priority: TRIPSYNC_STREAM_TRANSPORT env → [stream].transport → 'sse'.
    """
    if env := os.getenv("TRIPSYNC_STREAM_TRANSPORT"):
        return env.lower()
    return str(_get_section("stream").get("transport", "sse")).lower()


def get_socket_url() -> str:
    """Get the socket endpoint template (``{job_id}`` placeholder).

    Priority: TRIPSYNC_SOCKET_URL env → [stream].socket-url → SyncConfig default.
    """
    if env := os.getenv("TRIPSYNC_SOCKET_URL"):
        return env
    return _get_section("stream").get(
        "socket-url", SyncConfig.model_fields["socket_url"].default
    )


# ─── Sync tuning ───────────────────────────────────────────────────────────

# SyncConfig field → (env var, [sync] key). Values are passed through raw so
# SyncConfig does the coercion and reports bad input as a ValidationError.
_SYNC_TUNABLES: dict[str, tuple[str, str]] = {
    "polling_interval_ms": ("TRIPSYNC_POLLING_INTERVAL_MS", "polling-interval-ms"),
    "max_reconnect_attempts": (
        "TRIPSYNC_MAX_RECONNECT_ATTEMPTS",
        "max-reconnect-attempts",
    ),
    "reconnect_base_ms": ("TRIPSYNC_RECONNECT_BASE_MS", "reconnect-base-ms"),
    "reconnect_cap_ms": ("TRIPSYNC_RECONNECT_CAP_MS", "reconnect-cap-ms"),
    "max_timeout_ms": ("TRIPSYNC_MAX_TIMEOUT_MS", "max-timeout-ms"),
    "animator_step_per_tick": (
        "TRIPSYNC_ANIMATOR_STEP_PER_TICK",
        "animator-step-per-tick",
    ),
    "animator_tick_ms": ("TRIPSYNC_ANIMATOR_TICK_MS", "animator-tick-ms"),
    "message_rotation_ms": ("TRIPSYNC_MESSAGE_ROTATION_MS", "message-rotation-ms"),
    "completion_settle_ms": ("TRIPSYNC_COMPLETION_SETTLE_MS", "completion-settle-ms"),
    "stage_failure_policy": ("TRIPSYNC_STAGE_FAILURE_POLICY", "stage-failure-policy"),
    "require_content": ("TRIPSYNC_REQUIRE_CONTENT", "require-content"),
    "request_timeout_s": ("TRIPSYNC_REQUEST_TIMEOUT_S", "request-timeout-s"),
}


def get_manual_override_threshold() -> int | str | None:
    """Get the manual-continue threshold, or None when disabled.

    Priority: TRIPSYNC_MANUAL_OVERRIDE_THRESHOLD env → [sync].manual-override-threshold
    → 90. The values ``off``/``none``/``-1`` disable the override path. Any
    other value is returned as given for SyncConfig to validate.
    """
    raw = os.getenv("TRIPSYNC_MANUAL_OVERRIDE_THRESHOLD")
    if raw is None:
        raw = _get_section("sync").get("manual-override-threshold")
    if raw is None:
        return SyncConfig.model_fields["manual_override_threshold"].default
    if str(raw).strip().lower() in ("off", "none", "-1", ""):
        return None
    return raw


def get_sync_settings() -> dict[str, Any]:
    """Collect sync tuning values from pyproject.toml and the environment.

    Only keys that are actually configured are returned, so SyncConfig
    defaults apply for everything else.
    """
    section = _get_section("sync")
    values: dict[str, Any] = {}
    for field_name, (env_var, key) in _SYNC_TUNABLES.items():
        if env := os.getenv(env_var):
            values[field_name] = env
        elif (val := section.get(key)) is not None:
            values[field_name] = val
    return values


def load_sync_config(**overrides: Any) -> SyncConfig:
    """Build a validated SyncConfig.

    Priority: explicit overrides → env → pyproject.toml → model defaults.
    Overrides whose value is None are ignored so CLI options that were not
    given do not mask configured values.

    Raises:
        pydantic.ValidationError: If the merged values are invalid.
    """
    values: dict[str, Any] = {
        "base_url": get_base_url(),
        "token": get_token(),
        "stream_transport": get_stream_transport(),
        "socket_url": get_socket_url(),
        "manual_override_threshold": get_manual_override_threshold(),
    }
    values.update(get_sync_settings())
    values.update({k: v for k, v in overrides.items() if v is not None})
    return SyncConfig(**values)
