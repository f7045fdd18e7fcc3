"""
Data models for generation-progress synchronization.

Runtime state is held in plain dataclasses: signals and snapshots are
frozen so they can be handed to consumers without copying, while
the few mutable records (DisplayState) are owned by exactly one component.

SyncConfig is a Pydantic model so configuration from pyproject.toml,
environment variables and CLI options is validated in one place.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

__all__ = [
    "AgentSignal",
    "AgentsSummary",
    "AuthoritativeState",
    "ConnectionPhase",
    "ConnectionState",
    "ControlFrame",
    "ControlKind",
    "DisplayState",
    "Frame",
    "JobStatus",
    "SessionView",
    "StageStatus",
    "SyncConfig",
    "clamp_progress",
]


# =============================================================================
# Status enums
# =============================================================================


class StageStatus(str, Enum):
    """Status of one pipeline stage."""

    queued = "queued"
    running = "running"
    completed = "completed"
    failed = "failed"

    @property
    def rank(self) -> int:
        """Position in the forward ordering queued → running → completed.

        ``failed`` sits outside the ordering and is handled separately.
        """
        return _STAGE_RANK.get(self, -1)


_STAGE_RANK = {
    StageStatus.queued: 0,
    StageStatus.running: 1,
    StageStatus.completed: 2,
}


class JobStatus(str, Enum):
    """Overall status of a generation job."""

    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        """Terminal states are absorbing."""
        return self in (JobStatus.completed, JobStatus.failed)


class ConnectionPhase(str, Enum):
    """Lifecycle phase of the push channel."""

    connecting = "connecting"  # Opening the channel
    connected = "connected"  # Channel open, frames flowing
    disconnected = "disconnected"  # Waiting in backoff, or stopped
    errored = "errored"  # Failure just observed
    exhausted = "exhausted"  # Retries used up, poll-only from here on


def clamp_progress(value: float | int) -> int:
    """Round half-up and clamp a progress value into 0..100."""
    rounded = int(float(value) + 0.5) if value >= 0 else 0
    return max(0, min(100, rounded))


# =============================================================================
# Signals and control frames
# =============================================================================


@dataclass(frozen=True)
class AgentSignal:
    """One status/progress report for one stage, from either source.

    ``progress`` is None when the frame carried no progress value; the
    arbiter then keeps the stored value for the stage.
    """

    stage_id: str
    status: StageStatus
    progress: int | None = None
    message: str | None = None

    def __post_init__(self) -> None:
        if self.progress is not None:
            object.__setattr__(self, "progress", clamp_progress(self.progress))


class ControlKind(str, Enum):
    """Job-level frames that are not per-stage signals."""

    enumeration = "enumeration"  # Lists the StageIds the job will use
    completion = "completion"  # Explicit job-level completion
    failure = "failure"  # Explicit job-level failure
    connected = "connected"  # Informational connection confirmation


@dataclass(frozen=True)
class ControlFrame:
    """A job-level control frame."""

    kind: ControlKind
    stages: tuple[str, ...] = ()
    reason: str | None = None
    payload: Any = field(default=None, compare=False)


Frame = AgentSignal | ControlFrame


# =============================================================================
# Authoritative, display and connection state
# =============================================================================


@dataclass(frozen=True)
class AgentsSummary:
    """Per-stage completion counts for the view layer."""

    completed: int = 0
    failed: int = 0
    total: int = 0


@dataclass(frozen=True)
class AuthoritativeState:
    """Immutable snapshot of the arbiter's merged state."""

    per_stage: Mapping[str, AgentSignal] = field(
        default_factory=lambda: MappingProxyType({})
    )
    overall_progress: int = 0
    overall_status: JobStatus = JobStatus.pending

    @property
    def is_terminal(self) -> bool:
        return self.overall_status.is_terminal


@dataclass
class DisplayState:
    """Smoothed, UI-facing progress. Owned by the Animator."""

    shown_progress: float = 0.0
    stage_message: str = ""
    stage_icon: str = ""


@dataclass(frozen=True)
class ConnectionState:
    """Push channel state. Replaced wholesale on every transition."""

    attempt: int = 0
    phase: ConnectionPhase = ConnectionPhase.connecting
    next_retry_at: float | None = None
    last_error: str | None = None


@dataclass(frozen=True)
class SessionView:
    """Everything the view layer needs to render one session."""

    job_id: str
    shown_progress: float
    stage_message: str
    stage_icon: str
    connection_status: ConnectionPhase
    agents_summary: AgentsSummary
    overall_status: JobStatus
    overall_progress: int
    manual_override_available: bool = False
    stages: Mapping[str, AgentSignal] = field(
        default_factory=lambda: MappingProxyType({})
    )


# =============================================================================
# Configuration
# =============================================================================


class SyncConfig(BaseModel):
    """Tuning for one synchronization session.

    Durations are in milliseconds to match the job service's conventions;
    the ``*_s`` properties convert for asyncio.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    base_url: str = "http://localhost:8080/api/v1"
    stream_transport: Literal["sse", "socket"] = "sse"
    stream_path: str = "/agents/stream?itineraryId={job_id}"
    socket_url: str = "ws://localhost:8080/ws/agents/{job_id}"
    poll_path: str = "/agents/{job_id}/status"
    token: str | None = None

    polling_interval_ms: int = Field(default=5000, gt=0)
    max_reconnect_attempts: int = Field(default=3, ge=0)
    reconnect_base_ms: int = Field(default=2000, gt=0)
    reconnect_cap_ms: int = Field(default=30000, gt=0)
    max_timeout_ms: int = Field(default=300000, gt=0)
    animator_step_per_tick: float = Field(default=2.0, gt=0)
    animator_tick_ms: int = Field(default=1000, gt=0)
    message_rotation_ms: int = Field(default=3000, gt=0)
    completion_settle_ms: int = Field(default=1000, ge=0)
    manual_override_threshold: int | None = Field(default=90, ge=0, le=100)
    stage_failure_policy: Literal["fail_job", "tolerate"] = "fail_job"
    require_content: bool = True
    request_timeout_s: float = Field(default=10.0, gt=0)

    @field_validator("stream_transport", "stage_failure_policy", mode="before")
    @classmethod
    def _lowercase(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def polling_interval_s(self) -> float:
        return self.polling_interval_ms / 1000

    @property
    def max_timeout_s(self) -> float:
        return self.max_timeout_ms / 1000

    @property
    def animator_tick_s(self) -> float:
        return self.animator_tick_ms / 1000

    @property
    def message_rotation_s(self) -> float:
        return self.message_rotation_ms / 1000

    @property
    def completion_settle_s(self) -> float:
        return self.completion_settle_ms / 1000

    @property
    def reconnect_base_s(self) -> float:
        return self.reconnect_base_ms / 1000

    @property
    def reconnect_cap_s(self) -> float:
        return self.reconnect_cap_ms / 1000

    def stream_url(self, job_id: str) -> str:
        """Absolute SSE URL for a job."""
        return self.base_url + self.stream_path.format(job_id=job_id)

    def poll_url(self, job_id: str) -> str:
        """Absolute status URL for a job."""
        return self.base_url + self.poll_path.format(job_id=job_id)

    def socket_endpoint(self, job_id: str) -> str:
        """Socket URL for a job, with the token appended when configured."""
        url = self.socket_url.format(job_id=job_id)
        if self.token:
            sep = "&" if "?" in url else "?"
            url = f"{url}{sep}token={self.token}"
        return url
