"""
Wire payload classification for both signal sources.

Translates the three inbound shapes into the common frame vocabulary
(:class:`AgentSignal` / :class:`ControlFrame`):

- SSE events from the push channel (``agent-list``, ``agent-event``,
  ``completion``, ``connected``, ``error``; replayed events carry a
  ``missed_`` prefix) and from the per-execution agent stream
  (``agent_started``, ``agent_completed``, ``agent_failed``,
  ``progress_update``, ``generation_complete``)
- JSON messages from the socket transport (``type``/``updateType`` of
  ``agent_progress``, ``generation_complete``, ``agent_list``,
  ``connection_status``, ``error``)
- Status snapshots returned by the poll endpoint

Payloads are validated with Pydantic. Anything that cannot be classified
raises :class:`MalformedFrameError`; callers at the source boundary log
and drop it.
"""

from __future__ import annotations

import json
import logging
import math
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from tripsync.sync.errors import MalformedFrameError
from tripsync.sync.models import (
    AgentSignal,
    ControlFrame,
    ControlKind,
    Frame,
    JobStatus,
    StageStatus,
)

logger = logging.getLogger(__name__)

# Status spellings seen from the job service, normalised to StageStatus.
_STAGE_STATUS_ALIASES: dict[str, StageStatus] = {
    "queued": StageStatus.queued,
    "pending": StageStatus.queued,
    "waiting": StageStatus.queued,
    "running": StageStatus.running,
    "started": StageStatus.running,
    "in_progress": StageStatus.running,
    "processing": StageStatus.running,
    "completed": StageStatus.completed,
    "complete": StageStatus.completed,
    "success": StageStatus.completed,
    "succeeded": StageStatus.completed,
    "done": StageStatus.completed,
    "failed": StageStatus.failed,
    "failure": StageStatus.failed,
    "error": StageStatus.failed,
}

# Job-level status spellings, normalised to JobStatus.
_JOB_STATUS_ALIASES: dict[str, JobStatus] = {
    "pending": JobStatus.pending,
    "queued": JobStatus.pending,
    "draft": JobStatus.pending,
    "generating": JobStatus.running,
    "planning": JobStatus.running,
    "running": JobStatus.running,
    "in_progress": JobStatus.running,
    "processing": JobStatus.running,
    "completed": JobStatus.completed,
    "complete": JobStatus.completed,
    "ready": JobStatus.completed,
    "failed": JobStatus.failed,
    "error": JobStatus.failed,
}

MISSED_PREFIX = "missed_"

# Agent-stream SSE names; the name fixes the stage status where it implies one
_LIFECYCLE_EVENTS: dict[str, StageStatus | None] = {
    "agent_started": StageStatus.running,
    "agent_completed": StageStatus.completed,
    "agent_failed": StageStatus.failed,
    "progress_update": None,
}


def normalize_stage_status(value: Any) -> StageStatus:
    """Map a wire status string onto StageStatus.

    Raises:
        ValueError: If the value is not a recognised status.
    """
    if isinstance(value, StageStatus):
        return value
    key = str(value).strip().lower().replace("-", "_")
    try:
        return _STAGE_STATUS_ALIASES[key]
    except KeyError:
        raise ValueError(f"unknown stage status {value!r}") from None


def normalize_job_status(value: Any) -> JobStatus | None:
    """Map a wire job status onto JobStatus, or None when unrecognised."""
    if value is None:
        return None
    key = str(value).strip().lower().replace("-", "_")
    return _JOB_STATUS_ALIASES.get(key)


# =============================================================================
# Payload models
# =============================================================================


class AgentEventPayload(BaseModel):
    """Per-stage progress payload (``agent-event`` / ``agent_progress``)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    kind: str = Field(min_length=1)
    status: StageStatus
    progress: float | None = Field(default=None, allow_inf_nan=False)
    message: str | None = None

    @field_validator("kind", mode="before")
    @classmethod
    def _kind_to_str(cls, value: Any) -> Any:
        return str(value).strip().lower() if value is not None else value

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> StageStatus:
        return normalize_stage_status(value)

    def to_signal(self) -> AgentSignal:
        """Build the signal, rounding progress half-up.

        Raises:
            MalformedFrameError: If progress is not a finite number.
        """
        if self.progress is not None and not math.isfinite(self.progress):
            raise MalformedFrameError(
                f"non-finite progress {self.progress!r} for {self.kind}", kind=self.kind
            )
        return AgentSignal(
            stage_id=self.kind,
            status=self.status,
            progress=None if self.progress is None else int(self.progress + 0.5),
            message=self.message,
        )


class AgentListPayload(BaseModel):
    """Stage enumeration payload (``agent-list``)."""

    model_config = ConfigDict(extra="ignore")

    agents: list[str]

    @field_validator("agents", mode="before")
    @classmethod
    def _lower(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [str(v).strip().lower() for v in value if v is not None]
        return value


class StatusSnapshot(BaseModel):
    """Point-in-time status returned by the poll endpoint.

    Only the status-relevant subset is modelled; every other field the
    service returns is ignored. All fields are optional so older or
    partial response shapes still validate.
    """

    model_config = ConfigDict(extra="ignore")

    status: str | None = None
    agents: list[AgentEventPayload] | dict[str, Any] | None = None
    days: list[Any] | None = None
    error: str | None = None

    def stage_payloads(self) -> list[AgentEventPayload]:
        """Per-stage entries, whichever shape the service used."""
        if self.agents is None:
            return []
        if isinstance(self.agents, list):
            return list(self.agents)
        payloads = []
        for kind, entry in self.agents.items():
            data = dict(entry) if isinstance(entry, dict) else {"status": entry}
            data.setdefault("kind", kind)
            payloads.append(AgentEventPayload.model_validate(data))
        return payloads


# =============================================================================
# Decoding helpers
# =============================================================================


def _load_json(data: str | bytes, kind: str | None) -> Any:
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="replace")
    if not data.strip():
        return {}
    try:
        return json.loads(data)
    except json.JSONDecodeError as e:
        raise MalformedFrameError(
            f"invalid JSON in {kind or 'frame'}: {e}", kind=kind
        ) from e


def _failure_reason(payload: Any) -> str | None:
    if isinstance(payload, dict):
        for key in ("reason", "message", "error", "detail"):
            if payload.get(key):
                return str(payload[key])
    elif isinstance(payload, str) and payload:
        return payload
    return None


def _flatten(payload: dict[str, Any]) -> dict[str, Any]:
    """Lift a nested ``data`` object to the top level; outer keys win."""
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    return {**data, **{k: v for k, v in payload.items() if k != "data"}}


def _stage_signal(
    stage: Any, fields: dict[str, Any], status: Any, kind: str
) -> AgentSignal:
    try:
        return AgentEventPayload.model_validate(
            {
                "kind": stage,
                "status": status,
                "progress": fields.get("progress"),
                "message": fields.get("message"),
            }
        ).to_signal()
    except ValidationError as e:
        raise MalformedFrameError(f"invalid {kind}: {e}", kind=kind) from e


def parse_sse_event(event: str | None, data: str) -> Frame | None:
    """Classify one server-sent event.

    Returns None for event names this subsystem does not consume (patch
    notifications, heartbeats and the like).

    Raises:
        MalformedFrameError: If a recognised event carries an invalid payload.
    """
    name = (event or "message").strip()
    if name.startswith(MISSED_PREFIX):
        name = name[len(MISSED_PREFIX) :]

    if name in ("connected", "connection_established"):
        # Informational text frame, not JSON
        return ControlFrame(kind=ControlKind.connected, payload=data)

    if name == "agent-list":
        payload = _load_json(data, name)
        try:
            agents = AgentListPayload.model_validate(payload)
        except ValidationError as e:
            raise MalformedFrameError(f"invalid agent-list: {e}", kind=name) from e
        return ControlFrame(kind=ControlKind.enumeration, stages=tuple(agents.agents))

    if name == "agent-event":
        payload = _load_json(data, name)
        try:
            return AgentEventPayload.model_validate(payload).to_signal()
        except ValidationError as e:
            raise MalformedFrameError(f"invalid agent-event: {e}", kind=name) from e

    if name in _LIFECYCLE_EVENTS:
        payload = _load_json(data, name)
        if not isinstance(payload, dict):
            raise MalformedFrameError(f"{name} payload is not an object", kind=name)
        fields = _flatten(payload)
        stage = fields.get("kind") or fields.get("agentId")
        status = _LIFECYCLE_EVENTS[name]
        if status is None:
            status = fields.get("status", "running")
        if not stage:
            if name != "progress_update":
                raise MalformedFrameError(f"{name} without stage", kind=name)
            if normalize_job_status(status) is JobStatus.completed:
                return ControlFrame(kind=ControlKind.completion, payload=payload)
            # Job-level progress; overall progress is derived from stages
            logger.debug("Ignoring progress_update without stage")
            return None
        return _stage_signal(stage, fields, status, name)

    if name in ("completion", "generation_complete"):
        # Empty or summary payload; the summary is kept but not interpreted,
        # so an unreadable summary still completes the job
        try:
            payload = _load_json(data, name)
        except MalformedFrameError:
            payload = data
        return ControlFrame(kind=ControlKind.completion, payload=payload)

    if name in ("error", "failure"):
        try:
            payload = _load_json(data, name)
        except MalformedFrameError:
            payload = data
        return ControlFrame(
            kind=ControlKind.failure, reason=_failure_reason(payload), payload=payload
        )

    logger.debug("Ignoring SSE event %r", name)
    return None


def parse_socket_message(raw: str | bytes) -> list[Frame]:
    """Classify one socket message.

    An ``agent_progress`` message that names no stage but reports
    ``status: completed`` is the socket variant's job-level completion.

    Raises:
        MalformedFrameError: If the message is not a recognisable JSON object.
    """
    payload = _load_json(raw, "socket")
    if not isinstance(payload, dict):
        raise MalformedFrameError("socket message is not an object", kind="socket")

    msg_type = str(payload.get("updateType") or payload.get("type") or "").lower()
    merged = _flatten(payload)

    if msg_type == "connection_status":
        return [ControlFrame(kind=ControlKind.connected, payload=payload)]

    if msg_type == "agent_list":
        try:
            agents = AgentListPayload.model_validate(merged)
        except ValidationError as e:
            raise MalformedFrameError(f"invalid agent_list: {e}", kind=msg_type) from e
        return [ControlFrame(kind=ControlKind.enumeration, stages=tuple(agents.agents))]

    if msg_type == "generation_complete":
        return [ControlFrame(kind=ControlKind.completion, payload=payload)]

    if msg_type == "error":
        return [
            ControlFrame(
                kind=ControlKind.failure,
                reason=_failure_reason(merged),
                payload=payload,
            )
        ]

    if msg_type == "agent_progress" or "agentId" in merged or "kind" in merged:
        stage = merged.get("kind") or merged.get("agentId")
        if not stage:
            if normalize_job_status(merged.get("status")) is JobStatus.completed:
                return [ControlFrame(kind=ControlKind.completion, payload=payload)]
            raise MalformedFrameError("agent_progress without stage", kind=msg_type)
        status = merged.get("status", "running")
        return [_stage_signal(stage, merged, status, msg_type or "agent_progress")]

    logger.debug("Ignoring socket message type %r", msg_type)
    return []


def parse_status_snapshot(payload: Any, *, require_content: bool = True) -> list[Frame]:
    """Translate a poll response body into frames.

    Missing fields produce no frames, so previously known state is left
    untouched. A ``completed`` job status is only reported as completion
    when ``require_content`` is off or the snapshot does not contradict it
    with an empty ``days`` list.

    Raises:
        MalformedFrameError: If the body is not a JSON object or fails
            validation.
    """
    if not isinstance(payload, dict):
        raise MalformedFrameError("status snapshot is not an object", kind="poll")
    try:
        snapshot = StatusSnapshot.model_validate(payload)
        stage_payloads = snapshot.stage_payloads()
        signals = [p.to_signal() for p in stage_payloads]
    except ValidationError as e:
        raise MalformedFrameError(f"invalid status snapshot: {e}", kind="poll") from e

    frames: list[Frame] = []
    if stage_payloads:
        frames.append(
            ControlFrame(
                kind=ControlKind.enumeration,
                stages=tuple(p.kind for p in stage_payloads),
            )
        )
        frames.extend(signals)

    job_status = normalize_job_status(snapshot.status)
    if snapshot.status is None:
        logger.debug("Status snapshot has no status field; leaving job status as is")
    elif job_status is None:
        logger.warning("Unrecognised job status %r in snapshot", snapshot.status)
    elif job_status is JobStatus.completed:
        if require_content and snapshot.days is not None and not snapshot.days:
            logger.warning(
                "Snapshot reports completed but carries no days yet, continuing to poll"
            )
        else:
            frames.append(ControlFrame(kind=ControlKind.completion, payload=payload))
    elif job_status is JobStatus.failed:
        frames.append(
            ControlFrame(
                kind=ControlKind.failure,
                reason=snapshot.error or "job failed",
                payload=payload,
            )
        )
    return frames


__all__ = [
    "AgentEventPayload",
    "AgentListPayload",
    "StatusSnapshot",
    "normalize_job_status",
    "normalize_stage_status",
    "parse_socket_message",
    "parse_sse_event",
    "parse_status_snapshot",
]
