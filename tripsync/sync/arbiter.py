"""
Authoritative progress merging for one generation job.

The arbiter reconciles signals from the push stream and the poller into a
single state without knowing (or caring) which source produced them. The
two sources share no clock, so arrival order is resolved entirely by
monotonic clamps:

- per stage, a signal only replaces the stored one when it moves the stage
  forward (higher status or same status with progress >= stored) or
  reports a failure
- overall progress is the rounded mean of known stage progresses, clamped
  so it never falls below the previous value
- ``completed`` and ``failed`` are absorbing: once reached, nothing changes

Stage ids are discovered as they appear (enumeration frames or the first
per-stage signal). Undiscovered stages do not count towards the mean.

The arbiter never raises; it only ever sees well-formed signals.
"""

from __future__ import annotations

import logging
import time
from types import MappingProxyType
from typing import Literal

from tripsync.sync.models import (
    AgentSignal,
    AgentsSummary,
    AuthoritativeState,
    ControlKind,
    Frame,
    JobStatus,
    StageStatus,
    clamp_progress,
)

logger = logging.getLogger(__name__)

StageFailurePolicy = Literal["fail_job", "tolerate"]


class ProgressArbiter:
    """Merges stage signals into an AuthoritativeState.

    Args:
        stage_failure_policy: ``"fail_job"`` fails the job as soon as any
            stage fails. ``"tolerate"`` keeps the job running and completes
            it once every known stage is terminal with at least one
            completed; the failed stages are still reported per stage.
    """

    def __init__(self, stage_failure_policy: StageFailurePolicy = "fail_job") -> None:
        self.stage_failure_policy = stage_failure_policy
        self._stages: dict[str, AgentSignal] = {}
        self._overall_progress = 0
        self._status = JobStatus.pending
        self._completion_applied = False
        self._sealed = False
        self._failure_reason: str | None = None
        self._failed_by_stage = False
        self.status_changes: list[tuple[JobStatus, JobStatus, float]] = []

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def overall_progress(self) -> int:
        return self._overall_progress

    @property
    def overall_status(self) -> JobStatus:
        return self._status

    @property
    def is_terminal(self) -> bool:
        return self._status.is_terminal

    @property
    def is_frozen(self) -> bool:
        """True when no further input can change the state."""
        return self._sealed or self._status.is_terminal

    @property
    def failure_reason(self) -> str | None:
        """Why the job failed, when it did."""
        return self._failure_reason

    @property
    def failed_by_stage(self) -> bool:
        """True when stage failures (not an explicit signal) failed the job."""
        return self._failed_by_stage

    @property
    def stage_ids(self) -> tuple[str, ...]:
        return tuple(self._stages)

    def snapshot(self) -> AuthoritativeState:
        """Immutable copy of the current state."""
        return AuthoritativeState(
            per_stage=MappingProxyType(dict(self._stages)),
            overall_progress=self._overall_progress,
            overall_status=self._status,
        )

    def agents_summary(self) -> AgentsSummary:
        statuses = [s.status for s in self._stages.values()]
        return AgentsSummary(
            completed=statuses.count(StageStatus.completed),
            failed=statuses.count(StageStatus.failed),
            total=len(statuses),
        )

    def failed_stages(self) -> list[AgentSignal]:
        return [s for s in self._stages.values() if s.status is StageStatus.failed]

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def register_stages(self, stage_ids: tuple[str, ...] | list[str]) -> bool:
        """Record the stages a job will use (enumeration frame).

        Unknown stages enter as queued/0; known stages are left alone.
        Returns True if the state changed.
        """
        if self.is_frozen:
            return False
        added = False
        for stage_id in stage_ids:
            if stage_id and stage_id not in self._stages:
                self._stages[stage_id] = AgentSignal(
                    stage_id=stage_id, status=StageStatus.queued, progress=0
                )
                added = True
        if added:
            logger.debug("Known stages: %s", ", ".join(self._stages))
            self._recompute()
        return added

    def ingest(self, signal: AgentSignal) -> bool:
        """Merge one stage signal. Returns True if the state changed."""
        if self.is_frozen:
            return False

        stored = self._stages.get(signal.stage_id)
        if not self._accepts(stored, signal):
            logger.debug(
                "Dropped stale signal %s %s/%s (stored %s/%s)",
                signal.stage_id,
                signal.status.value,
                signal.progress,
                stored.status.value if stored else None,
                stored.progress if stored else None,
            )
            return False

        resolved = self._resolve(stored, signal)
        if resolved == stored:
            return False
        self._stages[signal.stage_id] = resolved

        started = signal.status is not StageStatus.queued
        if self._status is JobStatus.pending and started:
            self._set_status(JobStatus.running)

        self._recompute()
        self._evaluate_terminal()
        return True

    def apply_completion(self) -> bool:
        """Apply an explicit job-level completion.

        Authoritative: completes the job without waiting for per-stage
        completion. Returns True if this call completed the job.
        """
        if self.is_frozen:
            return False
        self._completion_applied = True
        self._complete()
        return True

    def apply_failure(self, reason: str | None = None) -> bool:
        """Apply an explicit job-level failure.

        Ignored once completion has been applied. Returns True if this call
        failed the job.
        """
        if self.is_frozen or self._completion_applied:
            return False
        self._fail(reason or "job failed")
        return True

    def apply(self, frame: Frame) -> bool:
        """Route any frame to the matching input. Returns True if the state changed."""
        if isinstance(frame, AgentSignal):
            return self.ingest(frame)
        if frame.kind is ControlKind.enumeration:
            return self.register_stages(frame.stages)
        if frame.kind is ControlKind.completion:
            return self.apply_completion()
        if frame.kind is ControlKind.failure:
            return self.apply_failure(frame.reason)
        return False

    def seal(self) -> None:
        """Freeze the state; used when the owning session is torn down."""
        self._sealed = True

    # ------------------------------------------------------------------
    # Merge rules
    # ------------------------------------------------------------------

    @staticmethod
    def _accepts(stored: AgentSignal | None, incoming: AgentSignal) -> bool:
        if stored is None:
            return True
        if stored.status is StageStatus.failed:
            # A recorded failure is never masked by a later non-failure
            return incoming.status is StageStatus.failed
        if incoming.status is StageStatus.failed:
            return True
        if incoming.status.rank > stored.status.rank:
            return True
        if incoming.status.rank < stored.status.rank:
            return False
        if incoming.progress is None:
            # Same status, no progress: only the message can change
            return incoming.message is not None and incoming.message != stored.message
        return incoming.progress >= (stored.progress or 0)

    @staticmethod
    def _resolve(stored: AgentSignal | None, incoming: AgentSignal) -> AgentSignal:
        if incoming.status is StageStatus.completed:
            progress = 100
        elif incoming.progress is not None:
            progress = incoming.progress
        else:
            progress = stored.progress if stored and stored.progress is not None else 0
        message = incoming.message if incoming.message is not None else (
            stored.message if stored else None
        )
        return AgentSignal(
            stage_id=incoming.stage_id,
            status=incoming.status,
            progress=progress,
            message=message,
        )

    def _recompute(self) -> None:
        if not self._stages:
            return
        total = sum(s.progress or 0 for s in self._stages.values())
        recomputed = clamp_progress(total / len(self._stages))
        self._overall_progress = max(self._overall_progress, recomputed)

    def _evaluate_terminal(self) -> None:
        statuses = [s.status for s in self._stages.values()]
        if not statuses:
            return

        if self.stage_failure_policy == "fail_job":
            if StageStatus.failed in statuses:
                failed = ", ".join(s.stage_id for s in self.failed_stages())
                self._failed_by_stage = True
                self._fail(f"stage failed: {failed}")
                return
            if all(s is StageStatus.completed for s in statuses):
                self._complete()
            return

        # Tolerant policy: finish once every stage is terminal
        terminal = (StageStatus.completed, StageStatus.failed)
        if all(s in terminal for s in statuses):
            if StageStatus.completed in statuses:
                self._complete()
            else:
                self._failed_by_stage = True
                self._fail("all stages failed")

    def _complete(self) -> None:
        self._overall_progress = 100
        self._set_status(JobStatus.completed)
        logger.info("Job completed")

    def _fail(self, reason: str) -> None:
        self._failure_reason = reason
        self._set_status(JobStatus.failed)
        logger.warning("Job failed: %s", reason)

    def _set_status(self, status: JobStatus) -> None:
        if status is self._status:
            return
        self.status_changes.append((self._status, status, time.time()))
        logger.debug("Job status %s -> %s", self._status.value, status.value)
        self._status = status


__all__ = ["ProgressArbiter", "StageFailurePolicy"]
