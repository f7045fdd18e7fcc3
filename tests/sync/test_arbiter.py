"""Tests for sync/arbiter.py - progress merging across both sources."""

import itertools
import random

import pytest

from tripsync.sync.arbiter import ProgressArbiter
from tripsync.sync.models import (
    AgentSignal,
    ControlFrame,
    ControlKind,
    JobStatus,
    StageStatus,
)

STAGES = ("planner", "enrichment", "places")


def sig(stage, status, progress=None, message=None):
    return AgentSignal(
        stage_id=stage, status=StageStatus(status), progress=progress, message=message
    )


@pytest.fixture
def arbiter():
    arb = ProgressArbiter()
    arb.register_stages(STAGES)
    return arb


class TestOverallProgress:
    """Mean-of-stages computation with the monotonic clamp."""

    def test_three_stage_mean(self, arbiter):
        """Running stages at 40, 50 and 10 give round(100/3) = 33."""
        arbiter.ingest(sig("planner", "running", 40))
        arbiter.ingest(sig("places", "running", 50))
        arbiter.ingest(sig("enrichment", "running", 10))

        assert arbiter.overall_progress == 33
        assert arbiter.overall_status is JobStatus.running

    def test_all_completed_reaches_100(self, arbiter):
        for stage in STAGES:
            arbiter.ingest(sig(stage, "running", 40))
        for stage in STAGES:
            arbiter.ingest(sig(stage, "completed", 100))

        assert arbiter.overall_progress == 100
        assert arbiter.overall_status is JobStatus.completed

    def test_rounds_half_up(self):
        arb = ProgressArbiter()
        arb.register_stages(["a", "b"])
        arb.ingest(sig("a", "running", 1))
        arb.ingest(sig("b", "running", 0))
        # mean 0.5 rounds up
        assert arb.overall_progress == 1

    def test_new_stage_does_not_lower_overall(self):
        """Discovering a stage at 0 cannot pull the overall value down."""
        arb = ProgressArbiter()
        arb.ingest(sig("planner", "running", 80))
        assert arb.overall_progress == 80

        arb.register_stages(["enrichment", "places"])
        assert arb.overall_progress == 80

    def test_stage_discovered_from_first_signal(self):
        arb = ProgressArbiter()
        arb.ingest(sig("planner", "running", 20))
        assert arb.stage_ids == ("planner",)
        assert arb.overall_progress == 20

    def test_completed_without_progress_counts_as_100(self, arbiter):
        arbiter.ingest(sig("planner", "completed"))
        assert arbiter.snapshot().per_stage["planner"].progress == 100


class TestStageMerge:
    """Per-stage acceptance rules."""

    def test_lower_progress_same_status_is_dropped(self, arbiter):
        arbiter.ingest(sig("planner", "running", 60))
        assert arbiter.ingest(sig("planner", "running", 30)) is False
        assert arbiter.snapshot().per_stage["planner"].progress == 60

    def test_status_regression_is_dropped(self, arbiter):
        arbiter.ingest(sig("planner", "completed", 100))
        assert arbiter.ingest(sig("planner", "running", 100)) is False
        assert arbiter.snapshot().per_stage["planner"].status is StageStatus.completed

    def test_duplicate_signal_is_noop(self, arbiter):
        assert arbiter.ingest(sig("planner", "running", 50, "working")) is True
        assert arbiter.ingest(sig("planner", "running", 50, "working")) is False

    def test_missing_progress_keeps_stored_value(self, arbiter):
        arbiter.ingest(sig("planner", "running", 45))
        assert arbiter.ingest(sig("planner", "running", None, "halfway")) is True

        stored = arbiter.snapshot().per_stage["planner"]
        assert stored.progress == 45
        assert stored.message == "halfway"

    def test_failure_is_sticky_per_stage(self):
        arb = ProgressArbiter(stage_failure_policy="tolerate")
        arb.register_stages(STAGES)
        arb.ingest(sig("planner", "failed", 30, "quota"))

        assert arb.ingest(sig("planner", "running", 90)) is False
        assert arb.snapshot().per_stage["planner"].status is StageStatus.failed

    def test_out_of_range_progress_is_clamped(self, arbiter):
        arbiter.ingest(sig("planner", "running", 250))
        assert arbiter.snapshot().per_stage["planner"].progress == 100


class TestTerminalStates:
    """Completed and failed are absorbing."""

    def test_late_running_after_completion_is_ignored(self, arbiter):
        arbiter.apply_completion()
        before = arbiter.snapshot()

        assert arbiter.ingest(sig("planner", "running", 10)) is False
        assert arbiter.snapshot() == before

    def test_explicit_completion_sets_100(self, arbiter):
        arbiter.ingest(sig("planner", "running", 40))
        assert arbiter.apply_completion() is True
        assert arbiter.overall_progress == 100
        assert arbiter.overall_status is JobStatus.completed

    def test_failure_after_completion_is_suppressed(self, arbiter):
        """A stale stage failure after job completion must not flip status."""
        arbiter.apply_completion()

        arbiter.ingest(sig("places", "failed", 0, "late"))
        arbiter.apply_failure("late failure")

        assert arbiter.overall_status is JobStatus.completed
        assert arbiter.failure_reason is None

    def test_stage_failure_fails_job_by_default(self, arbiter):
        arbiter.ingest(sig("planner", "running", 40))
        arbiter.ingest(sig("places", "failed", 10, "no results"))

        assert arbiter.overall_status is JobStatus.failed
        assert arbiter.failed_by_stage is True
        assert "places" in arbiter.failure_reason

    def test_explicit_failure_is_not_a_stage_failure(self, arbiter):
        arbiter.apply_failure("provider outage")
        assert arbiter.overall_status is JobStatus.failed
        assert arbiter.failed_by_stage is False
        assert arbiter.failure_reason == "provider outage"

    def test_failed_state_is_absorbing(self, arbiter):
        arbiter.apply_failure("boom")
        before = arbiter.snapshot()

        arbiter.ingest(sig("planner", "completed", 100))
        assert arbiter.apply_completion() is False
        assert arbiter.snapshot() == before

    def test_sealed_arbiter_ignores_input(self, arbiter):
        arbiter.ingest(sig("planner", "running", 20))
        arbiter.seal()

        assert arbiter.ingest(sig("planner", "running", 90)) is False
        assert arbiter.register_stages(["extra"]) is False
        assert arbiter.overall_progress == 7


class TestToleratePolicy:
    """stage_failure_policy='tolerate' keeps the job alive on stage failures."""

    def test_completes_with_one_failed_stage(self):
        arb = ProgressArbiter(stage_failure_policy="tolerate")
        arb.register_stages(STAGES)
        arb.ingest(sig("places", "failed", 0))
        assert arb.overall_status is JobStatus.running

        arb.ingest(sig("planner", "completed"))
        arb.ingest(sig("enrichment", "completed"))

        assert arb.overall_status is JobStatus.completed
        assert arb.agents_summary().failed == 1
        assert arb.agents_summary().completed == 2

    def test_fails_when_every_stage_failed(self):
        arb = ProgressArbiter(stage_failure_policy="tolerate")
        arb.register_stages(["a", "b"])
        arb.ingest(sig("a", "failed"))
        arb.ingest(sig("b", "failed"))

        assert arb.overall_status is JobStatus.failed
        assert arb.failed_by_stage is True


class TestApplyFrame:
    """Frame routing used by the poller and the status command."""

    def test_routes_control_frames(self):
        arb = ProgressArbiter()
        assert arb.apply(ControlFrame(kind=ControlKind.enumeration, stages=STAGES))
        assert arb.stage_ids == STAGES
        assert arb.apply(sig("planner", "running", 30))
        assert arb.apply(ControlFrame(kind=ControlKind.completion))
        assert arb.overall_status is JobStatus.completed

    def test_connected_frame_changes_nothing(self):
        arb = ProgressArbiter()
        assert arb.apply(ControlFrame(kind=ControlKind.connected)) is False


class TestInterleavings:
    """Monotonicity holds for any interleaving of the two sources."""

    def _stream_sequence(self):
        return [
            sig("planner", "running", 20),
            sig("planner", "running", 60),
            sig("enrichment", "running", 30),
            sig("planner", "completed", 100),
            sig("places", "running", 50),
        ]

    def _poll_sequence(self):
        # Polls lag behind the stream and repeat older values
        return [
            sig("planner", "running", 10),
            sig("enrichment", "queued", 0),
            sig("planner", "running", 60),
            sig("places", "running", 20),
            sig("enrichment", "running", 30),
        ]

    def test_overall_never_decreases_across_shuffles(self):
        rng = random.Random(7)
        for _ in range(200):
            stream = self._stream_sequence()
            poll = self._poll_sequence()
            merged = []
            while stream or poll:
                source = rng.choice([s for s in (stream, poll) if s])
                merged.append(source.pop(0))

            arb = ProgressArbiter()
            arb.register_stages(STAGES)
            history = [arb.overall_progress]
            for signal in merged:
                arb.ingest(signal)
                history.append(arb.overall_progress)

            assert history == sorted(history)
            assert all(0 <= value <= 100 for value in history)

    def test_final_state_independent_of_order(self):
        signals = self._stream_sequence()
        finals = set()
        for perm in itertools.islice(itertools.permutations(signals), 120):
            arb = ProgressArbiter()
            arb.register_stages(STAGES)
            for signal in perm:
                arb.ingest(signal)
            per_stage = arb.snapshot().per_stage
            finals.add(
                tuple(sorted((k, v.status, v.progress) for k, v in per_stage.items()))
            )
        assert len(finals) == 1
