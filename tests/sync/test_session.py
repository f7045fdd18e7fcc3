"""Tests for sync/session.py - end-to-end session behaviour.

The push channel is replaced by an in-process fake and the status endpoint
by ``httpx.MockTransport``; timings are shrunk to milliseconds.
"""

import asyncio
from unittest.mock import MagicMock

import httpx
import pytest

from tripsync.sync.errors import TerminalReason, TransientConnectionError
from tripsync.sync.models import (
    AgentSignal,
    ConnectionPhase,
    ControlFrame,
    ControlKind,
    JobStatus,
    StageStatus,
    SyncConfig,
)
from tripsync.sync.session import GenerationSession
from tripsync.sync.stream import StreamSource

STAGES = ("planner", "enrichment", "places")


class FakeStream(StreamSource):
    """Push channel that replays a fixed frame list on every opening.

    With ``fail=True`` every opening is refused. Without a completion
    frame the channel stays open until closed.
    """

    transport = "fake"

    def __init__(self, job_id, config, handlers, *, frames=(), fail=False):
        super().__init__(job_id, config, handlers)
        self.frames = list(frames)
        self.fail = fail
        self.openings = 0

    async def _consume(self):
        self.openings += 1
        if self.fail:
            raise TransientConnectionError("refused")
        self.handlers.on_open()
        self._deliver(list(self.frames))
        if not self._completed:
            await asyncio.Event().wait()


def fake_factory(created, **options):
    def factory(job_id, config, handlers, *, client=None):
        stream = FakeStream(job_id, config, handlers, **options)
        created.append(stream)
        return stream

    return factory


def status_client(snapshots):
    """MockTransport client serving ``snapshots`` in order, repeating the last."""
    queue = list(snapshots)

    def handler(request):
        body = queue.pop(0) if len(queue) > 1 else queue[0]
        return httpx.Response(200, json=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def fast_config(**overrides):
    values = dict(
        base_url="http://jobs.test",
        polling_interval_ms=10,
        reconnect_base_ms=1,
        reconnect_cap_ms=5,
        max_timeout_ms=5000,
        animator_tick_ms=10,
        message_rotation_ms=10,
        completion_settle_ms=0,
    )
    values.update(overrides)
    return SyncConfig(**values)


def running_snapshot(progress=0):
    return {
        "status": "generating",
        "agents": [
            {"kind": stage, "status": "running", "progress": progress}
            for stage in STAGES
        ],
    }


def sig(stage, status, progress=None, message=None):
    return AgentSignal(
        stage_id=stage, status=StageStatus(status), progress=progress, message=message
    )


async def wait_until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


class TestConstruction:
    def test_empty_job_id_rejected(self):
        with pytest.raises(ValueError):
            GenerationSession("")

    @pytest.mark.asyncio
    async def test_start_twice_raises(self):
        created = []
        async with status_client([running_snapshot()]) as client:
            session = GenerationSession(
                "job-1",
                fast_config(),
                client=client,
                stream_factory=fake_factory(created),
            )
            await session.start()
            with pytest.raises(RuntimeError):
                await session.start()
            await session.aclose()


class TestStreamCompletion:
    """Healthy stream reports stages and completes; polling lags behind."""

    @pytest.mark.asyncio
    async def test_completes_once_at_100(self):
        frames = [
            ControlFrame(kind=ControlKind.enumeration, stages=STAGES),
            sig("planner", "running", 40),
            sig("places", "running", 50),
            sig("enrichment", "running", 10),
            *[sig(stage, "completed", 100) for stage in STAGES],
            ControlFrame(kind=ControlKind.completion),
        ]
        created = []
        on_complete = MagicMock()
        on_error = MagicMock()
        async with status_client([running_snapshot(5)]) as client:
            session = GenerationSession(
                "job-1",
                fast_config(),
                on_complete=on_complete,
                on_error=on_error,
                client=client,
                stream_factory=fake_factory(created, frames=frames),
            )
            async with session:
                outcome = await session.wait(timeout=2)

        assert outcome == "completed"
        on_complete.assert_called_once_with()
        on_error.assert_not_called()
        assert session.arbiter.overall_progress == 100
        assert session.animator.shown_progress == 100
        assert session.poller.running is False

    @pytest.mark.asyncio
    async def test_racing_completions_fire_once(self):
        """Poll and stream both report completion; the callback runs once."""
        completed = {"status": "completed", "days": [{"day": 1}]}
        created = []
        on_complete = MagicMock()
        async with status_client([running_snapshot(), completed]) as client:
            session = GenerationSession(
                "job-1",
                fast_config(completion_settle_ms=30),
                on_complete=on_complete,
                client=client,
                stream_factory=fake_factory(
                    created, frames=[ControlFrame(kind=ControlKind.completion)]
                ),
            )
            async with session:
                await session.wait(timeout=2)
                await asyncio.sleep(0.05)

        on_complete.assert_called_once_with()
        assert session.gate.trigger in ("stream", "poll")

    @pytest.mark.asyncio
    async def test_stale_failure_after_completion_is_ignored(self):
        frames = [
            ControlFrame(kind=ControlKind.completion),
            sig("places", "failed", 0, "late"),
            ControlFrame(kind=ControlKind.failure, reason="late"),
        ]
        created = []
        on_complete = MagicMock()
        on_error = MagicMock()
        async with status_client([running_snapshot()]) as client:
            session = GenerationSession(
                "job-1",
                fast_config(),
                on_complete=on_complete,
                on_error=on_error,
                client=client,
                stream_factory=fake_factory(created, frames=frames),
            )
            async with session:
                await session.wait(timeout=2)

        on_complete.assert_called_once_with()
        on_error.assert_not_called()
        assert session.arbiter.overall_status is JobStatus.completed

    @pytest.mark.asyncio
    async def test_initial_poll_completion_skips_stream(self):
        completed = {"status": "completed", "days": [{"day": 1}]}
        created = []
        on_complete = MagicMock()
        async with status_client([completed]) as client:
            session = GenerationSession(
                "job-1",
                fast_config(),
                on_complete=on_complete,
                client=client,
                stream_factory=fake_factory(created),
            )
            async with session:
                assert session.outcome == "completed"

        on_complete.assert_called_once_with()
        assert created[0].openings == 0
        assert session.gate.trigger == "poll"


class TestPollOnly:
    """Stream never opens; polling alone drives the session to completion."""

    @pytest.mark.asyncio
    async def test_exhausts_stream_then_completes_from_polling(self):
        snapshots = [running_snapshot(10)] * 8 + [
            {
                "status": "completed",
                "days": [{"day": 1}],
                "agents": [
                    {"kind": stage, "status": "completed", "progress": 100}
                    for stage in STAGES
                ],
            }
        ]
        created = []
        on_complete = MagicMock()
        on_exhausted = MagicMock()
        async with status_client(snapshots) as client:
            session = GenerationSession(
                "job-1",
                fast_config(max_reconnect_attempts=3),
                on_complete=on_complete,
                on_exhausted=on_exhausted,
                client=client,
                stream_factory=fake_factory(created, fail=True),
            )
            async with session:
                outcome = await session.wait(timeout=3)

        assert outcome == "completed"
        on_complete.assert_called_once_with()
        on_exhausted.assert_called_once()
        assert on_exhausted.call_args.args[0].attempts == 3
        assert created[0].openings == 3
        assert session.connection.phase is ConnectionPhase.exhausted
        assert session.metrics.stream_attempts == 3
        assert session.metrics.poll_count >= 9


class TestStall:
    """Neither source reaches a terminal state before the ceiling."""

    @pytest.mark.asyncio
    async def test_ceiling_fires_stalled_once_and_freezes_state(self):
        created = []
        on_complete = MagicMock()
        on_error = MagicMock()
        async with status_client([running_snapshot(20)]) as client:
            session = GenerationSession(
                "job-1",
                fast_config(max_timeout_ms=60),
                on_complete=on_complete,
                on_error=on_error,
                client=client,
                stream_factory=fake_factory(created),
            )
            async with session:
                outcome = await session.wait(timeout=2)
                before = session.arbiter.snapshot()
                await asyncio.sleep(0.05)

                assert session.arbiter.ingest(sig("planner", "completed")) is False
                assert session.arbiter.snapshot() == before

        assert outcome == "failed"
        assert session.reason is TerminalReason.stalled
        on_error.assert_called_once_with(TerminalReason.stalled)
        on_complete.assert_not_called()
        assert session.poller.running is False
        assert session.supervisor.running is False


class TestFailures:
    @pytest.mark.asyncio
    async def test_stage_failure_fails_job(self):
        frames = [
            ControlFrame(kind=ControlKind.enumeration, stages=STAGES),
            sig("places", "failed", 10, "no results"),
        ]
        created = []
        on_error = MagicMock()
        views = []
        async with status_client([running_snapshot()]) as client:
            session = GenerationSession(
                "job-1",
                fast_config(),
                on_error=on_error,
                client=client,
                stream_factory=fake_factory(created, frames=frames),
            )
            session.subscribe(views.append)
            async with session:
                await session.wait(timeout=2)

        on_error.assert_called_once_with(TerminalReason.stage_failed)
        assert any(v.stage_message == "places agent failed: no results" for v in views)

    @pytest.mark.asyncio
    async def test_job_failure_from_poll(self):
        created = []
        on_error = MagicMock()
        failed = {"status": "failed", "error": "provider outage"}
        async with status_client([running_snapshot(), failed]) as client:
            session = GenerationSession(
                "job-1",
                fast_config(),
                on_error=on_error,
                client=client,
                stream_factory=fake_factory(created),
            )
            async with session:
                await session.wait(timeout=2)

        on_error.assert_called_once_with(TerminalReason.job_failed)
        assert session.arbiter.failure_reason == "provider outage"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_fires_no_callbacks(self):
        created = []
        on_complete = MagicMock()
        on_error = MagicMock()
        async with status_client([running_snapshot()]) as client:
            session = GenerationSession(
                "job-1",
                fast_config(max_timeout_ms=50),
                on_complete=on_complete,
                on_error=on_error,
                client=client,
                stream_factory=fake_factory(created),
            )
            await session.start()
            session.cancel()
            await asyncio.sleep(0.1)
            await session.aclose()

        assert session.outcome == "cancelled"
        on_complete.assert_not_called()
        on_error.assert_not_called()
        assert session.poller.running is False
        assert created[0].closed is True


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_listener_receives_views_until_unsubscribed(self):
        created = []
        views = []
        async with status_client([running_snapshot(30)]) as client:
            session = GenerationSession(
                "job-1",
                fast_config(),
                client=client,
                stream_factory=fake_factory(created),
            )
            subscription = session.subscribe(views.append)
            async with session:
                await wait_until(lambda: len(views) >= 3)
                assert views[-1].job_id == "job-1"
                assert views[-1].overall_progress == 30
                assert views[-1].agents_summary.total == 3

                subscription.unsubscribe()
                count = len(views)
                await asyncio.sleep(0.05)
                assert len(views) == count
                assert subscription.active is False

    @pytest.mark.asyncio
    async def test_listener_exception_does_not_break_session(self):
        created = []
        async with status_client([running_snapshot()]) as client:
            session = GenerationSession(
                "job-1",
                fast_config(),
                client=client,
                stream_factory=fake_factory(created),
            )
            session.subscribe(MagicMock(side_effect=RuntimeError("render bug")))
            async with session:
                await asyncio.sleep(0.03)
                assert session.ended is False


class TestManualOverride:
    @pytest.mark.asyncio
    async def test_refused_until_display_passes_threshold(self):
        created = []
        on_complete = MagicMock()
        async with status_client([running_snapshot(95)]) as client:
            session = GenerationSession(
                "job-1",
                fast_config(animator_step_per_tick=50, animator_tick_ms=1000),
                on_complete=on_complete,
                client=client,
                stream_factory=fake_factory(created),
            )
            async with session:
                assert session.manual_complete() is False

                session.animator.tick(session.arbiter.overall_progress)
                session.animator.tick(session.arbiter.overall_progress)
                assert session.view.manual_override_available is True
                assert session.manual_complete() is True

        on_complete.assert_called_once_with()
        assert session.outcome == "completed"
        assert session.gate.trigger == "manual"
