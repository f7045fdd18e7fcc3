"""
Per-job synchronization session.

:class:`GenerationSession` is the composition root for one JobId. It builds
the stream source, poller, arbiter, animator, completion gate and reconnect
supervisor, wires their data flows, owns the display timers and tears
everything down in order.

Data flow::

    StreamSource --+
                   +--> ProgressArbiter --> Animator        (display)
    PollSource ----+                   \\-> CompletionGate (terminal)

Listeners attach through :meth:`GenerationSession.subscribe`, which returns
a handle scoped to this session only.

Usage:
    async with GenerationSession(
        "job-42",
        load_sync_config(),
        on_complete=show_itinerary,
        on_error=show_failure,
    ) as session:
        session.subscribe(render)
        await session.wait()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

import httpx

from tripsync.sync.animator import FAILED_ICON, Animator
from tripsync.sync.arbiter import ProgressArbiter
from tripsync.sync.errors import (
    ExhaustedRetries,
    TerminalReason,
    TransientConnectionError,
)
from tripsync.sync.gate import CompletionGate, GateOutcome
from tripsync.sync.models import (
    AgentSignal,
    ConnectionPhase,
    ConnectionState,
    ControlFrame,
    ControlKind,
    Frame,
    JobStatus,
    SessionView,
    StageStatus,
    SyncConfig,
)
from tripsync.sync.poll import PollSource
from tripsync.sync.stream import (
    StreamHandlers,
    StreamSource,
    create_stream_source,
)
from tripsync.sync.supervisor import ReconnectSupervisor

logger = logging.getLogger(__name__)

StreamFactory = Callable[..., StreamSource]
ViewListener = Callable[[SessionView], None]


@dataclass
class SessionMetrics:
    """Diagnostic counters for one session."""

    poll_count: int = 0
    poll_errors: int = 0
    frames_received: int = 0
    frames_dropped: int = 0
    stream_attempts: int = 0
    status_changes: list[tuple[JobStatus, JobStatus, float]] = field(
        default_factory=list
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "poll_count": self.poll_count,
            "poll_errors": self.poll_errors,
            "frames_received": self.frames_received,
            "frames_dropped": self.frames_dropped,
            "stream_attempts": self.stream_attempts,
            "status_changes": [
                {"from": old.value, "to": new.value, "at": at}
                for old, new, at in self.status_changes
            ],
        }


class Subscription:
    """Handle returned by :meth:`GenerationSession.subscribe`."""

    def __init__(self, session: GenerationSession, listener: ViewListener) -> None:
        self._session = session
        self._listener = listener
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._session._detach(self)

    def _deliver(self, view: SessionView) -> None:
        if not self._active:
            return
        try:
            self._listener(view)
        except Exception:
            logger.exception("Session listener raised")


class GenerationSession:
    """Tracks one generation job until it completes, fails or is cancelled.

    Args:
        job_id: Job to follow.
        config: Session configuration; defaults to ``SyncConfig()``.
        on_complete: Called exactly once when the job completes (after the
            settle delay).
        on_error: Called exactly once with a :class:`TerminalReason` when
            the job fails or stalls.
        on_exhausted: Called when the push channel is abandoned; the session
            keeps running on polling alone.
        client: Shared ``httpx.AsyncClient`` for polling and SSE. A private
            client is created on start and closed by :meth:`aclose` if
            omitted.
        stream_factory: Builds the stream source; defaults to
            :func:`create_stream_source`.
    """

    def __init__(
        self,
        job_id: str,
        config: SyncConfig | None = None,
        *,
        on_complete: Callable[[], None] | None = None,
        on_error: Callable[[TerminalReason], None] | None = None,
        on_exhausted: Callable[[ExhaustedRetries], None] | None = None,
        client: httpx.AsyncClient | None = None,
        stream_factory: StreamFactory | None = None,
    ) -> None:
        if not job_id:
            raise ValueError("job_id must be a non-empty string")
        self.job_id = job_id
        self.config = config or SyncConfig()
        self._on_complete = on_complete
        self._on_error = on_error
        self._on_exhausted = on_exhausted
        self._client = client
        self._owns_client = False
        self._stream_factory = stream_factory or create_stream_source

        self.arbiter = ProgressArbiter(self.config.stage_failure_policy)
        self.animator = Animator(self.config.animator_step_per_tick)
        self.gate = CompletionGate(
            self._deliver_complete,
            self._deliver_error,
            settle_s=self.config.completion_settle_s,
            ceiling_s=self.config.max_timeout_s,
            manual_override_threshold=self.config.manual_override_threshold,
            on_decided=self._on_decided,
        )
        self.poller: PollSource | None = None
        self.stream: StreamSource | None = None
        self.supervisor: ReconnectSupervisor | None = None

        self._connection = ConnectionState()
        self._subscriptions: list[Subscription] = []
        self._timer_tasks: list[asyncio.Task] = []
        self._done = asyncio.Event()
        self._started = False
        self._outcome: str | None = None
        self._reason: TerminalReason | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def outcome(self) -> str | None:
        """``"completed"``, ``"failed"``, ``"cancelled"`` or None while running."""
        return self._outcome

    @property
    def reason(self) -> TerminalReason | None:
        return self._reason

    @property
    def ended(self) -> bool:
        return self._outcome is not None

    @property
    def connection(self) -> ConnectionState:
        return self._connection

    @property
    def view(self) -> SessionView:
        snapshot = self.arbiter.snapshot()
        display = self.animator.state
        return SessionView(
            job_id=self.job_id,
            shown_progress=display.shown_progress,
            stage_message=display.stage_message,
            stage_icon=display.stage_icon,
            connection_status=self._connection.phase,
            agents_summary=self.arbiter.agents_summary(),
            overall_status=snapshot.overall_status,
            overall_progress=snapshot.overall_progress,
            manual_override_available=self.gate.manual_override_available(
                display.shown_progress
            ),
            stages=MappingProxyType(dict(snapshot.per_stage)),
        )

    @property
    def metrics(self) -> SessionMetrics:
        metrics = SessionMetrics(status_changes=list(self.arbiter.status_changes))
        if self.poller is not None:
            metrics.poll_count = self.poller.poll_count
            metrics.poll_errors = self.poller.error_count
        if self.stream is not None:
            metrics.frames_received = self.stream.frames_received
            metrics.frames_dropped = self.stream.frames_dropped
        if self.supervisor is not None:
            metrics.stream_attempts = self.supervisor.attempts_made
        return metrics

    async def start(self) -> None:
        """Poll once, then start the stream, the poll loop and the timers."""
        if self._started:
            raise RuntimeError(f"session {self.job_id} already started")
        self._started = True
        logger.info("Starting session for %s", self.job_id)

        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.request_timeout_s)
            )
            self._owns_client = True

        handlers = StreamHandlers(
            on_signal=self._on_signal,
            on_control=self._on_stream_control,
            on_open=self._on_stream_open,
            on_error=self._on_stream_error,
        )
        self.stream = self._stream_factory(
            self.job_id, self.config, handlers, client=self._client
        )
        self.supervisor = ReconnectSupervisor(
            self.stream,
            max_attempts=self.config.max_reconnect_attempts,
            initial_backoff=self.config.reconnect_base_s,
            max_backoff=self.config.reconnect_cap_s,
            on_state=self._on_connection_state,
            on_exhausted=self._on_stream_exhausted,
        )
        self.poller = PollSource(
            self.job_id, self.config, self._on_poll_frame, client=self._client
        )

        self.gate.start()
        # A fresh session re-derives its state from the status endpoint first
        await self.poller.poll_once()
        if self.gate.is_latched:
            return

        self.poller.start(immediate=False)
        self.supervisor.start()
        self._timer_tasks = [
            asyncio.create_task(self._tick_loop(), name=f"tick-{self.job_id}"),
            asyncio.create_task(self._rotate_loop(), name=f"rotate-{self.job_id}"),
        ]
        self._notify()

    def cancel(self) -> None:
        """Tear the session down without firing any terminal callback.

        Order: stop polling, close the stream, freeze the gate, seal the
        arbiter.
        """
        if self.ended:
            return
        logger.info("Cancelling session for %s", self.job_id)
        if self.poller is not None:
            self.poller.stop()
        if self.supervisor is not None:
            self.supervisor.stop()
        self.gate.freeze()
        self.arbiter.seal()
        self._end("cancelled")

    async def wait(self, timeout: float | None = None) -> str | None:
        """Wait until the session ends and return its outcome."""
        if timeout is None:
            await self._done.wait()
        else:
            await asyncio.wait_for(self._done.wait(), timeout)
        return self._outcome

    async def aclose(self) -> None:
        """Cancel if still running and release the private HTTP client."""
        self.cancel()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
            self._owns_client = False

    async def __aenter__(self) -> GenerationSession:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    def subscribe(self, listener: ViewListener) -> Subscription:
        """Attach a view listener; it receives a SessionView on every change."""
        subscription = Subscription(self, listener)
        self._subscriptions.append(subscription)
        return subscription

    def manual_complete(self) -> bool:
        """User "continue" once the display has passed the override threshold."""
        return self.gate.manual_complete(self.animator.shown_progress)

    def retry_stream(self) -> bool:
        """Start a fresh reconnect cycle after the stream was abandoned."""
        if self.supervisor is None or self.gate.is_latched:
            return False
        return self.supervisor.retry()

    # ------------------------------------------------------------------
    # Signal intake
    # ------------------------------------------------------------------

    def _on_poll_frame(self, frame: Frame) -> None:
        if isinstance(frame, AgentSignal):
            self._on_signal(frame)
        else:
            self._on_control(frame, source="poll")

    def _on_stream_control(self, frame: ControlFrame) -> None:
        self._on_control(frame, source="stream")

    def _on_signal(self, signal: AgentSignal) -> None:
        if not self.arbiter.ingest(signal):
            return
        if signal.status is StageStatus.failed:
            detail = signal.message or "unknown error"
            self.animator.pin_message(
                f"{signal.stage_id} agent failed: {detail}", icon=FAILED_ICON
            )
        self._check_terminal("arbiter")
        self._notify()

    def _on_control(self, frame: ControlFrame, source: str) -> None:
        if frame.kind is ControlKind.connected:
            logger.debug("Channel confirmed for %s: %s", self.job_id, frame.payload)
            return
        if self.arbiter.apply(frame):
            self._check_terminal(source)
            self._notify()

    def _check_terminal(self, source: str) -> None:
        status = self.arbiter.overall_status
        if status is JobStatus.completed:
            self.gate.trigger_complete(source)
        elif status is JobStatus.failed:
            reason = (
                TerminalReason.stage_failed
                if self.arbiter.failed_by_stage
                else TerminalReason.job_failed
            )
            self.gate.trigger_error(reason, source)

    # ------------------------------------------------------------------
    # Stream supervision
    # ------------------------------------------------------------------

    def _on_stream_open(self) -> None:
        if self.supervisor is not None:
            self.supervisor.notify_open()

    def _on_stream_error(self, error: TransientConnectionError) -> None:
        if self.supervisor is not None:
            self.supervisor.notify_error(error)

    def _on_connection_state(self, state: ConnectionState) -> None:
        self._connection = state
        backing_off = state.phase is ConnectionPhase.disconnected
        self.animator.set_retrying(backing_off and state.next_retry_at is not None)
        self._notify()

    def _on_stream_exhausted(self, info: ExhaustedRetries) -> None:
        self.animator.set_retrying(False)
        if self._on_exhausted is None:
            return
        try:
            self._on_exhausted(info)
        except Exception:
            logger.exception("on_exhausted callback raised")

    # ------------------------------------------------------------------
    # Terminal handling
    # ------------------------------------------------------------------

    def _on_decided(self, outcome: GateOutcome) -> None:
        # Sources stop as soon as the outcome is known; the display keeps
        # its timers until the settle delay has elapsed
        if self.poller is not None:
            self.poller.stop()
        if self.supervisor is not None:
            self.supervisor.stop()
        self.arbiter.seal()
        if outcome is GateOutcome.completed:
            self.animator.finish(self.arbiter.overall_progress)
        self._notify()

    def _deliver_complete(self) -> None:
        self._end("completed")
        if self._on_complete is not None:
            self._on_complete()

    def _deliver_error(self, reason: TerminalReason) -> None:
        self._reason = reason
        self._end("failed")
        if self._on_error is not None:
            self._on_error(reason)

    def _end(self, outcome: str) -> None:
        if self._outcome is not None:
            return
        self._outcome = outcome
        for task in self._timer_tasks:
            task.cancel()
        self._timer_tasks = []
        logger.info("Session for %s ended: %s", self.job_id, outcome)
        self._notify()
        self._done.set()

    # ------------------------------------------------------------------
    # Display timers and fan-out
    # ------------------------------------------------------------------

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.animator_tick_s)
            self.animator.tick(self.arbiter.overall_progress)
            self._notify()

    async def _rotate_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.message_rotation_s)
            self.animator.rotate_message()
            self._notify()

    def _notify(self) -> None:
        if not self._subscriptions:
            return
        view = self.view
        for subscription in list(self._subscriptions):
            subscription._deliver(view)

    def _detach(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)


__all__ = [
    "GenerationSession",
    "SessionMetrics",
    "Subscription",
]
