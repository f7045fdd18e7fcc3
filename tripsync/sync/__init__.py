"""Generation-progress synchronization.

Provides:
- Stream and poll signal sources (SSE, WebSocket, HTTP status polling)
- Monotonic progress arbitration across both sources
- Bounded-rate display animation
- Exactly-once completion gating with a wall-clock ceiling
- Reconnect supervision with exponential backoff
- A per-job session that wires all of the above together
"""

from tripsync.sync.animator import Animator, icon_for
from tripsync.sync.arbiter import ProgressArbiter
from tripsync.sync.errors import (
    ExhaustedRetries,
    MalformedFrameError,
    SyncError,
    TerminalReason,
    TransientConnectionError,
)
from tripsync.sync.gate import CompletionGate, GateOutcome
from tripsync.sync.models import (
    AgentSignal,
    AgentsSummary,
    AuthoritativeState,
    ConnectionPhase,
    ConnectionState,
    ControlFrame,
    ControlKind,
    DisplayState,
    JobStatus,
    SessionView,
    StageStatus,
    SyncConfig,
)
from tripsync.sync.poll import PollSource
from tripsync.sync.session import GenerationSession, SessionMetrics, Subscription
from tripsync.sync.stream import (
    SocketStreamSource,
    SseStreamSource,
    StreamHandlers,
    StreamSource,
    create_stream_source,
)
from tripsync.sync.supervisor import ReconnectSupervisor

__all__ = [
    "AgentSignal",
    "AgentsSummary",
    "Animator",
    "AuthoritativeState",
    "CompletionGate",
    "ConnectionPhase",
    "ConnectionState",
    "ControlFrame",
    "ControlKind",
    "DisplayState",
    "ExhaustedRetries",
    "GateOutcome",
    "GenerationSession",
    "JobStatus",
    "MalformedFrameError",
    "PollSource",
    "ProgressArbiter",
    "ReconnectSupervisor",
    "SessionMetrics",
    "SessionView",
    "SocketStreamSource",
    "SseStreamSource",
    "StageStatus",
    "StreamHandlers",
    "StreamSource",
    "Subscription",
    "SyncConfig",
    "SyncError",
    "TerminalReason",
    "TransientConnectionError",
    "create_stream_source",
    "icon_for",
]
