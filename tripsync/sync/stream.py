"""
Push-channel adapters.

Two transports deliver the same signal stream for one job:

- :class:`SseStreamSource` reads server-sent events over a streaming
  ``httpx`` request
- :class:`SocketStreamSource` reads JSON messages from a WebSocket

Both sit behind :class:`StreamSource`. A source never retries on its own:
:meth:`StreamSource.run` opens the channel, pumps frames into the handlers
until the channel ends, and reports any failure as a
:class:`TransientConnectionError` through ``on_error``. The reconnect
supervisor decides whether to call ``run`` again.

Malformed frames are counted, logged and dropped here; they never reach
the handlers.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
import websockets
from websockets.exceptions import WebSocketException

from tripsync.sync.errors import MalformedFrameError, TransientConnectionError
from tripsync.sync.frames import parse_socket_message, parse_sse_event
from tripsync.sync.models import (
    AgentSignal,
    ControlFrame,
    ControlKind,
    Frame,
    SyncConfig,
)

logger = logging.getLogger(__name__)


@dataclass
class StreamHandlers:
    """Callbacks a stream source delivers into."""

    on_signal: Callable[[AgentSignal], None]
    on_control: Callable[[ControlFrame], None]
    on_open: Callable[[], None]
    on_error: Callable[[TransientConnectionError], None]


class SseDecoder:
    """Incremental decoder for the ``text/event-stream`` line format.

    Feed it one line at a time (without the line terminator); it returns an
    ``(event, data)`` pair whenever a blank line completes an event.
    ``id:`` and ``retry:`` fields are accepted and ignored.
    """

    def __init__(self) -> None:
        self._event: str | None = None
        self._data: list[str] = []

    def decode(self, line: str) -> tuple[str | None, str] | None:
        line = line.rstrip("\r\n")
        if not line:
            if self._event is None and not self._data:
                return None
            dispatched = (self._event, "\n".join(self._data))
            self._event = None
            self._data = []
            return dispatched
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        return None


class StreamSource(ABC):
    """One push channel for one job.

    Counters (``frames_received``, ``frames_dropped``) accumulate across
    reopenings of the same source.
    """

    transport: str = ""
    # Exceptions raised by the underlying client that mean "channel lost"
    transport_errors: tuple[type[BaseException], ...] = (OSError,)

    def __init__(
        self, job_id: str, config: SyncConfig, handlers: StreamHandlers
    ) -> None:
        self.job_id = job_id
        self.config = config
        self.handlers = handlers
        self.frames_received = 0
        self.frames_dropped = 0
        self._closed = False
        self._completed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Mark the source closed; a running :meth:`run` stops delivering."""
        self._closed = True

    async def run(self) -> None:
        """Open the channel and deliver frames until it ends.

        Never raises except :class:`asyncio.CancelledError`. A channel that
        ends before a completion frame counts as a failure.
        """
        if self._closed:
            return
        self._completed = False
        try:
            await self._consume()
        except asyncio.CancelledError:
            raise
        except TransientConnectionError as e:
            error = e
        except self.transport_errors as e:
            error = TransientConnectionError(f"{type(e).__name__}: {e}")
        else:
            if self._closed or self._completed:
                return
            error = TransientConnectionError("stream ended before completion")

        if self._closed:
            return
        logger.debug(
            "%s stream for %s failed: %s", self.transport, self.job_id, error
        )
        self.handlers.on_error(error)

    @abstractmethod
    async def _consume(self) -> None:
        """Open the channel, call ``on_open``, then dispatch until it ends."""

    def _deliver(self, frames: list[Frame]) -> None:
        for frame in frames:
            if self._closed:
                return
            if isinstance(frame, AgentSignal):
                self.handlers.on_signal(frame)
            else:
                if frame.kind is ControlKind.completion:
                    self._completed = True
                self.handlers.on_control(frame)

    def _count_dropped(self, error: MalformedFrameError) -> None:
        self.frames_dropped += 1
        logger.warning(
            "Dropped malformed %s frame (%s): %s",
            self.transport,
            error.kind or "unknown",
            error,
        )


class SseStreamSource(StreamSource):
    """Server-sent events over a streaming GET.

    Args:
        job_id: Job to follow.
        config: Session configuration (URL, token, timeouts).
        handlers: Frame callbacks.
        client: Optional shared ``httpx.AsyncClient``. When omitted the
            source opens and closes its own client per connection.
    """

    transport = "sse"
    transport_errors = (httpx.HTTPError, OSError)

    def __init__(
        self,
        job_id: str,
        config: SyncConfig,
        handlers: StreamHandlers,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(job_id, config, handlers)
        self._client = client

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        return headers

    async def _consume(self) -> None:
        if self._client is not None:
            await self._stream(self._client)
            return
        async with httpx.AsyncClient() as client:
            await self._stream(client)

    async def _stream(self, client: httpx.AsyncClient) -> None:
        url = self.config.stream_url(self.job_id)
        # No read timeout: the channel can legitimately sit idle for minutes
        timeout = httpx.Timeout(self.config.request_timeout_s, read=None)
        async with client.stream(
            "GET", url, headers=self._headers(), timeout=timeout
        ) as response:
            if not response.is_success:
                raise TransientConnectionError(
                    f"stream returned HTTP {response.status_code}",
                    status_code=response.status_code,
                )
            logger.info("SSE stream open for %s", self.job_id)
            self.handlers.on_open()

            decoder = SseDecoder()
            async for line in response.aiter_lines():
                if self._closed:
                    return
                event = decoder.decode(line)
                if event is not None:
                    self._handle_event(*event)

    def _handle_event(self, event: str | None, data: str) -> None:
        self.frames_received += 1
        try:
            frame = parse_sse_event(event, data)
        except MalformedFrameError as e:
            self._count_dropped(e)
            return
        if frame is not None:
            self._deliver([frame])


class SocketStreamSource(StreamSource):
    """JSON messages over a WebSocket.

    Args:
        job_id: Job to follow.
        config: Session configuration (socket URL, token, timeouts).
        handlers: Frame callbacks.
        connect: Connection factory with the ``websockets.connect``
            signature; replaceable in tests.
    """

    transport = "socket"
    transport_errors = (WebSocketException, OSError)

    def __init__(
        self,
        job_id: str,
        config: SyncConfig,
        handlers: StreamHandlers,
        connect: Callable[..., Any] | None = None,
    ) -> None:
        super().__init__(job_id, config, handlers)
        self._connect = connect or websockets.connect

    async def _consume(self) -> None:
        url = self.config.socket_endpoint(self.job_id)
        open_timeout = self.config.request_timeout_s
        async with self._connect(url, open_timeout=open_timeout) as ws:
            logger.info("Socket open for %s", self.job_id)
            self.handlers.on_open()
            async for raw in ws:
                if self._closed:
                    return
                self._handle_message(raw)

    def _handle_message(self, raw: str | bytes) -> None:
        self.frames_received += 1
        try:
            frames = parse_socket_message(raw)
        except MalformedFrameError as e:
            self._count_dropped(e)
            return
        self._deliver(frames)


def create_stream_source(
    job_id: str,
    config: SyncConfig,
    handlers: StreamHandlers,
    *,
    client: httpx.AsyncClient | None = None,
) -> StreamSource:
    """Build the adapter selected by ``config.stream_transport``."""
    if config.stream_transport == "socket":
        return SocketStreamSource(job_id, config, handlers)
    return SseStreamSource(job_id, config, handlers, client=client)


__all__ = [
    "SocketStreamSource",
    "SseDecoder",
    "SseStreamSource",
    "StreamHandlers",
    "StreamSource",
    "create_stream_source",
]
