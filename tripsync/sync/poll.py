"""
Fixed-interval status poller.

The poller is the session's safety net: it runs from session start to
teardown regardless of how the push channel is doing, so a job whose
stream never opens still reaches a terminal state. It polls once
immediately on start, then every ``polling_interval_ms``.

Failed requests and unparseable bodies are logged and counted; the loop
never stops on its own.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

import httpx

from tripsync.sync.errors import (
    MalformedFrameError,
    SyncError,
    TransientConnectionError,
)
from tripsync.sync.frames import parse_status_snapshot
from tripsync.sync.models import Frame, SyncConfig

logger = logging.getLogger(__name__)


class PollSource:
    """Polls the job status endpoint and emits frames.

    Args:
        job_id: Job to poll.
        config: Session configuration (URL, interval, token, timeout).
        on_frame: Called for every frame decoded from a snapshot.
        client: Shared ``httpx.AsyncClient``; a private client is opened
            per request when omitted.
    """

    def __init__(
        self,
        job_id: str,
        config: SyncConfig,
        on_frame: Callable[[Frame], None],
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.job_id = job_id
        self.config = config
        self._on_frame = on_frame
        self._client = client
        self._task: asyncio.Task | None = None
        self._stopped = False

        self.poll_count = 0
        self.error_count = 0
        self.last_error: str | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, *, immediate: bool = True) -> None:
        """Start the poll loop as a background task.

        With ``immediate=False`` the first request waits one interval, for
        callers that have already issued the initial poll themselves.
        """
        if self._stopped or self.running:
            return
        self._task = asyncio.create_task(
            self.run(immediate=immediate), name=f"poll-{self.job_id}"
        )

    def stop(self) -> None:
        """Stop polling. Frames from an in-flight request are discarded."""
        self._stopped = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def run(self, *, immediate: bool = True) -> None:
        """Poll immediately, then on every interval until stopped."""
        if not immediate:
            await asyncio.sleep(self.config.polling_interval_s)
        while not self._stopped:
            await self.poll_once()
            if self._stopped:
                break
            await asyncio.sleep(self.config.polling_interval_s)

    async def poll_once(self) -> list[Frame]:
        """Issue one status request and deliver its frames.

        Returns the frames delivered (empty on failure).
        """
        self.poll_count += 1
        try:
            payload = await self.fetch()
            frames = parse_status_snapshot(
                payload, require_content=self.config.require_content
            )
        except SyncError as e:
            self._record_error(e)
            return []

        if self._stopped:
            return []
        for frame in frames:
            self._on_frame(frame)
        return frames

    async def fetch(self) -> object:
        """GET the status snapshot and decode its JSON body.

        Raises:
            TransientConnectionError: On network errors or non-2xx status.
            MalformedFrameError: If the body is not JSON.
        """
        url = self.config.poll_url(self.job_id)
        headers = {"Accept": "application/json"}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        try:
            if self._client is not None:
                response = await self._client.get(
                    url, headers=headers, timeout=self.config.request_timeout_s
                )
            else:
                async with httpx.AsyncClient(
                    timeout=self.config.request_timeout_s
                ) as client:
                    response = await client.get(url, headers=headers)
        except httpx.HTTPError as e:
            raise TransientConnectionError(f"{type(e).__name__}: {e}") from e

        if not response.is_success:
            raise TransientConnectionError(
                f"status returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise MalformedFrameError(
                f"status body is not JSON: {e}", kind="poll"
            ) from e

    def _record_error(self, error: SyncError) -> None:
        self.error_count += 1
        self.last_error = str(error)
        if isinstance(error, MalformedFrameError):
            logger.warning("Dropped poll response for %s: %s", self.job_id, error)
        else:
            logger.debug(
                "Poll %d for %s failed: %s", self.poll_count, self.job_id, error
            )


__all__ = ["PollSource"]
