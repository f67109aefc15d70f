"""
Lifecycle watcher for the supervised backend.

Subscribes to the backend's event stream for one session and turns activity
events into idle timer renewals. Runs as a detached background task: the
session that starts it never waits on it, and it stops for good when the
stream ends or fails.
"""

import asyncio
import json
import logging
from typing import Optional

import httpx

from .stream import Event, process_event_stream
from .timer import IdleTimer

logger = logging.getLogger(__name__)

# Event that counts as backend activity
SESSION_UPDATED = "session.updated"

# High-frequency event kept out of the log
MESSAGE_PART_UPDATED = "message.part.updated"

NO_BODY_STATUS_CODES = (204, 304)


def has_body(response: httpx.Response) -> bool:
    """Whether a streaming response can carry an event body."""
    if response.status_code in NO_BODY_STATUS_CODES:
        return False
    return response.headers.get("content-length") != "0"


class LifecycleWatcher:
    """Watches one backend session's event stream."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        idle_timer: IdleTimer,
        connect_timeout: float = 10.0,
    ):
        self._client = client
        self._url = url
        self._idle_timer = idle_timer
        # No read timeout: the stream may stay quiet for as long as the backend is idle.
        self._timeout = httpx.Timeout(connect_timeout, read=None)
        self._task: Optional[asyncio.Task] = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def task(self) -> Optional[asyncio.Task]:
        """Handle of the background task, kept for diagnostics."""
        return self._task

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def handle_event(self, event: Event):
        """Dispatch a single stream event."""
        event_type = event.type

        if event_type == SESSION_UPDATED:
            self._idle_timer.renew()
            logger.info("Renewed backend activity timeout")

        if event_type != MESSAGE_PART_UPDATED:
            logger.info(f"Backend event: {json.dumps(event.payload)}")

    async def watch(self):
        """Consume the event stream until it ends or fails."""
        try:
            async with self._client.stream("GET", self._url, timeout=self._timeout) as response:
                if not has_body(response):
                    logger.info(f"Event stream at {self._url} has no body, not watching")
                    return

                if response.is_error:
                    logger.warning(
                        f"Event stream at {self._url} returned HTTP {response.status_code}"
                    )

                await process_event_stream(response.aiter_bytes(), self.handle_event)

            logger.info(f"Event stream at {self._url} ended")

        except Exception as e:
            logger.error(f"Event stream connection error: {e!r}")

    def start(self) -> asyncio.Task:
        """Start watching in the background and return immediately."""
        self._task = asyncio.create_task(self.watch())
        logger.info(f"Watching backend events at {self._url}")
        return self._task
