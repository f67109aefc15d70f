"""
Idle timer for the supervised backend.

The timer fires once its full duration passes without a renewal and then runs
the expiry callback (normally putting the backend to sleep).
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class IdleTimer:
    """A renewable one-shot timer running on the event loop."""

    def __init__(self, timeout: float, on_expire: Callable[[], Awaitable[None]]):
        self.timeout = timeout
        self._on_expire = on_expire
        self._deadline: Optional[float] = None
        self._task: Optional[asyncio.Task] = None
        self._expired = False

    def start(self):
        """Start counting down from the full duration."""
        if self._task and not self._task.done():
            return

        self._expired = False
        self.renew()
        self._task = asyncio.create_task(self._run())

    def renew(self):
        """Reset the timer to its full duration."""
        self._deadline = asyncio.get_running_loop().time() + self.timeout

    def cancel(self):
        """Stop the timer without firing."""
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def expired(self) -> bool:
        return self._expired

    @property
    def remaining(self) -> Optional[float]:
        """Seconds left before expiry, or None when not running."""
        if not self.active or self._deadline is None:
            return None
        return max(0.0, self._deadline - asyncio.get_running_loop().time())

    async def _run(self):
        loop = asyncio.get_running_loop()
        # The deadline may move forward while we sleep, so re-check after waking.
        while True:
            delay = self._deadline - loop.time()
            if delay <= 0:
                break
            await asyncio.sleep(delay)

        self._expired = True
        logger.info(f"Idle timer expired after {self.timeout:.0f}s without activity")
        try:
            await self._on_expire()
        except Exception as e:
            logger.error(f"Error in idle timer expiry handler: {e}")
