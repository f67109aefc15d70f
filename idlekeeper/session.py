"""
Backend session supervision.

Starts the backend on demand and, once it accepts connections, begins a
session: a fresh idle timer plus a lifecycle watcher on the backend's event
stream. When the idle timer fires the backend is put to sleep (stopped) until
the next request wakes it up again.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

import httpx
import psutil

from .config import Config, config
from .process import BackendProcess
from .timer import IdleTimer
from .watcher import LifecycleWatcher

logger = logging.getLogger(__name__)


class BackendUnavailable(Exception):
    """Raised when the backend cannot be started or never becomes ready."""


class Supervisor:
    """Keeps the backend running while it is in use."""

    def __init__(
        self,
        cfg: Config = config,
        process: Optional[BackendProcess] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = cfg
        self.process = process or BackendProcess(
            command=cfg.backend_command,
            port=cfg.backend_port,
            working_dir=cfg.backend_working_dir,
            env_file=cfg.backend_env_file,
        )
        self.client = client or httpx.AsyncClient(
            base_url=cfg.backend_url,
            timeout=httpx.Timeout(cfg.connect_timeout, read=None),
        )
        self.idle_timer: Optional[IdleTimer] = None
        self.watcher: Optional[LifecycleWatcher] = None
        # Held while the backend is starting or going to sleep
        self._lifecycle_lock = asyncio.Lock()

    async def ensure_running(self):
        """
        Start the backend and a new session unless it is already running.

        Waits out a start or sleep in progress first, so a request arriving
        while the backend is shutting down wakes it up again.
        """
        if self.process.is_running() and not self._lifecycle_lock.locked():
            return

        async with self._lifecycle_lock:
            if self.process.is_running():
                return

            logger.info("Backend is not running, starting it")
            started = await asyncio.to_thread(self.process.start)
            if not started:
                raise BackendUnavailable("Backend failed to start")

            if not await self.wait_until_ready():
                await asyncio.to_thread(self.process.stop, self.config.stop_timeout)
                raise BackendUnavailable(
                    f"Backend did not accept connections within {self.config.startup_timeout:.0f}s"
                )

            self.on_start()

    async def wait_until_ready(self) -> bool:
        """Wait for the backend port to accept TCP connections."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.startup_timeout

        while loop.time() < deadline:
            if not self.process.is_running():
                logger.error("Backend exited during startup")
                return False
            try:
                _, writer = await asyncio.open_connection(
                    self.config.backend_host, self.config.backend_port
                )
            except OSError:
                await asyncio.sleep(0.2)
                continue

            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
            return True

        return False

    def on_start(self):
        """Begin a session: start the idle timer and the lifecycle watcher."""
        if self.idle_timer:
            self.idle_timer.cancel()

        self.idle_timer = IdleTimer(self.config.sleep_after, self.sleep)
        self.idle_timer.start()

        self.watcher = LifecycleWatcher(
            self.client,
            self.config.event_path,
            self.idle_timer,
            connect_timeout=self.config.connect_timeout,
        )
        # Fire-and-forget: the session must not wait on the event stream
        self.watcher.start()

        logger.info(f"Backend session started, sleeping after {self.config.sleep_after:.0f}s idle")

    async def sleep(self):
        """Put the backend to sleep after an idle timeout."""
        async with self._lifecycle_lock:
            logger.info("Backend idle, putting it to sleep")
            await asyncio.to_thread(self.process.stop, self.config.stop_timeout)

    async def status(self) -> dict:
        """Current state of the backend and its session."""
        started_at = self.process.started_at
        result = {
            "running": self.process.is_running(),
            "pid": self.process.pid,
            "uptime_seconds": (datetime.now() - started_at).total_seconds() if started_at else 0,
            "sleeps_in_seconds": self.idle_timer.remaining if self.idle_timer else None,
            "watching": bool(self.watcher and self.watcher.active),
            "cpu_percent": 0.0,
            "memory_mb": 0.0,
            "child_processes": 0,
        }

        if result["pid"]:
            # CPU sampling blocks, keep it off the event loop
            result.update(await asyncio.to_thread(self.process_metrics, result["pid"]))

        return result

    @staticmethod
    def process_metrics(pid: int) -> dict:
        """CPU and memory usage of a process and its children."""
        try:
            proc = psutil.Process(pid)
            cpu_percent = proc.cpu_percent(interval=0.1)
            memory_mb = proc.memory_info().rss / 1024 / 1024
            child_count = 0

            # Include children
            try:
                children = proc.children(recursive=True)
                child_count = len(children)
                for child in children:
                    cpu_percent += child.cpu_percent(interval=0.1)
                    memory_mb += child.memory_info().rss / 1024 / 1024
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass

            return {
                "cpu_percent": round(cpu_percent, 1),
                "memory_mb": round(memory_mb, 1),
                "child_processes": child_count,
            }

        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return {}

    async def shutdown(self):
        """Stop the timer and the backend, and release the HTTP client."""
        if self.idle_timer:
            self.idle_timer.cancel()
        await asyncio.to_thread(self.process.stop, self.config.stop_timeout)
        await self.client.aclose()
