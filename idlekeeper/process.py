"""
Process manager for the supervised backend.

Handles starting and stopping the backend process. Captures stdout/stderr
into the service log and passes configuration into the process environment.
"""

import logging
import os
import shlex
import signal
import subprocess
import threading
from datetime import datetime
from typing import Optional

from dotenv import dotenv_values

logger = logging.getLogger(__name__)


def build_environment(
    port: int,
    env_file: Optional[str] = None,
    base: Optional[dict[str, str]] = None,
) -> dict[str, str]:
    """
    Build the environment for the backend process.

    Starts from base (the current environment by default), overlays the
    values from env_file and finally sets PORT. Entries in env_file without
    a value are skipped.
    """
    env = dict(os.environ if base is None else base)

    if env_file:
        for key, value in dotenv_values(env_file).items():
            if value is not None:
                env[key] = value

    env["PORT"] = str(port)
    return env


class BackendProcess:
    """Manages the supervised backend process."""

    def __init__(
        self,
        command: str,
        port: int,
        working_dir: Optional[str] = None,
        env_file: Optional[str] = None,
    ):
        self.command = command
        self.port = port
        self.working_dir = working_dir
        self.env_file = env_file
        self._process: Optional[subprocess.Popen] = None
        self._started_at: Optional[datetime] = None
        self._lock = threading.Lock()

    def start(self) -> bool:
        """Start the backend process. Returns True if started successfully."""
        if self.is_running():
            logger.info("Backend is already running")
            return True

        if not self.command:
            logger.error("No backend command configured")
            return False

        try:
            if self.command.startswith("cd "):
                # Handle "cd /path && command" pattern
                shell = True
                cmd = self.command
            else:
                shell = False
                cmd = shlex.split(self.command)

            process = subprocess.Popen(
                cmd,
                shell=shell,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self.working_dir,
                env=build_environment(self.port, self.env_file),
                start_new_session=True,  # Create new process group
            )

            with self._lock:
                self._process = process
                self._started_at = datetime.now()

            for stream, level in ((process.stdout, logging.INFO), (process.stderr, logging.WARNING)):
                threading.Thread(
                    target=self._capture_output,
                    args=(stream, level),
                    daemon=True,
                ).start()

            logger.info(f"Started backend with PID {process.pid} on port {self.port}")
            return True

        except Exception as e:
            logger.error(f"Failed to start backend: {e}")
            return False

    def stop(self, timeout: int = 10) -> bool:
        """Stop the backend process. Returns True if stopped successfully."""
        with self._lock:
            process = self._process

        if process is None:
            logger.info("Backend is not running")
            return True

        try:
            # Try graceful shutdown first (SIGTERM)
            try:
                os.killpg(os.getpgid(process.pid), signal.SIGTERM)
            except ProcessLookupError:
                pass

            try:
                process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning("Backend did not stop gracefully, forcing kill")
                try:
                    os.killpg(os.getpgid(process.pid), signal.SIGKILL)
                except ProcessLookupError:
                    pass
                process.wait(timeout=5)

            with self._lock:
                if self._process is process:
                    self._process = None
                    self._started_at = None

            logger.info(f"Stopped backend (exit code {process.returncode})")
            return True

        except Exception as e:
            logger.error(f"Failed to stop backend: {e}")
            return False

    def is_running(self) -> bool:
        """Check if the backend is running."""
        with self._lock:
            process = self._process

        if process is None:
            return False
        return process.poll() is None

    @property
    def pid(self) -> Optional[int]:
        """PID of the running backend."""
        with self._lock:
            process = self._process

        if process is not None and process.poll() is None:
            return process.pid
        return None

    @property
    def started_at(self) -> Optional[datetime]:
        with self._lock:
            return self._started_at

    def _capture_output(self, stream, level: int):
        """Forward process output to the log line by line."""
        try:
            for line in iter(stream.readline, b""):
                decoded = line.decode("utf-8", errors="replace").rstrip()
                if decoded:
                    logger.log(level, f"[backend] {decoded}")
        except Exception as e:
            logger.error(f"Error in backend log capture: {e}")
        finally:
            try:
                stream.close()
            except Exception:
                pass
