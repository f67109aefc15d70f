"""
Configuration for the idlekeeper service.

Loads settings from environment variables with sensible defaults.
All persistent data is stored in ~/.idlekeeper/
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DURATION_UNITS = {"s": 1, "m": 60, "h": 3600}


def parse_duration(value: str) -> float:
    """Parse a duration like "90", "30s", "10m" or "1h" into seconds."""
    text = str(value).strip().lower()
    if not text:
        raise ValueError("Empty duration")

    multiplier = 1
    if text[-1] in DURATION_UNITS:
        multiplier = DURATION_UNITS[text[-1]]
        text = text[:-1]

    try:
        seconds = float(text) * multiplier
    except ValueError:
        raise ValueError(f"Invalid duration: {value!r}")

    if seconds <= 0:
        raise ValueError(f"Duration must be positive: {value!r}")
    return seconds


@dataclass
class Config:
    """idlekeeper configuration."""

    # Paths
    data_dir: Path = Path.home() / ".idlekeeper"
    log_file: Path = None

    # Logging
    log_max_bytes: int = int(os.environ.get("LOG_MAX_BYTES", str(10 * 1024 * 1024)))  # 10MB
    log_backup_count: int = int(os.environ.get("LOG_BACKUP_COUNT", "5"))

    # Server
    host: str = os.environ.get("IDLEKEEPER_HOST", "0.0.0.0")
    port: int = int(os.environ.get("IDLEKEEPER_PORT", "8080"))

    # Backend process
    backend_command: str = os.environ.get("BACKEND_COMMAND", "")
    backend_working_dir: str = os.environ.get("BACKEND_WORKING_DIR") or None
    backend_host: str = os.environ.get("BACKEND_HOST", "127.0.0.1")
    backend_port: int = int(os.environ.get("BACKEND_PORT", "2633"))
    backend_env_file: str = os.environ.get("BACKEND_ENV_FILE") or None

    # Lifecycle
    event_path: str = os.environ.get("EVENT_PATH", "/global/event")
    sleep_after: float = parse_duration(os.environ.get("SLEEP_AFTER", "10m"))
    startup_timeout: float = float(os.environ.get("STARTUP_TIMEOUT", "30"))
    stop_timeout: int = int(os.environ.get("STOP_TIMEOUT", "10"))
    connect_timeout: float = float(os.environ.get("CONNECT_TIMEOUT", "10"))

    def __post_init__(self):
        """Initialize derived paths and create directories."""
        self.log_file = self.data_dir / "idlekeeper.log"

        self.data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def backend_url(self) -> str:
        """Base URL the backend listens on."""
        return f"http://{self.backend_host}:{self.backend_port}"


config = Config()
