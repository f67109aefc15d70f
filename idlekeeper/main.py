"""
idlekeeper FastAPI application.

Forwards every request to the supervised backend, waking it up first if it
is asleep. The backend's own event stream decides how long it stays awake.
"""

import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from typing import Optional

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from starlette.background import BackgroundTask

from .config import config
from .session import BackendUnavailable, Supervisor

# Configure logging with rotation
log_formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

# Rotating file handler (auto-compaction)
file_handler = RotatingFileHandler(
    config.log_file,
    maxBytes=config.log_max_bytes,
    backupCount=config.log_backup_count,
)
file_handler.setFormatter(log_formatter)

# Console handler
console_handler = logging.StreamHandler()
console_handler.setFormatter(log_formatter)

# Configure root logger
logging.basicConfig(
    level=logging.INFO,
    handlers=[file_handler, console_handler],
)
logger = logging.getLogger(__name__)

supervisor = Supervisor(config)

# Headers that apply to a single connection and must not be forwarded
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})

FORWARDED_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def filter_headers(pairs, drop: frozenset = frozenset()) -> list[tuple[str, str]]:
    """
    Drop hop-by-hop headers (and any extra names in drop).

    Takes and returns (name, value) pairs so repeated headers such as
    Set-Cookie stay separate.
    """
    return [
        (key, value)
        for key, value in pairs
        if key.lower() not in HOP_BY_HOP_HEADERS and key.lower() not in drop
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info(f"Starting idlekeeper, forwarding to {config.backend_url}")

    yield

    logger.info("Shutting down idlekeeper...")
    await supervisor.shutdown()


app = FastAPI(
    title="idlekeeper",
    description="Keeps an HTTP backend process alive while it is in use",
    version="0.1.0",
    lifespan=lifespan,
)


class StatusResponse(BaseModel):
    running: bool
    pid: Optional[int] = None
    uptime_seconds: float = 0
    sleeps_in_seconds: Optional[float] = None
    watching: bool = False
    cpu_percent: float = 0.0
    memory_mb: float = 0.0
    child_processes: int = 0


@app.get("/_idlekeeper/status", response_model=StatusResponse)
async def get_status():
    """Get the backend's process and session state."""
    return await supervisor.status()


@app.api_route("/{path:path}", methods=FORWARDED_METHODS)
async def forward(request: Request, path: str):
    """Forward a request to the backend, starting it if needed."""
    try:
        await supervisor.ensure_running()
    except BackendUnavailable as e:
        logger.error(f"Cannot forward {request.method} /{path}: {e}")
        raise HTTPException(status_code=503, detail=str(e))

    upstream = supervisor.client.build_request(
        request.method,
        httpx.URL(path="/" + path, query=request.url.query.encode("utf-8")),
        headers=filter_headers(request.headers.items(), drop=frozenset({"host", "content-length"})),
        content=await request.body(),
    )

    try:
        response = await supervisor.client.send(upstream, stream=True)
    except httpx.RequestError as e:
        logger.error(f"Error forwarding {request.method} /{path}: {e!r}")
        raise HTTPException(status_code=502, detail="Backend connection failed")

    forwarded = StreamingResponse(
        response.aiter_raw(),
        status_code=response.status_code,
        background=BackgroundTask(response.aclose),
    )
    for key, value in filter_headers(response.headers.multi_items(), drop=frozenset({"content-length"})):
        forwarded.headers.append(key, value)
    return forwarded
