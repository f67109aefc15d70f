"""Tests for idlekeeper.watcher: event dispatch and stream lifecycle."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

import httpx
import pytest

from idlekeeper.stream import Event
from idlekeeper.watcher import LifecycleWatcher, has_body


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

EVENT_URL = "http://backend/global/event"


class FakeTimer:
    """Stands in for IdleTimer, counting renewals."""

    def __init__(self) -> None:
        self.renewals = 0

    def renew(self) -> None:
        self.renewals += 1


class ChunkStream(httpx.AsyncByteStream):
    """Response body yielding fixed chunks, then optionally failing."""

    def __init__(self, chunks: list[bytes], error: Exception | None = None, gate: asyncio.Event | None = None):
        self._chunks = chunks
        self._error = error
        self._gate = gate

    async def __aiter__(self) -> AsyncIterator[bytes]:
        if self._gate is not None:
            await self._gate.wait()
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _streaming(chunks: list[bytes], **kwargs) -> httpx.AsyncClient:
    return _client(lambda request: httpx.Response(200, stream=ChunkStream(chunks, **kwargs)))


def _info_messages(caplog: pytest.LogCaptureFixture) -> list[str]:
    return [r.getMessage() for r in caplog.records if r.name == "idlekeeper.watcher" and r.levelno == logging.INFO]


def _error_records(caplog: pytest.LogCaptureFixture) -> list[logging.LogRecord]:
    return [r for r in caplog.records if r.name == "idlekeeper.watcher" and r.levelno == logging.ERROR]


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestHandleEvent:
    """Dispatch rules for individual events."""

    def _watcher(self, timer: FakeTimer) -> LifecycleWatcher:
        return LifecycleWatcher(None, EVENT_URL, timer)  # type: ignore[arg-type]

    def test_session_updated_renews_and_logs(self, caplog: pytest.LogCaptureFixture) -> None:
        caplog.set_level(logging.INFO, logger="idlekeeper.watcher")
        timer = FakeTimer()
        self._watcher(timer).handle_event(Event(payload={"type": "session.updated"}))

        assert timer.renewals == 1
        messages = _info_messages(caplog)
        assert messages == [
            "Renewed backend activity timeout",
            'Backend event: {"type": "session.updated"}',
        ]

    def test_message_part_updated_is_silent(self, caplog: pytest.LogCaptureFixture) -> None:
        caplog.set_level(logging.INFO, logger="idlekeeper.watcher")
        timer = FakeTimer()
        self._watcher(timer).handle_event(
            Event(payload={"type": "message.part.updated", "part": {"text": "hi"}})
        )

        assert timer.renewals == 0
        assert _info_messages(caplog) == []

    def test_event_without_type_is_logged_once(self, caplog: pytest.LogCaptureFixture) -> None:
        caplog.set_level(logging.INFO, logger="idlekeeper.watcher")
        timer = FakeTimer()
        self._watcher(timer).handle_event(Event(payload={"hello": "world"}))

        assert timer.renewals == 0
        assert _info_messages(caplog) == ['Backend event: {"hello": "world"}']

    def test_other_event_type_is_logged_once(self, caplog: pytest.LogCaptureFixture) -> None:
        caplog.set_level(logging.INFO, logger="idlekeeper.watcher")
        timer = FakeTimer()
        self._watcher(timer).handle_event(Event(payload={"type": "server.connected"}))

        assert timer.renewals == 0
        assert len(_info_messages(caplog)) == 1

    def test_null_payload_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        caplog.set_level(logging.INFO, logger="idlekeeper.watcher")
        timer = FakeTimer()
        self._watcher(timer).handle_event(Event(payload=None))

        assert timer.renewals == 0
        assert _info_messages(caplog) == ["Backend event: null"]


class TestHasBody:
    def test_no_content(self) -> None:
        assert not has_body(httpx.Response(204))

    def test_empty_content_length(self) -> None:
        assert not has_body(httpx.Response(200, headers={"Content-Length": "0"}))

    def test_streaming_body(self) -> None:
        assert has_body(httpx.Response(200, stream=ChunkStream([b"data: {}\n"])))


class TestWatch:
    """Consuming the event stream end to end."""

    @pytest.mark.asyncio
    async def test_end_to_end_example(self, caplog: pytest.LogCaptureFixture) -> None:
        caplog.set_level(logging.INFO, logger="idlekeeper.watcher")
        timer = FakeTimer()
        data = b'data: {"type":"foo"}\ndata: {"type":"session.updated"}\nbogus\ndata: {"typ'
        client = _streaming([data[:10], data[10:41], data[41:]])

        await LifecycleWatcher(client, EVENT_URL, timer).watch()

        assert timer.renewals == 1
        events = [m for m in _info_messages(caplog) if m.startswith("Backend event:")]
        assert events == [
            'Backend event: {"type": "foo"}',
            'Backend event: {"type": "session.updated"}',
        ]
        assert _error_records(caplog) == []

    @pytest.mark.asyncio
    async def test_requests_event_url(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, content=b"")

        await LifecycleWatcher(_client(handler), EVENT_URL, FakeTimer()).watch()

        assert len(seen) == 1
        assert seen[0].method == "GET"
        assert str(seen[0].url) == EVENT_URL

    @pytest.mark.asyncio
    async def test_missing_body_exits_quietly(self, caplog: pytest.LogCaptureFixture) -> None:
        caplog.set_level(logging.INFO, logger="idlekeeper.watcher")
        timer = FakeTimer()
        client = _client(lambda request: httpx.Response(204))

        await LifecycleWatcher(client, EVENT_URL, timer).watch()

        assert timer.renewals == 0
        assert _error_records(caplog) == []

    @pytest.mark.asyncio
    async def test_stream_error_after_events(self, caplog: pytest.LogCaptureFixture) -> None:
        caplog.set_level(logging.INFO, logger="idlekeeper.watcher")
        timer = FakeTimer()
        client = _streaming(
            [
                b'data: {"type":"session.updated"}\n',
                b'data: {"type":"session.updated"}\ndata: {"type":"session.up',
            ],
            error=httpx.ReadError("connection reset"),
        )

        await LifecycleWatcher(client, EVENT_URL, timer).watch()

        assert timer.renewals == 2
        errors = _error_records(caplog)
        assert len(errors) == 1
        assert "connection reset" in errors[0].getMessage()

    @pytest.mark.asyncio
    async def test_connect_error_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        caplog.set_level(logging.INFO, logger="idlekeeper.watcher")

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        timer = FakeTimer()
        await LifecycleWatcher(_client(handler), EVENT_URL, timer).watch()

        assert timer.renewals == 0
        assert len(_error_records(caplog)) == 1

    @pytest.mark.asyncio
    async def test_error_status_still_reads_body(self, caplog: pytest.LogCaptureFixture) -> None:
        caplog.set_level(logging.INFO, logger="idlekeeper.watcher")
        timer = FakeTimer()
        client = _client(
            lambda request: httpx.Response(500, stream=ChunkStream([b'data: {"type":"session.updated"}\n']))
        )

        await LifecycleWatcher(client, EVENT_URL, timer).watch()

        assert timer.renewals == 1
        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1


class TestStart:
    """Background task behaviour."""

    @pytest.mark.asyncio
    async def test_start_does_not_wait_for_events(self) -> None:
        gate = asyncio.Event()
        timer = FakeTimer()
        watcher = LifecycleWatcher(
            _streaming([b'data: {"type":"session.updated"}\n'], gate=gate), EVENT_URL, timer
        )

        task = watcher.start()

        assert watcher.task is task
        assert watcher.active
        assert timer.renewals == 0

        gate.set()
        await asyncio.wait_for(task, timeout=5)

        assert timer.renewals == 1
        assert not watcher.active

    @pytest.mark.asyncio
    async def test_failure_does_not_raise_from_task(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        watcher = LifecycleWatcher(_client(handler), EVENT_URL, FakeTimer())
        task = watcher.start()
        await asyncio.wait_for(task, timeout=5)

        assert task.exception() is None
