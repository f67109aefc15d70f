"""
Event stream framing.

Turns the backend's chunked event stream into discrete events. Each meaningful
line has the form ``data: <json>``; anything else (blank lines, comments,
``event:``/``id:`` fields) is skipped, as are lines whose JSON does not parse.
"""

import codecs
import json
from dataclasses import dataclass
from typing import Any, AsyncIterable, Callable, Optional

DATA_PREFIX = "data: "


@dataclass
class Event:
    """One decoded unit of the event stream."""

    payload: Any = None

    @property
    def type(self) -> Optional[str]:
        """The event's ``type`` field, if the payload carries one."""
        if not isinstance(self.payload, dict):
            return None
        value = self.payload.get("type")
        return value if isinstance(value, str) else None


EventHandler = Callable[[Event], None]


def _reject_constant(name: str):
    raise ValueError(f"Non-standard JSON constant: {name}")


def parse_line(line: str) -> Optional[Event]:
    """Parse one complete stream line. Returns None if it carries no event."""
    trimmed = line.strip()
    if not trimmed.startswith(DATA_PREFIX):
        return None

    try:
        payload = json.loads(trimmed[len(DATA_PREFIX):], parse_constant=_reject_constant)
    except (ValueError, RecursionError):
        return None

    return Event(payload=payload)


async def process_event_stream(
    chunks: AsyncIterable[bytes],
    on_event: EventHandler,
) -> None:
    """
    Consume a byte stream until it ends, calling on_event for every event line.

    Chunks may split lines and multi-byte characters anywhere. A partial line
    left over when the stream ends is dropped. Errors raised by the chunk
    source propagate unchanged.
    """
    # utf-8-sig drops a leading byte order mark, even when split across chunks
    decoder = codecs.getincrementaldecoder("utf-8-sig")(errors="replace")
    buffer = ""

    async for chunk in chunks:
        buffer += decoder.decode(chunk)
        lines = buffer.split("\n")
        buffer = lines.pop()

        for line in lines:
            event = parse_line(line)
            if event is not None:
                on_event(event)
