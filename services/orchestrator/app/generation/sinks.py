"""Server-sent-event framing and composable response sinks.

Every frame is ``data: <json>\\n\\n``; the stream ends with ``data: [DONE]``.
Content and metadata frames share one channel and are told apart by their
``type`` field, so the two taps below can each observe their own kind of frame
without depending on the other.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Optional

from novelforge_providers import ClientDisconnected

from ..interfaces import ResponseSink

DONE_MARKER = "[DONE]"
DONE_FRAME = f"data: {DONE_MARKER}\n\n"

CONTENT = "content"
METADATA = "metadata"
ERROR = "error"


def encode_frame(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False, default=str)}\n\n"


def parse_frame(frame: str) -> Optional[dict[str, Any]]:
    """Decode one frame; returns ``None`` for the terminator or non-data lines."""

    body = frame.strip()
    if not body.startswith("data:"):
        return None
    body = body[len("data:") :].strip()
    if body == DONE_MARKER:
        return None
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


class MemorySink:
    """Collects frames in a list.

    ``disconnect_after`` simulates a client that goes away after that many
    frames have been written.
    """

    def __init__(self, *, disconnect_after: Optional[int] = None) -> None:
        self.frames: list[str] = []
        self.closed = False
        self._disconnect_after = disconnect_after

    async def write(self, frame: str) -> None:
        if self.closed:
            raise ClientDisconnected("sink closed")
        if self._disconnect_after is not None and len(self.frames) >= self._disconnect_after:
            self.closed = True
            raise ClientDisconnected("client went away")
        self.frames.append(frame)

    async def close(self) -> None:
        self.closed = True

    def payloads(self) -> list[dict[str, Any]]:
        return [payload for payload in (parse_frame(frame) for frame in self.frames) if payload is not None]


class QueueSink:
    """Bridges a producer task to a ``StreamingResponse`` body iterator."""

    _END = object()

    def __init__(self, max_size: int = 0) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max_size)
        self._disconnected = False
        self._closed = False

    async def write(self, frame: str) -> None:
        if self._disconnected or self._closed:
            raise ClientDisconnected("stream consumer is gone")
        await self._queue.put(frame)

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await self._queue.put(self._END)

    def disconnect(self) -> None:
        self._disconnected = True

    async def frames(self) -> AsyncIterator[str]:
        while True:
            item = await self._queue.get()
            if item is self._END:
                return
            yield item


class ContentTap:
    """Forwards frames and accumulates the text of content frames."""

    def __init__(self, sink: ResponseSink) -> None:
        self._sink = sink
        self._parts: list[str] = []

    @property
    def text(self) -> str:
        return "".join(self._parts)

    async def write(self, frame: str) -> None:
        payload = parse_frame(frame)
        if payload is not None and payload.get("type") == CONTENT:
            self._parts.append(str(payload.get("content") or ""))
        await self._sink.write(frame)

    async def close(self) -> None:
        await self._sink.close()


class MetadataTap:
    """Forwards frames and keeps the latest metadata frame.

    Metadata is recorded before forwarding, so it is observed even when the
    downstream consumer has already disconnected.
    """

    def __init__(self, sink: ResponseSink) -> None:
        self._sink = sink
        self.metadata: Optional[dict[str, Any]] = None

    async def write(self, frame: str) -> None:
        payload = parse_frame(frame)
        if payload is not None and payload.get("type") == METADATA:
            self.metadata = payload
        await self._sink.write(frame)

    async def close(self) -> None:
        await self._sink.close()


class StreamWriter:
    """Typed frame writer over any sink."""

    def __init__(self, sink: ResponseSink) -> None:
        self._sink = sink

    async def content(self, delta: str) -> None:
        await self._sink.write(encode_frame({"type": CONTENT, "content": delta}))

    async def metadata(self, **fields: Any) -> None:
        await self._sink.write(encode_frame({"type": METADATA, **fields}))

    async def error(self, message: str) -> None:
        await self._sink.write(encode_frame({"type": ERROR, "message": message}))

    async def done(self) -> None:
        await self._sink.write(DONE_FRAME)
