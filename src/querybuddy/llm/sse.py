"""Server-sent event decoding and stream folding shared by all HTTP providers.

Vendors stream ``text/event-stream`` bodies: events separated by a blank line,
each made of ``field: value`` lines. Only ``event:`` and ``data:`` matter here.
Network chunks can split an event anywhere (mid-line, mid-field, even inside a
multi-byte character), so the decoder keeps a buffer and only hands out
complete events.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator

from querybuddy.llm.errors import ProviderError
from querybuddy.llm.types import (
    ChatResponse,
    ContentDelta,
    Done,
    FinishReason,
    StreamError,
    StreamEvent,
    ToolCall,
    ToolCallDelta,
    ToolCallStart,
)

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


@dataclass
class SSEFrame:
    data: str
    event: str | None = None

    @property
    def is_done(self) -> bool:
        return self.data == DONE_SENTINEL


class SSEDecoder:
    """Incremental SSE parser.

    ``feed`` accepts raw bytes (or already decoded text) and returns every
    event completed by that chunk. Line endings may be ``\\n``, ``\\r\\n`` or
    ``\\r``; they are normalized before looking for the blank-line delimiter.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._pending_cr = False

    def feed(self, chunk: bytes | str) -> list[SSEFrame]:
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._append(text)
        return self._drain()

    def flush(self) -> list[SSEFrame]:
        """Return whatever is left once the body has ended."""
        self._append(self._decoder.decode(b"", final=True))
        if self._pending_cr:
            self._buffer += "\n"
            self._pending_cr = False
        frames = self._drain()
        rest, self._buffer = self._buffer, ""
        if rest.strip():
            frame = _parse_event(rest)
            if frame is not None:
                frames.append(frame)
        return frames

    def _append(self, text: str) -> None:
        if not text:
            return
        if self._pending_cr:
            text = "\r" + text
            self._pending_cr = False
        # A trailing CR may be the first half of a CRLF split across chunks.
        if text.endswith("\r"):
            text = text[:-1]
            self._pending_cr = True
        self._buffer += text.replace("\r\n", "\n").replace("\r", "\n")

    def _drain(self) -> list[SSEFrame]:
        frames: list[SSEFrame] = []
        while True:
            pos = self._buffer.find("\n\n")
            if pos < 0:
                break
            raw, self._buffer = self._buffer[:pos], self._buffer[pos + 2:]
            frame = _parse_event(raw)
            if frame is not None:
                frames.append(frame)
        return frames


def _parse_event(raw: str) -> SSEFrame | None:
    event_name = None
    data_lines: list[str] = []

    for line in raw.split("\n"):
        if not line or line.startswith(":"):
            continue
        name, sep, value = line.partition(":")
        if not sep:
            continue
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            data_lines.append(value)
        elif name == "event":
            event_name = value

    if not data_lines:
        return None
    return SSEFrame(data="\n".join(data_lines), event=event_name)


async def aiter_sse(chunks: AsyncIterable[bytes]) -> AsyncIterator[SSEFrame]:
    """Yield complete SSE frames from an async stream of byte chunks."""
    decoder = SSEDecoder()
    async for chunk in chunks:
        for frame in decoder.feed(chunk):
            yield frame
    for frame in decoder.flush():
        yield frame


def parse_json_payload(data: str) -> dict[str, Any] | None:
    """Decode one frame's JSON payload; malformed frames are skipped."""
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed stream frame: %.200s", data)
        return None
    if not isinstance(payload, dict):
        logger.debug("Skipping non-object stream frame: %.200s", data)
        return None
    return payload


class ToolCallAccumulator:
    """Collects tool-call fragments per id, in first-seen order.

    Argument fragments are only ever appended; nothing here parses the partial
    JSON.
    """

    def __init__(self):
        self._calls: dict[str, tuple[str, list[str]]] = {}

    def start(self, call_id: str, name: str) -> None:
        if call_id in self._calls:
            _, fragments = self._calls[call_id]
            self._calls[call_id] = (name, fragments)
        else:
            self._calls[call_id] = (name, [])

    def append(self, call_id: str, fragment: str) -> None:
        if call_id not in self._calls:
            logger.debug("Dropping argument fragment for unknown tool call %s", call_id)
            return
        self._calls[call_id][1].append(fragment)

    def tool_calls(self) -> list[ToolCall]:
        return [
            ToolCall(id=call_id, name=name, arguments="".join(fragments))
            for call_id, (name, fragments) in self._calls.items()
        ]

    def clear(self) -> None:
        self._calls.clear()

    def __len__(self) -> int:
        return len(self._calls)

    def __bool__(self) -> bool:
        return bool(self._calls)


async def fold_stream(events: AsyncIterable[StreamEvent]) -> ChatResponse:
    """Drain a stream into the equivalent non-streaming ChatResponse."""
    content: list[str] = []
    tool_calls = ToolCallAccumulator()
    finish_reason: FinishReason | None = None

    async for event in events:
        if finish_reason is not None:
            continue
        if isinstance(event, ContentDelta):
            content.append(event.text)
        elif isinstance(event, ToolCallStart):
            tool_calls.start(event.id, event.name)
        elif isinstance(event, ToolCallDelta):
            tool_calls.append(event.id, event.arguments)
        elif isinstance(event, Done):
            finish_reason = event.finish_reason
        elif isinstance(event, StreamError):
            raise ProviderError(event.message)

    text = "".join(content)
    return ChatResponse(
        content=text or None,
        tool_calls=tool_calls.tool_calls(),
        finish_reason=finish_reason or FinishReason.STOP,
    )
