"""Decoding of server-sent event answer streams.

The knowledge-base service answers a streaming request with SSE frames
separated by a blank line, each carrying one ``data:`` line with a JSON
payload, and ends with the ``[DONE]`` sentinel.  Network reads do not
line up with frames, so :class:`SSEDecoder` buffers the undecoded tail
between reads.  Two payload shapes are in use, the OpenAI-style
``{"choices": [{"delta": {"content": ...}}]}`` and the workflow shape
``{"success": true, "data": {"chunk": ...}}``; :func:`parse_payload`
accepts both and maps them to :class:`StreamEvent` values.
"""

from __future__ import annotations

import codecs
import json
from typing import Any, AsyncIterable, AsyncIterator

from loguru import logger

from ..models.enums import StreamEventType
from ..models.stream_event import StreamEvent

DONE_SENTINEL = "[DONE]"
DATA_PREFIX = "data:"
_IGNORED_FIELDS = ("event:", "id:", "retry:")


class SSEDecoder:
    """Incremental splitter turning text chunks into frame payloads."""

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, text: str) -> list[str]:
        """Add ``text`` and return the data of every frame completed by it."""
        self._buffer = (self._buffer + text).replace("\r\n", "\n")
        payloads: list[str] = []
        while "\n\n" in self._buffer:
            frame, self._buffer = self._buffer.split("\n\n", 1)
            payload = self._frame_data(frame)
            if payload is not None:
                payloads.append(payload)
        return payloads

    def flush(self) -> list[str]:
        """Return the data of a final frame left unterminated at end of stream."""
        frame, self._buffer = self._buffer, ""
        payload = self._frame_data(frame)
        return [payload] if payload is not None else []

    @staticmethod
    def _frame_data(frame: str) -> str | None:
        data_lines: list[str] = []
        for line in frame.split("\n"):
            if not line or line.startswith(":") or line.startswith(_IGNORED_FIELDS):
                continue
            if line.startswith(DATA_PREFIX):
                value = line[len(DATA_PREFIX):]
                if value.startswith(" "):
                    value = value[1:]
                data_lines.append(value)
            else:
                logger.debug("Ignoring unexpected SSE line: {!r}", line[:80])
        if not data_lines:
            return None
        return "\n".join(data_lines)


def _content_event(text: Any) -> list[StreamEvent]:
    if isinstance(text, str) and text:
        return [StreamEvent(type=StreamEventType.CONTENT, content=text)]
    return []


def _citation_event(citations: Any) -> list[StreamEvent]:
    if isinstance(citations, list):
        return [
            StreamEvent(
                type=StreamEventType.CITATIONS,
                citations=[item for item in citations if isinstance(item, dict)],
            )
        ]
    return []


def parse_payload(payload: dict[str, Any]) -> list[StreamEvent]:
    """Map one decoded JSON payload to stream events."""
    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        choice = choices[0] if isinstance(choices[0], dict) else {}
        delta = choice.get("delta") or choice.get("message") or {}
        return _content_event(delta.get("content") if isinstance(delta, dict) else None)

    payload_type = payload.get("type")
    if payload_type == "thinking":
        text = payload.get("content")
        if isinstance(text, str) and text:
            return [StreamEvent(type=StreamEventType.THINKING, content=text)]
        return []
    if payload_type == "citations":
        return _citation_event(payload.get("citations"))

    data = payload.get("data")
    if isinstance(data, dict):
        if "chunk" in data:
            return _content_event(data.get("chunk"))
        if data.get("type") == "citations" or "citations" in data:
            events = _citation_event(data.get("citations"))
            for key in ("answer", "content", "response"):
                if key in data:
                    events = _content_event(data.get(key)) + events
                    break
            return events
        for key in ("answer", "content", "response"):
            if key in data:
                return _content_event(data.get(key))

    for key in ("answer", "response"):
        if key in payload:
            return _content_event(payload.get(key)) + _citation_event(payload.get("citations"))

    logger.debug("Ignoring stream payload without known fields: {}", list(payload.keys()))
    return []


def completion_events(payload: Any) -> list[StreamEvent]:
    """Convert a single (non-streamed) JSON completion into events.

    Plain text bodies are taken as the whole answer.  The list always
    ends with a ``done`` event.
    """
    if isinstance(payload, dict):
        events = parse_payload(payload)
    elif isinstance(payload, str):
        events = _content_event(payload)
    else:
        logger.warning("Unexpected completion body of type {}", type(payload).__name__)
        events = []
    return events + [StreamEvent(type=StreamEventType.DONE)]


def _decode_frame(data: str) -> list[StreamEvent] | None:
    """Parse one frame; ``None`` means the sentinel was reached."""
    if data.strip() == DONE_SENTINEL:
        return None
    try:
        payload = json.loads(data)
    except ValueError as exc:
        logger.warning("Skipping malformed stream frame {!r}: {}", data[:100], exc)
        return []
    if not isinstance(payload, dict):
        logger.warning("Skipping stream frame with non-object payload: {!r}", data[:100])
        return []
    return parse_payload(payload)


async def decode_stream(chunks: AsyncIterable[bytes | str]) -> AsyncIterator[StreamEvent]:
    """Decode a raw byte/text stream into events.

    The generator stops at the ``[DONE]`` sentinel or at the end of the
    underlying stream and in both cases yields a final ``done`` event.
    Malformed frames are logged and skipped.  Errors raised by the
    underlying stream propagate to the consumer.
    """
    decoder = SSEDecoder()
    utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")

    async for chunk in chunks:
        text = utf8.decode(chunk) if isinstance(chunk, bytes) else chunk
        for data in decoder.feed(text):
            events = _decode_frame(data)
            if events is None:
                logger.debug("Stream sentinel received")
                yield StreamEvent(type=StreamEventType.DONE)
                return
            for event in events:
                yield event

    for data in decoder.feed(utf8.decode(b"", final=True)) + decoder.flush():
        events = _decode_frame(data)
        if events is None:
            logger.debug("Stream sentinel received")
            break
        for event in events:
            yield event
    else:
        logger.debug("Stream ended without sentinel")
    yield StreamEvent(type=StreamEventType.DONE)
