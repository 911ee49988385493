"""Accumulation of one streamed assistant answer.

A session is bound to the id of the assistant placeholder it fills.  The
raw content deltas are concatenated into one buffer and the visible
answer is recomputed from that whole buffer after every delta, so a
``<think>`` segment whose markers arrive in different chunks is still
recognised and moved into ``thinking``.
"""

from __future__ import annotations

import re
from typing import Any

from loguru import logger

from ..models.enums import SessionState, StreamEventType
from ..models.stream_event import StreamEvent

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"
# A reasoning segment swallows the whitespace right before it
_SEGMENT = re.compile(r"\s*<think>(.*?)</think>", re.DOTALL)


def _strip_partial_marker(text: str, marker: str) -> str:
    """Drop a trailing proper prefix of ``marker`` from ``text``."""
    for size in range(min(len(marker) - 1, len(text)), 0, -1):
        if text.endswith(marker[:size]):
            return text[:-size]
    return text


def split_reasoning(raw: str, final: bool = False) -> tuple[str, list[str]]:
    """Split the cumulative raw answer into visible text and reasoning.

    Closed ``<think>…</think>`` segments are removed from the visible
    text.  An unclosed segment hides everything after its opening marker.
    Unless ``final`` is set, text that may still turn into a marker
    (a trailing partial ``<think>`` and trailing whitespace) is held back
    so the visible text never has to shrink when the next chunk arrives.
    """
    visible_parts: list[str] = []
    thoughts: list[str] = []
    position = 0
    for match in _SEGMENT.finditer(raw):
        visible_parts.append(raw[position:match.start()])
        thoughts.append(match.group(1))
        position = match.end()

    # Whitespace after a leading reasoning segment is not part of the answer
    leading_segment = bool(thoughts) and not "".join(visible_parts)
    tail = raw[position:]
    open_at = tail.find(THINK_OPEN)
    if open_at != -1:
        pending = tail[open_at + len(THINK_OPEN):]
        if not final:
            pending = _strip_partial_marker(pending, THINK_CLOSE)
        thoughts.append(pending)
        tail = tail[:open_at].rstrip()
    elif not final:
        tail = _strip_partial_marker(tail, THINK_OPEN).rstrip()
    visible_parts.append(tail)

    visible = "".join(visible_parts)
    return (visible.lstrip() if leading_segment else visible), thoughts


class StreamingSession:
    """Live accumulation of one assistant response.

    ``content`` never gets shorter while the session is active.  Once
    :meth:`complete` or :meth:`fail` has been called the session is
    terminal and rejects further events.
    """

    def __init__(self, message_id: str) -> None:
        self.message_id = message_id
        self.state = SessionState.ACTIVE
        self.content = ""
        self.thinking = ""
        self.citations: list[dict[str, Any]] = []
        self.error: str | None = None
        self._raw = ""
        self._thinking_events: list[str] = []

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE

    @property
    def raw_content(self) -> str:
        return self._raw

    def apply(self, event: StreamEvent) -> bool:
        """Fold ``event`` into the session; return whether anything visible changed."""
        if not self.is_active:
            raise RuntimeError(f"Streaming session {self.message_id} is already {self.state.value}")

        if event.type == StreamEventType.CONTENT:
            self._raw += event.content
            return self._refresh(final=False)
        if event.type == StreamEventType.THINKING:
            self._thinking_events.append(event.content)
            return self._refresh(final=False)
        if event.type == StreamEventType.CITATIONS:
            self.citations = list(event.citations)
            return True
        self.complete()
        return True

    def complete(self) -> None:
        if not self.is_active:
            return
        self._refresh(final=True)
        self.state = SessionState.COMPLETED
        logger.debug(
            "Stream for {} completed: {} chars, thinking={}, citations={}",
            self.message_id,
            len(self.content),
            bool(self.thinking),
            len(self.citations),
        )

    def fail(self, error: str) -> None:
        if not self.is_active:
            return
        self._refresh(final=True)
        self.error = error
        self.state = SessionState.FAILED
        logger.debug("Stream for {} failed: {}", self.message_id, error)

    def _refresh(self, final: bool) -> bool:
        visible, thoughts = split_reasoning(self._raw, final=final)
        if not final and len(visible) < len(self.content):
            logger.warning("Visible content for {} would shrink; keeping previous text", self.message_id)
            visible = self.content

        parts = [thought.strip() for thought in thoughts] + [text.strip() for text in self._thinking_events]
        thinking = "\n".join(part for part in parts if part)

        changed = visible != self.content or thinking != self.thinking
        self.content = visible
        self.thinking = thinking
        return changed
