"""Typed events decoded from an answer stream."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from .enums import StreamEventType


class StreamEvent(BaseModel):
    """One application-level event: a content delta, reasoning text, a
    citation batch, or the end of the stream."""

    type: StreamEventType
    content: str = ""
    citations: list[dict[str, Any]] = Field(default_factory=list)
