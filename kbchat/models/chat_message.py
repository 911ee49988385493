"""Models representing chat messages and related structures."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .attachment import FileInfo
from .enums import MessageRole
from .feedback import Feedback

WELCOME_MESSAGE_ID = "system-welcome"

# Legacy ``type`` values written by older clients
_LEGACY_TYPE_ROLES = {
    "user": MessageRole.USER,
    "bot": MessageRole.ASSISTANT,
    "assistant": MessageRole.ASSISTANT,
    "system": MessageRole.SYSTEM,
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ChatMessage(BaseModel):
    """Represents a single message in a conversation.

    Messages are ordered by ``timestamp`` inside a conversation and are
    never reordered once appended.  While an assistant answer is being
    streamed, ``loading`` stays true until the answer completed or failed
    and ``content`` only grows.  Reasoning text extracted from the stream is
    kept apart in ``thinking`` and ``citations`` holds the source
    references delivered as a single batch.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: MessageRole
    content: str = ""
    timestamp: datetime = Field(default_factory=utc_now)
    thinking: str = ""
    citations: list[dict[str, Any]] = Field(default_factory=list)
    feedback: Feedback | None = None
    loading: bool = False
    file_info: FileInfo | None = None
    is_error: bool = False

    @model_validator(mode="before")
    @classmethod
    def _migrate_legacy_fields(cls, data: Any) -> Any:
        """Collapse the legacy ``role``/``type`` pair and camelCase keys."""
        if not isinstance(data, dict):
            return data

        data = dict(data)
        legacy_type = data.pop("type", None)
        if not data.get("role"):
            data["role"] = _LEGACY_TYPE_ROLES.get(str(legacy_type), MessageRole.ASSISTANT)

        created_at = data.pop("created_at", None)
        if data.get("timestamp") is None and created_at is not None:
            data["timestamp"] = created_at
        if data.get("timestamp") is None:
            data.pop("timestamp", None)

        if "fileInfo" in data and "file_info" not in data:
            data["file_info"] = data.pop("fileInfo")
        attachment_name = data.pop("attachmentName", None)
        if data.get("file_info") is None and attachment_name:
            data["file_info"] = {"name": attachment_name}
        if "isError" in data and "is_error" not in data:
            data["is_error"] = data.pop("isError")

        feedback = data.get("feedback")
        if isinstance(feedback, str):
            data["feedback"] = {"type": feedback} if feedback else None

        if data.get("thinking") is None:
            data["thinking"] = ""
        if data.get("citations") is None:
            data["citations"] = []
        if data.get("content") is None:
            data["content"] = ""
        return data

    @field_validator("timestamp")
    def _timestamp_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def is_welcome(self) -> bool:
        return self.id == WELCOME_MESSAGE_ID

    def to_history_entry(self) -> dict[str, str]:
        """Return the ``{role, content}`` pair sent as model history."""
        return {"role": self.role.value, "content": self.content}

    def to_remote(self, conversation_id: str) -> dict[str, Any]:
        """Serialise the message for ``POST /conversations``."""
        return {
            "id": self.id,
            "conversation_id": conversation_id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "thinking": self.thinking,
            "citations": self.citations,
            "feedback": self.feedback.model_dump(mode="json") if self.feedback else None,
            "file_info": self.file_info.model_dump(mode="json") if self.file_info else None,
        }


def welcome_message(text: str) -> ChatMessage:
    """Build the welcome message shown at the top of every conversation."""
    return ChatMessage(
        id=WELCOME_MESSAGE_ID,
        role=MessageRole.SYSTEM,
        content=text,
        timestamp=datetime.fromtimestamp(0, tz=timezone.utc),
    )
