"""Model representing a full conversation."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .chat_message import ChatMessage, ensure_utc, utc_now
from .enums import MessageRole


def derive_title(text: str, max_length: int = 30) -> str:
    """Build a conversation title from the first user message."""
    text = text.strip()
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text


class Conversation(BaseModel):
    """Represents a conversation between the user and the assistant.

    A conversation starts life locally with a generated placeholder id
    and ``remote_confirmed`` false.  The first successful push to the
    remote store assigns its durable id.  ``synced`` is true only while
    the remote store holds the latest local state; every mutation clears
    it.  ``messages`` is append-only and ordered by timestamp.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Conversation identifier.")
    title: Optional[str] = Field(
        default=None,
        description="Title derived from the first user message.",
    )
    created_at: datetime = Field(default_factory=utc_now, description="Creation time (UTC).")
    updated_at: datetime = Field(
        default_factory=utc_now,
        description="Last update time (UTC); drives recency ordering.",
    )
    messages: List[ChatMessage] = Field(
        default_factory=list,
        description="Chronological list of messages in the conversation.",
    )
    synced: bool = Field(default=False, description="Remote store holds the latest state.")
    remote_confirmed: bool = Field(
        default=False,
        description="Remote store has acknowledged this conversation at least once.",
    )

    @model_validator(mode="before")
    @classmethod
    def _migrate_camel_case(cls, data: Any) -> Any:
        """Accept ``createdAt``/``updatedAt`` written by older clients."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "createdAt" in data and "created_at" not in data:
            data["created_at"] = data.pop("createdAt")
        if "updatedAt" in data and "updated_at" not in data:
            data["updated_at"] = data.pop("updatedAt")
        if data.get("messages") is None:
            data["messages"] = []
        return data

    @field_validator("created_at", "updated_at")
    def _timestamps_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def add_message(self, message: ChatMessage) -> None:
        """Append a new message and update metadata."""
        self.messages.append(message)
        self.touch()

    def touch(self) -> None:
        """Record a local mutation that the remote store has not seen yet.

        ``updated_at`` strictly increases so a push can tell whether the
        conversation changed while it was in flight.
        """
        self.updated_at = max(utc_now(), self.updated_at + timedelta(microseconds=1))
        self.synced = False

    def find_message(self, message_id: str) -> ChatMessage | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    @property
    def has_loading_message(self) -> bool:
        return any(message.loading for message in self.messages)

    def to_remote(self) -> dict[str, Any]:
        """Serialise the conversation for ``POST /conversations``.

        The welcome message and answers still streaming are local-only.
        """
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "messages": [
                message.to_remote(self.id)
                for message in self.messages
                if not message.is_welcome and not message.loading
            ],
        }

    @classmethod
    def from_remote_summary(cls, payload: dict[str, Any]) -> "Conversation":
        """Build a conversation from a ``GET /conversations`` row."""
        return cls(
            id=str(payload["id"]),
            title=payload.get("title"),
            created_at=payload.get("created_at") or utc_now(),
            updated_at=payload.get("updated_at") or payload.get("created_at") or utc_now(),
            messages=[],
            synced=True,
            remote_confirmed=True,
        )

    def history(self) -> list[dict[str, str]]:
        """Conversational history for the model, excluding system messages."""
        return [
            message.to_history_entry()
            for message in self.messages
            if message.role != MessageRole.SYSTEM and not message.loading and not message.is_error
        ]
