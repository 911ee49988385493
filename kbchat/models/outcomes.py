"""Results of remote write attempts reported back to callers."""

from __future__ import annotations

from pydantic import BaseModel

from .enums import RemoteDeleteStatus
from .feedback import Feedback


class SyncOutcome(BaseModel):
    """Result of pushing one conversation to the remote store."""

    conversation_id: str
    ok: bool
    error: str | None = None
    status_code: int | None = None


class DeleteOutcome(BaseModel):
    """Result of a conversation delete.

    The local deletion has always happened by the time an outcome exists;
    ``remote_status`` only describes the remote side.
    """

    conversation_id: str
    remote_status: RemoteDeleteStatus
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.remote_status != RemoteDeleteStatus.FAILED


class FeedbackOutcome(BaseModel):
    """Result of recording feedback on a message."""

    message_id: str
    feedback: Feedback | None
    sync: SyncOutcome | None = None
    feedback_error: str | None = None

    @property
    def ok(self) -> bool:
        return (self.sync is None or self.sync.ok) and self.feedback_error is None
