"""Feedback left on an assistant message."""

from __future__ import annotations

from pydantic import BaseModel, field_validator

from .enums import FeedbackType


class Feedback(BaseModel):
    """A like, or a dislike with the reason the user gave for it.

    Stored feedback is read back leniently (older records may carry a
    dislike without a reason); :attr:`complete` tells whether the record
    is acceptable as new user input.
    """

    type: FeedbackType
    reason: str | None = None

    @field_validator("reason")
    def _strip_reason(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @property
    def complete(self) -> bool:
        if self.type == FeedbackType.DISLIKE:
            return bool(self.reason)
        return True
