"""Enumerations used across models."""

from enum import Enum


class MessageRole(str, Enum):
    """Enum for message roles in a conversation.

    ``USER`` denotes a human message, ``ASSISTANT`` a reply from the
    knowledge-base service, and ``SYSTEM`` informational messages such
    as the welcome text or a reported failure.  System messages are
    never sent to the model as conversational history.
    """

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class FeedbackType(str, Enum):
    """Feedback a user can leave on an assistant message."""

    LIKE = "like"
    DISLIKE = "dislike"


class StreamEventType(str, Enum):
    """Kinds of events decoded from an answer stream."""

    CONTENT = "content"
    THINKING = "thinking"
    CITATIONS = "citations"
    DONE = "done"


class SessionState(str, Enum):
    """Lifecycle of a streaming session."""

    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class AttachmentState(str, Enum):
    """States of the single-slot attachment pipeline."""

    IDLE = "idle"
    STAGED = "staged"
    UPLOADING = "uploading"
    DELIVERED = "delivered"
    UPLOAD_FAILED = "upload_failed"


class RemoteDeleteStatus(str, Enum):
    """What happened on the remote side of a conversation delete."""

    DELETED = "deleted"
    ALREADY_GONE = "already_gone"
    LOCAL_ONLY = "local_only"
    FAILED = "failed"


class DateBucket(str, Enum):
    """Recency groups used by conversation lists."""

    TODAY = "today"
    YESTERDAY = "yesterday"
    THIS_WEEK = "this_week"
    EARLIER = "earlier"
