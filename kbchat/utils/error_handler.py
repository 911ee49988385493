"""Error handling utilities and custom exceptions."""

from __future__ import annotations

from functools import wraps
from typing import Any, Awaitable, Callable

from loguru import logger

from ..models.outcomes import SyncOutcome


class ChatError(Exception):
    """Exception raised when a chat operation fails."""

    pass


class TransportError(ChatError):
    """Raised when the remote service is unreachable or answers non-2xx.

    ``status_code`` is ``None`` when no HTTP response was received at all
    (DNS failure, refused connection, broken stream).
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(ChatError):
    """Raised when the bearer token is missing or was rejected with 401."""

    pass


class StreamInProgressError(ChatError):
    """Raised when a message is sent while an answer is still streaming."""

    pass


class MessagesLoadingError(ChatError):
    """Raised when a message is sent before the conversation's history has loaded."""

    pass


class ConversationNotFoundError(ChatError):
    """Raised when a conversation id is not present in the local list."""

    pass


class FeedbackError(ChatError):
    """Raised when feedback cannot be recorded (unknown message, missing reason)."""

    pass


class AttachmentError(ChatError):
    """Raised on an invalid attachment pipeline transition."""

    pass


# ---------------------------------------------------------------------------
# Decorators for asynchronous remote write operations


def handle_sync_error(
    func: Callable[..., Awaitable[str | None]],
) -> Callable[..., Awaitable[SyncOutcome]]:
    """Decorator turning a remote push into a :class:`SyncOutcome`.

    The wrapped coroutine receives the conversation id as its first
    positional argument and returns the confirmed id.  A :class:`ChatError`
    is logged as a warning and reported as a failed outcome; any other
    exception is logged with its traceback and reported the same way so a
    failed push never propagates into the caller's event loop task.
    """

    @wraps(func)
    async def wrapper(conversation_id: str, *args: Any, **kwargs: Any) -> SyncOutcome:
        try:
            confirmed_id = await func(conversation_id, *args, **kwargs)
            return SyncOutcome(
                conversation_id=confirmed_id or conversation_id,
                ok=True,
            )
        except ChatError as exc:
            logger.warning("Sync of conversation {} failed: {}", conversation_id, exc)
            return SyncOutcome(
                conversation_id=conversation_id,
                ok=False,
                error=str(exc),
                status_code=getattr(exc, "status_code", None),
            )
        except Exception as exc:
            logger.exception("Unexpected error in {}", func.__name__)
            return SyncOutcome(
                conversation_id=conversation_id,
                ok=False,
                error=f"An unexpected error occurred during sync: {exc}",
            )

    return wrapper
