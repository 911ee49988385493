"""Single-slot staging of the file or image sent with the next question.

One send cycle walks ``idle → staged → uploading → (delivered |
upload_failed) → idle``.  The slot is single-use: whatever the outcome
of the request that consumed it, :meth:`AttachmentPipeline.finish`
empties it and nothing is retried automatically.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Awaitable, Callable
from urllib.parse import unquote, urlparse

import httpx
from loguru import logger

from ..models.attachment import Attachment, AttachmentPayload
from ..models.enums import AttachmentState
from ..utils.error_handler import AttachmentError

ContentReader = Callable[[str], Awaitable[bytes]]


async def read_attachment_bytes(uri: str) -> bytes:
    """Resolve a content handle into raw bytes.

    ``http(s)`` URLs are downloaded with httpx; ``file://`` URIs and plain
    paths are read from disk in a worker thread.
    """
    parsed = urlparse(uri)
    if parsed.scheme in ("http", "https"):
        async with httpx.AsyncClient() as client:
            response = await client.get(uri)
            response.raise_for_status()
            return response.content
    if parsed.scheme == "file":
        path = Path(unquote(parsed.path))
    else:
        path = Path(uri).expanduser()
    return await asyncio.to_thread(path.read_bytes)


class AttachmentPipeline:
    """Holds at most one pending attachment and tracks its upload."""

    def __init__(self, reader: ContentReader | None = None) -> None:
        self._reader = reader or read_attachment_bytes
        self._attachment: Attachment | None = None
        self.state = AttachmentState.IDLE
        self.last_error: str | None = None

    @property
    def pending(self) -> Attachment | None:
        """The staged attachment, or the one being uploaded."""
        return self._attachment

    def attach(self, attachment: Attachment) -> None:
        """Stage ``attachment``, replacing any attachment already staged."""
        if self.state == AttachmentState.UPLOADING:
            raise AttachmentError("Cannot change the attachment while it is being uploaded")
        if self._attachment is not None:
            logger.debug("Replacing staged attachment {} with {}", self._attachment.name, attachment.name)
        self._attachment = attachment
        self.state = AttachmentState.STAGED
        self.last_error = None

    def clear(self) -> None:
        """Drop a staged attachment."""
        if self.state == AttachmentState.UPLOADING:
            raise AttachmentError("Cannot clear the attachment while it is being uploaded")
        self._attachment = None
        self.state = AttachmentState.IDLE

    def begin_upload(self) -> Attachment | None:
        """Hand the staged attachment to the current send; ``None`` when idle."""
        if self.state != AttachmentState.STAGED or self._attachment is None:
            return None
        self.state = AttachmentState.UPLOADING
        logger.debug("Uploading attachment {}", self._attachment.name)
        return self._attachment

    def mark_delivered(self) -> None:
        self._require_uploading()
        self.state = AttachmentState.DELIVERED

    def mark_failed(self, error: str) -> None:
        self._require_uploading()
        self.state = AttachmentState.UPLOAD_FAILED
        self.last_error = error

    def finish(self) -> None:
        """Return to ``idle`` after the consuming request resolved or failed."""
        if self.state == AttachmentState.UPLOADING:
            self.mark_failed("Upload did not complete")
        if self.state in (AttachmentState.DELIVERED, AttachmentState.UPLOAD_FAILED):
            logger.debug("Attachment cycle finished: {}", self.state.value)
            self._attachment = None
            self.state = AttachmentState.IDLE

    async def resolve_payload(self, attachment: Attachment) -> AttachmentPayload:
        """Read the attachment's bytes, degrading to metadata only on failure."""
        try:
            content = await self._reader(attachment.uri)
        except Exception as exc:
            logger.warning(
                "Could not read attachment {} ({}); sending metadata only",
                attachment.name,
                exc,
            )
            content = None
        else:
            logger.debug("Read {} bytes for attachment {}", len(content), attachment.name)
        return AttachmentPayload(
            name=attachment.name,
            mime_type=attachment.mime_type,
            uri=attachment.uri,
            content=content,
        )

    def _require_uploading(self) -> None:
        if self.state != AttachmentState.UPLOADING:
            raise AttachmentError(f"No upload in progress (state={self.state.value})")
