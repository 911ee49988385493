"""Models for files and images sent alongside a question."""

from __future__ import annotations

from pydantic import BaseModel, Field


class FileInfo(BaseModel):
    """File metadata recorded on the user message that carried it."""

    name: str
    type: str | None = None
    size: int | None = None


class Attachment(BaseModel):
    """A picked file or image awaiting upload.

    ``uri`` is whatever handle the picker produced: a local path, a
    ``file://`` URI or an ``http(s)`` URL.
    """

    uri: str
    name: str
    mime_type: str = Field(default="application/octet-stream")
    size: int | None = None

    def file_info(self) -> FileInfo:
        return FileInfo(name=self.name, type=self.mime_type, size=self.size)


class AttachmentPayload(BaseModel):
    """Resolved upload body for an attachment.

    ``content`` is ``None`` when the raw bytes could not be read and only
    the handle metadata is sent.
    """

    name: str
    mime_type: str
    uri: str
    content: bytes | None = None

    @property
    def metadata_only(self) -> bool:
        return self.content is None
