"""Pydantic schemas and media classification for chat attachments.

- MediaKind: category shown by clients (image, audio, video, document, file)
- StoredBlob: what the blob store knows about one uploaded file
- BlobRef: what the message pipeline needs to record an attachment
- FileUploadResponse: API response after a successful upload

The blob store is opaque to the rest of the service: the upload route
hands it bytes and gets back a StoredBlob whose id becomes the download
URL. Only that URL travels on into messages.
"""
from datetime import datetime
from enum import Enum
from pathlib import PurePosixPath
from typing import Optional

from pydantic import BaseModel, Field


class MediaKind(str, Enum):
    """Attachment categories.

    Images are recognised by MIME type only. Audio, video and documents
    also match on the file extension when the MIME type is generic.
    Anything unrecognised is FILE.
    """
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"
    FILE = "file"


# Extension fallbacks, lowercase without the dot. Images have none.
EXTENSIONS = {
    MediaKind.AUDIO: frozenset({"mp3", "wav", "m4a", "aac", "flac", "ogg", "wma"}),
    MediaKind.VIDEO: frozenset({"mp4", "avi", "mov", "mkv", "flv", "wmv", "webm"}),
    MediaKind.DOCUMENT: frozenset({"pdf", "doc", "docx", "txt", "xls", "xlsx", "ppt", "pptx"}),
}

DOCUMENT_MIME_TYPES = frozenset({
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "text/plain",
})

_MIME_PREFIXES = (
    ("image/", MediaKind.IMAGE),
    ("audio/", MediaKind.AUDIO),
    ("video/", MediaKind.VIDEO),
)


def file_extension(file_name: str) -> str:
    """Lowercase extension without the dot ("" when there is none)."""
    return PurePosixPath(file_name or "").suffix.lower().lstrip(".")


def classify_media(mime_type: Optional[str], file_name: Optional[str]) -> MediaKind:
    """Classify an attachment into a MediaKind.

    Args:
        mime_type: MIME type reported by the client or upload layer.
        file_name: Original filename, used for the extension fallback.

    Returns:
        MediaKind for the attachment.

    Examples:
        >>> classify_media("application/pdf", "report.PDF")
        <MediaKind.DOCUMENT: 'document'>
        >>> classify_media("application/octet-stream", "clip.mov")
        <MediaKind.VIDEO: 'video'>
        >>> classify_media("application/x-foo", "data.bin")
        <MediaKind.FILE: 'file'>
        >>> classify_media("application/octet-stream", "photo.png")
        <MediaKind.FILE: 'file'>
    """
    mime = (mime_type or "").strip().lower()
    for prefix, kind in _MIME_PREFIXES:
        if mime.startswith(prefix):
            return kind
    if mime in DOCUMENT_MIME_TYPES:
        return MediaKind.DOCUMENT

    ext = file_extension(file_name or "")
    for kind, extensions in EXTENSIONS.items():
        if ext in extensions:
            return kind
    return MediaKind.FILE


class BlobRef(BaseModel):
    """Reference to an uploaded blob, as handed to the message pipeline."""
    url: str = Field(..., min_length=1, description="Retrievable URL of the blob")
    mime_type: str = Field(default="", description="MIME type, may be empty")
    file_name: str = Field(..., min_length=1, description="Original filename")


class StoredBlob(BaseModel):
    """One uploaded file as recorded by the blob store."""
    id: str
    chat_id: str
    uploader_id: str
    file_name: str = Field(..., description="Name the client uploaded")
    mime_type: str
    media_kind: MediaKind
    size_bytes: int
    created_at: datetime


class FileUploadResponse(BaseModel):
    """Response after a successful upload: the blob and the message it created."""
    id: str = Field(..., description="File ID")
    original_filename: str
    media_kind: MediaKind
    mime_type: str
    size_bytes: int
    download_url: str
    message_id: str = Field(..., description="Attachment message persisted for the upload")
