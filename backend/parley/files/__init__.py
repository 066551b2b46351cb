"""Files module: attachment blobs on disk with DuckDB metadata."""

from .schemas import BlobRef, FileUploadResponse, MediaKind, StoredBlob, classify_media
from .service import BlobStorageService

__all__ = [
    "BlobRef",
    "BlobStorageService",
    "FileUploadResponse",
    "MediaKind",
    "StoredBlob",
    "classify_media",
]
