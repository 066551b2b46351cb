"""Blob store for chat attachments.

Bytes live on disk under ``<upload_dir>/<chat_id>/``; a DuckDB table maps
each blob id to its chat, uploader and on-disk name. Callers see only
:class:`StoredBlob` records and never build paths themselves.

Layout:
    blobs (id, chat_id, uploader_id, file_name, disk_name, mime_type,
           media_kind, size_bytes, created_at)
"""
import logging
import uuid
from pathlib import Path
from typing import Optional, Sequence, Tuple

import duckdb

from parley.errors import PayloadTooLarge
from parley.store.service import utcnow

from .schemas import MediaKind, StoredBlob, classify_media, file_extension

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE_BYTES = 20 * 1024 * 1024

_COLUMNS = "id, chat_id, uploader_id, file_name, mime_type, media_kind, size_bytes, created_at, disk_name"


def _row_to_blob(row: Sequence) -> Tuple[StoredBlob, str]:
    blob = StoredBlob(
        id=row[0],
        chat_id=row[1],
        uploader_id=row[2],
        file_name=row[3],
        mime_type=row[4],
        media_kind=MediaKind(row[5]),
        size_bytes=row[6],
        created_at=row[7],
    )
    return blob, row[8]


class BlobStorageService:
    """Singleton blob store. ``:memory:`` metadata is used by tests."""

    _instance: Optional["BlobStorageService"] = None

    def __init__(
        self,
        upload_dir: str = "uploads",
        db_path: str = ":memory:",
        max_file_size_bytes: int = DEFAULT_MAX_FILE_SIZE_BYTES,
    ) -> None:
        self.root = Path(upload_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self.max_file_size_bytes = max_file_size_bytes
        self._db = duckdb.connect(db_path)
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS blobs (
                id VARCHAR PRIMARY KEY,
                chat_id VARCHAR NOT NULL,
                uploader_id VARCHAR NOT NULL,
                file_name VARCHAR NOT NULL,
                disk_name VARCHAR NOT NULL,
                mime_type VARCHAR NOT NULL,
                media_kind VARCHAR NOT NULL,
                size_bytes BIGINT NOT NULL,
                created_at TIMESTAMP NOT NULL
            )
        """)
        self._db.execute("CREATE INDEX IF NOT EXISTS idx_blobs_chat ON blobs(chat_id)")

    @classmethod
    def get_instance(
        cls,
        upload_dir: Optional[str] = None,
        db_path: Optional[str] = None,
        max_file_size_bytes: int = DEFAULT_MAX_FILE_SIZE_BYTES,
    ) -> "BlobStorageService":
        """Get or create the singleton (arguments only matter on first call)."""
        if cls._instance is None:
            cls._instance = cls(upload_dir or "uploads", db_path or ":memory:", max_file_size_bytes)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        if cls._instance is not None:
            cls._instance._db.close()
            cls._instance = None

    def _path(self, chat_id: str, disk_name: str) -> Path:
        return self.root / chat_id / disk_name

    async def put(
        self, chat_id: str, uploader_id: str, file_name: str, content: bytes, mime_type: str
    ) -> StoredBlob:
        """Store an upload and return its record.

        Raises:
            PayloadTooLarge: ``content`` is over the configured limit.
        """
        if len(content) > self.max_file_size_bytes:
            raise PayloadTooLarge(
                f"File is {len(content)} bytes; the limit is {self.max_file_size_bytes} bytes"
            )

        blob = StoredBlob(
            id=str(uuid.uuid4()),
            chat_id=chat_id,
            uploader_id=uploader_id,
            file_name=file_name,
            mime_type=mime_type,
            media_kind=classify_media(mime_type, file_name),
            size_bytes=len(content),
            created_at=utcnow(),
        )
        ext = file_extension(file_name)
        disk_name = f"{blob.id}.{ext}" if ext else blob.id

        path = self._path(chat_id, disk_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        self._db.execute(
            f"INSERT INTO blobs ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [blob.id, blob.chat_id, blob.uploader_id, blob.file_name, blob.mime_type,
             blob.media_kind.value, blob.size_bytes, blob.created_at, disk_name],
        )
        logger.info("[Blobs] Stored %s for chat %s (%d bytes)", blob.id, chat_id, blob.size_bytes)
        return blob

    def locate(self, blob_id: str) -> Optional[Tuple[StoredBlob, Path]]:
        """The record and on-disk path of a blob, or None if either is gone."""
        row = self._db.execute(f"SELECT {_COLUMNS} FROM blobs WHERE id = ?", [blob_id]).fetchone()
        if row is None:
            return None
        blob, disk_name = _row_to_blob(row)
        path = self._path(blob.chat_id, disk_name)
        if not path.is_file():
            logger.warning("[Blobs] %s is recorded but missing on disk", blob_id)
            return None
        return blob, path

    def discard(self, blob_id: str) -> bool:
        """Remove one blob, used when the upload's message could not be stored."""
        row = self._db.execute(
            "DELETE FROM blobs WHERE id = ? RETURNING chat_id, disk_name", [blob_id]
        ).fetchone()
        if row is None:
            return False
        self._path(row[0], row[1]).unlink(missing_ok=True)
        logger.info("[Blobs] Discarded %s", blob_id)
        return True

    def purge_chat(self, chat_id: str) -> int:
        """Remove every blob of a deleted chat. Returns how many were removed."""
        rows = self._db.execute(
            "DELETE FROM blobs WHERE chat_id = ? RETURNING disk_name", [chat_id]
        ).fetchall()
        for (disk_name,) in rows:
            self._path(chat_id, disk_name).unlink(missing_ok=True)
        chat_dir = self.root / chat_id
        if chat_dir.is_dir() and not any(chat_dir.iterdir()):
            chat_dir.rmdir()
        if rows:
            logger.info("[Blobs] Purged %d blob(s) of chat %s", len(rows), chat_id)
        return len(rows)
