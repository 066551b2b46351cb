"""Tests for attachment classification and blob storage."""
import pytest

from parley.errors import PayloadTooLarge
from parley.files.schemas import MediaKind, classify_media, file_extension
from parley.files.service import BlobStorageService


class TestClassifyMedia:
    def test_document_by_mime(self):
        assert classify_media("application/pdf", "report.PDF") == MediaKind.DOCUMENT

    def test_video_by_extension_when_mime_unknown(self):
        assert classify_media("application/octet-stream", "clip.mov") == MediaKind.VIDEO

    def test_unknown_falls_back_to_file(self):
        assert classify_media("application/x-foo", "data.bin") == MediaKind.FILE

    @pytest.mark.parametrize("mime,name,kind", [
        ("image/png", "x", MediaKind.IMAGE),
        ("audio/mpeg", "song", MediaKind.AUDIO),
        ("video/mp4", "movie", MediaKind.VIDEO),
        ("text/plain", "notes", MediaKind.DOCUMENT),
        ("application/vnd.openxmlformats-officedocument.spreadsheetml.sheet", "s", MediaKind.DOCUMENT),
        ("", "photo.HEIC", MediaKind.FILE),
        (None, "voice.m4a", MediaKind.AUDIO),
        (None, "slides.pptx", MediaKind.DOCUMENT),
        (None, None, MediaKind.FILE),
    ])
    def test_classification_table(self, mime, name, kind):
        assert classify_media(mime, name) == kind

    def test_image_needs_image_mime(self):
        assert classify_media("application/octet-stream", "photo.png") == MediaKind.FILE
        assert classify_media("image/png", "photo.png") == MediaKind.IMAGE

    def test_mime_wins_over_extension(self):
        assert classify_media("image/jpeg", "upload.pdf") == MediaKind.IMAGE

    def test_file_extension(self):
        assert file_extension("Report.Final.PDF") == "pdf"
        assert file_extension("README") == ""


class TestBlobStorage:
    @pytest.fixture
    def blobs(self, tmp_path):
        return BlobStorageService(upload_dir=str(tmp_path), db_path=":memory:", max_file_size_bytes=64)

    @pytest.mark.asyncio
    async def test_put_and_locate(self, blobs, tmp_path):
        blob = await blobs.put("chat-1", "u1", "report.pdf", b"%PDF-1.4", "application/pdf")

        assert blob.media_kind == MediaKind.DOCUMENT
        assert blob.size_bytes == 8
        stored, path = blobs.locate(blob.id)
        assert stored.file_name == "report.pdf"
        assert path.read_bytes() == b"%PDF-1.4"
        assert path.parent == tmp_path / "chat-1"

    @pytest.mark.asyncio
    async def test_size_limit(self, blobs, tmp_path):
        with pytest.raises(PayloadTooLarge):
            await blobs.put("chat-1", "u1", "big.bin", b"x" * 65, "application/octet-stream")
        assert not (tmp_path / "chat-1").exists()

    @pytest.mark.asyncio
    async def test_discard(self, blobs):
        blob = await blobs.put("chat-1", "u1", "a.txt", b"a", "text/plain")
        _, path = blobs.locate(blob.id)

        assert blobs.discard(blob.id) is True
        assert blobs.locate(blob.id) is None
        assert not path.exists()
        assert blobs.discard(blob.id) is False

    @pytest.mark.asyncio
    async def test_purge_chat(self, blobs, tmp_path):
        first = await blobs.put("chat-1", "u1", "a.txt", b"a", "text/plain")
        await blobs.put("chat-1", "u1", "b.txt", b"b", "text/plain")
        other = await blobs.put("chat-2", "u1", "c.txt", b"c", "text/plain")

        assert blobs.purge_chat("chat-1") == 2
        assert blobs.locate(first.id) is None
        assert not (tmp_path / "chat-1").exists()
        assert blobs.locate(other.id) is not None
        assert blobs.purge_chat("chat-1") == 0

    @pytest.mark.asyncio
    async def test_missing_on_disk(self, blobs):
        blob = await blobs.put("chat-1", "u1", "a.txt", b"a", "text/plain")
        _, path = blobs.locate(blob.id)
        path.unlink()

        assert blobs.locate(blob.id) is None

    def test_unknown_blob(self, blobs):
        assert blobs.locate("missing") is None
