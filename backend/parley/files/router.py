"""FastAPI router for attachment upload and download."""
import logging

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse

from parley.auth.dependencies import get_current_user, raise_http
from parley.chat.manager import manager
from parley.config import get_config
from parley.errors import AccessDenied, ChatError, NotFound
from parley.store.schemas import User

from .schemas import BlobRef, FileUploadResponse
from .service import BlobStorageService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/files", tags=["files"])


def get_download_url(request: Request, file_id: str) -> str:
    """Build the retrievable URL of a stored blob."""
    base_url = get_config().storage.public_base_url or str(request.base_url)
    return f"{base_url.rstrip('/')}/files/download/{file_id}"


@router.post("/upload/{chat_id}", response_model=FileUploadResponse, status_code=201)
async def upload_file(
    request: Request,
    chat_id: str,
    file: UploadFile = File(...),
    user: User = Depends(get_current_user),
) -> FileUploadResponse:
    """Upload an attachment to a chat.

    The blob is stored first, then an attachment message is persisted and
    broadcast to the chat's room as ``receive_message``. If the message
    cannot be stored the blob is discarded again.

    Args:
        chat_id: Chat to upload to
        file: The file to upload

    Returns:
        FileUploadResponse with file metadata, download URL and message id

    Raises:
        HTTPException 403/404: Caller is not a member, or the chat is gone
        HTTPException 413: If the file exceeds the configured size limit
    """
    try:
        if not await manager.store.is_member(chat_id, user.id):
            if await manager.store.get_chat(chat_id) is None:
                raise NotFound("Chat not found")
            raise AccessDenied("Access denied")
    except ChatError as e:
        raise_http(e)

    content = await file.read()
    mime_type = file.content_type or "application/octet-stream"

    blobs = BlobStorageService.get_instance()
    try:
        blob = await blobs.put(chat_id, user.id, file.filename or "unnamed", content, mime_type)
    except ChatError as e:
        raise_http(e)

    download_url = get_download_url(request, blob.id)
    logger.info(f"File uploaded: {blob.file_name} ({blob.size_bytes} bytes) to chat {chat_id}")

    try:
        message = await manager.submit_attachment(
            user.id,
            chat_id,
            BlobRef(url=download_url, mime_type=mime_type, file_name=blob.file_name),
        )
    except ChatError as e:
        blobs.discard(blob.id)
        raise_http(e)

    return FileUploadResponse(
        id=blob.id,
        original_filename=blob.file_name,
        media_kind=blob.media_kind,
        mime_type=blob.mime_type,
        size_bytes=blob.size_bytes,
        download_url=download_url,
        message_id=message.id,
    )


@router.get("/download/{file_id}")
async def download_file(file_id: str):
    """Download a file by ID.

    Raises:
        HTTPException 404: If the file is unknown or missing on disk
    """
    found = BlobStorageService.get_instance().locate(file_id)
    if found is None:
        raise HTTPException(status_code=404, detail="File not found")

    blob, path = found
    return FileResponse(path=path, filename=blob.file_name, media_type=blob.mime_type)
