"""Chats REST API router.

Endpoints:
    POST   /chats/direct     - Open (or reuse) the direct chat with another user
    POST   /chats/group      - Create a group chat
    GET    /chats            - List the caller's chats with their last message
    GET    /chats/{chat_id}  - Get one chat (members only)
    DELETE /chats/{chat_id}  - Delete a chat, its messages, receipts and files
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, Response

from parley.auth.dependencies import get_current_user, raise_http
from parley.errors import AccessDenied, ChatError, NotFound
from parley.files.service import BlobStorageService
from parley.store.schemas import Chat, DirectChatCreate, GroupChatCreate, User

from .manager import manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chats", tags=["chats"])


async def _member_chat(chat_id: str, user: User) -> Chat:
    chat = await manager.store.get_chat(chat_id)
    if chat is None:
        raise NotFound("Chat not found")
    if user.id not in chat.member_ids:
        raise AccessDenied("Access denied")
    return chat


@router.post("/direct", response_model=Chat)
async def create_direct_chat(
    request: DirectChatCreate,
    response: Response,
    user: User = Depends(get_current_user),
) -> Chat:
    """Open the direct chat between the caller and ``userId``.

    Returns 201 when the chat was created and 200 when an existing one was
    reused.
    """
    try:
        chat, created = await manager.store.create_direct_chat(user.id, request.userId)
    except ChatError as e:
        raise_http(e)
    response.status_code = 201 if created else 200
    return chat


@router.post("/group", response_model=Chat, status_code=201)
async def create_group_chat(
    request: GroupChatCreate,
    user: User = Depends(get_current_user),
) -> Chat:
    """Create a group chat with the caller and ``userIds`` as members."""
    try:
        return await manager.store.create_group_chat(user.id, request.name, request.userIds)
    except ChatError as e:
        raise_http(e)


@router.get("", response_model=List[Chat])
async def list_chats(user: User = Depends(get_current_user)) -> List[Chat]:
    try:
        return await manager.store.list_user_chats(user.id)
    except ChatError as e:
        raise_http(e)


@router.get("/{chat_id}", response_model=Chat)
async def get_chat(chat_id: str, user: User = Depends(get_current_user)) -> Chat:
    try:
        return await _member_chat(chat_id, user)
    except ChatError as e:
        raise_http(e)


@router.delete("/{chat_id}")
async def delete_chat(chat_id: str, user: User = Depends(get_current_user)) -> dict:
    """Delete a chat. Any member may delete it.

    Connections still in the chat's room receive ``chat_deleted``. Their
    room membership is left as is: the store is the source of truth and
    later submissions to the chat fail with 404.
    """
    try:
        await _member_chat(chat_id, user)
        await manager.store.delete_chat(chat_id)
    except ChatError as e:
        raise_http(e)

    deleted_files = BlobStorageService.get_instance().purge_chat(chat_id)
    await manager.announce_chat_deleted(chat_id)
    logger.info(f"Chat {chat_id} deleted by {user.id} ({deleted_files} file(s) removed)")
    return {"deleted": True, "chatId": chat_id, "deletedFiles": deleted_files}
