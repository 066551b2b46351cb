"""Messages REST API router.

Endpoints:
    GET  /messages/{chat_id}               - Latest messages with per-viewer status
    POST /messages/{chat_id}               - Post a text message (broadcast to the room)
    GET  /messages/{chat_id}/unread-count  - Messages by others not yet read
    POST /messages/{chat_id}/delivered     - Reconcile deliveries for the caller
    POST /messages/{chat_id}/read          - Mark delivered messages read
    GET  /messages/receipts/{message_id}   - Receipts of one message
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from parley.auth.dependencies import get_current_user, raise_http
from parley.config import get_config
from parley.errors import ChatError
from parley.store.schemas import MarkReadRequest, TextMessageCreate, User

from .manager import manager
from .pipeline import to_view
from .schemas import MessageView, ReadReceiptSummary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["messages"])


# Declared before the /{chat_id}/... routes so it is matched first.
@router.get("/receipts/{message_id}", response_model=ReadReceiptSummary)
async def get_read_receipts(
    message_id: str,
    user: User = Depends(get_current_user),
) -> ReadReceiptSummary:
    """Receipts of one message, visible to members of its chat."""
    try:
        return await manager.receipts.read_receipts_for(message_id, user.id)
    except ChatError as e:
        raise_http(e)


@router.get("/{chat_id}", response_model=List[MessageView])
async def list_messages(
    chat_id: str,
    limit: Optional[int] = Query(None, ge=1),
    user: User = Depends(get_current_user),
) -> List[MessageView]:
    """Latest messages of a chat in ascending order.

    Args:
        chat_id: The chat.
        limit: Page size, defaults to ``messages.default_page_size`` and is
            capped at ``messages.max_page_size``.
    """
    settings = get_config().messages
    page = min(limit or settings.default_page_size, settings.max_page_size)
    try:
        return await manager.receipts.history_for(user.id, chat_id, page)
    except ChatError as e:
        raise_http(e)


@router.post("/{chat_id}", response_model=MessageView, status_code=201)
async def post_message(
    chat_id: str,
    request: TextMessageCreate,
    user: User = Depends(get_current_user),
) -> MessageView:
    """Persist a text message and fan it out to the chat's room."""
    try:
        message = await manager.submit_text(user.id, chat_id, request.content)
    except ChatError as e:
        raise_http(e)
    return to_view(message)


@router.get("/{chat_id}/unread-count")
async def unread_count(chat_id: str, user: User = Depends(get_current_user)) -> dict:
    try:
        count = await manager.receipts.unread_count(user.id, chat_id)
    except ChatError as e:
        raise_http(e)
    return {"chatId": chat_id, "unreadCount": count}


@router.post("/{chat_id}/delivered")
async def mark_delivered(chat_id: str, user: User = Depends(get_current_user)) -> dict:
    try:
        count = await manager.mark_delivered(user.id, chat_id)
    except ChatError as e:
        raise_http(e)
    return {"chatId": chat_id, "markedCount": count}


@router.post("/{chat_id}/read")
async def mark_read(
    chat_id: str,
    request: Optional[MarkReadRequest] = None,
    user: User = Depends(get_current_user),
) -> dict:
    """Stamp readAt on delivered messages. Without ``messageIds`` all are marked."""
    message_ids = request.messageIds if request is not None else None
    try:
        count = await manager.mark_read(user.id, chat_id, message_ids)
    except ChatError as e:
        raise_http(e)
    return {"chatId": chat_id, "updatedCount": count}
