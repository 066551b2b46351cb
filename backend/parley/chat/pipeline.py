"""Message delivery pipeline: validate, check membership, persist.

The pipeline stops at the durable write. Fan-out is driven by the caller,
which broadcasts ``receive_message`` to the room *including* the sender:
the persisted record carries the server-assigned id and timestamp that
replace the sender's optimistic local copy.

Persistence and broadcast are two sequential steps, not one transaction.
If the membership check fails, or the store write fails (including a chat
deleted between the check and the write), nothing is broadcast and the
error propagates to the caller. There are no retries here; a client retries
by submitting again.
"""
import logging
from typing import Optional

from parley.errors import AccessDenied, NotFound, ValidationError
from parley.files.schemas import BlobRef, classify_media
from parley.store.schemas import Message
from parley.store.service import ChatStore

from .schemas import ROOM_PREFIX, MessageView, ReadStatus

logger = logging.getLogger(__name__)

RECEIVE_MESSAGE = "receive_message"


def room_key(chat_id: str) -> str:
    """Room key of a chat: ``"chat:" + chatId``."""
    return ROOM_PREFIX + chat_id


def chat_id_from_room(key: Optional[str]) -> Optional[str]:
    """Inverse of :func:`room_key`; None for keys of another shape."""
    if not isinstance(key, str) or not key.startswith(ROOM_PREFIX):
        return None
    chat_id = key[len(ROOM_PREFIX):]
    return chat_id or None


def string_field(data: dict, *names: str) -> Optional[str]:
    """First non-empty field among *names* in an inbound event.

    Raises:
        ValidationError: The field is present but not a string.
    """
    for name in names:
        value = data.get(name)
        if value is None or value == "":
            continue
        if not isinstance(value, str):
            raise ValidationError(f"{name} must be a string")
        return value
    return None


def to_view(message: Message, status: ReadStatus = ReadStatus.SENT) -> MessageView:
    return MessageView(
        id=message.id,
        chatId=message.chat_id,
        senderId=message.sender_id,
        senderName=message.sender_name,
        senderAvatar=message.sender_avatar,
        content=message.content,
        fileUrl=message.file_url,
        fileType=message.file_type,
        fileName=message.file_name,
        createdAt=message.created_at,
        status=status,
    )


def to_receive_payload(message: Message) -> dict:
    """Body of the outbound ``receive_message`` event."""
    payload = {
        "id": message.id,
        "chatId": message.chat_id,
        "senderId": message.sender_id,
        "senderName": message.sender_name,
        "text": message.content,
        "timestamp": message.created_at.isoformat(),
        "room": room_key(message.chat_id),
    }
    if message.is_attachment:
        payload.update(
            fileUrl=message.file_url,
            fileType=message.file_type,
            fileName=message.file_name,
        )
    return payload


class MessagePipeline:
    """Persists text and attachment messages after a membership check."""

    def __init__(self, store: ChatStore) -> None:
        self._store = store

    async def _require_member(self, sender_id: str, chat_id: str) -> None:
        if not chat_id:
            raise ValidationError("chatId is required")
        if await self._store.is_member(chat_id, sender_id):
            return
        if await self._store.get_chat(chat_id) is None:
            raise NotFound("Chat not found")
        raise AccessDenied("Access denied")

    async def submit_text(self, sender_id: str, chat_id: str, content: Optional[str]) -> Message:
        """Persist a text message.

        Raises:
            ValidationError: Empty or whitespace-only content.
            AccessDenied: Sender is not a member of the chat.
            NotFound: The chat does not exist (or vanished mid-submission).
            TransientStoreError: The store failed.
        """
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Message content is required")

        await self._require_member(sender_id, chat_id)
        message = await self._store.create_message(chat_id, sender_id, content=content)
        logger.info("[Core] Message %s persisted in chat %s by %s", message.id, chat_id, sender_id)
        return message

    async def submit_attachment(self, sender_id: str, chat_id: str, blob: BlobRef) -> Message:
        """Persist an attachment message for an already-stored blob.

        The media kind is classified by :func:`classify_media`. ``content``
        stays unset.
        """
        if blob is None or not blob.url or not blob.file_name:
            raise ValidationError("Attachment url and file name are required")

        await self._require_member(sender_id, chat_id)
        kind = classify_media(blob.mime_type, blob.file_name)
        message = await self._store.create_message(
            chat_id,
            sender_id,
            file_url=blob.url,
            file_type=kind.value,
            file_name=blob.file_name,
        )
        logger.info(
            "[Core] Attachment %s (%s) persisted in chat %s by %s",
            message.id, kind.value, chat_id, sender_id,
        )
        return message
