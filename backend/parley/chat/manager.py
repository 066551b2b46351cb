"""Real-time chat core: sessions, rooms, presence and message delivery.

This module ties together the in-memory session registry and room router
with the durable store. It is the only place where live state is mutated.

Key features:
    - Connection bookkeeping with server-assigned connection ids
    - Global presence broadcasts on every join/leave
    - Room membership re-validated against ChatMember rows on join
    - Message submission with self-echo fan-out to the room
    - Typing relay that never echoes to the typing connection
    - Delivery/read receipt reconciliation with room notifications

Thread Safety:
    This implementation is designed for async/await usage with a single event
    loop. It is NOT thread-safe. Map mutations happen synchronously between
    awaits, so handlers never observe a half-updated registry or router.

Lifecycle:
    ``start()`` is called from the application lifespan and ``shutdown()``
    clears every map. Nothing here is persisted: after a restart all users
    are offline until they reconnect.
"""
import logging
import uuid
from typing import List, Optional, Sequence

from fastapi import WebSocket

from parley.config import get_config
from parley.errors import AccessDenied, UnregisteredConnection, ValidationError
from parley.files.schemas import BlobRef
from parley.store.schemas import Message
from parley.store.service import ChatStore

from .pipeline import (
    RECEIVE_MESSAGE,
    MessagePipeline,
    chat_id_from_room,
    room_key,
    string_field,
    to_receive_payload,
)
from .presence import PresenceCoordinator
from .receipts import ReceiptService
from .rooms import RoomRouter
from .schemas import SessionEntry
from .sessions import SessionRegistry

logger = logging.getLogger(__name__)

CONNECTED = "connected"
ROOM_JOINED = "room_joined"
ROOM_LEFT = "room_left"
MESSAGES_DELIVERED = "messages_delivered"
MESSAGES_READ = "messages_read"
CHAT_DELETED = "chat_deleted"


class ChatCore:
    """Owns the live session and room state for the process.

    Only the operations below are exposed; the underlying maps are never
    handed out, which keeps the registry and router invariants intact.

    Note:
        A single global instance (``manager``) is shared by the WebSocket
        gateway and the REST routers.
    """

    def __init__(self, store: Optional[ChatStore] = None) -> None:
        self._store = store
        self.sessions = SessionRegistry()
        self.rooms = RoomRouter()
        self.presence = PresenceCoordinator(self.sessions, self.rooms)
        self.started = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, store: Optional[ChatStore] = None) -> None:
        """Begin serving with empty state."""
        if store is not None:
            self._store = store
        self.sessions.clear()
        self.rooms.clear()
        self.started = True
        logger.info("[Core] Chat core started")

    def shutdown(self) -> None:
        """Drop every session and room."""
        online = len(self.sessions)
        self.sessions.clear()
        self.rooms.clear()
        self.started = False
        logger.info("[Core] Chat core shut down (%d session(s) dropped)", online)

    @property
    def store(self) -> ChatStore:
        return self._store if self._store is not None else ChatStore.get_instance()

    @property
    def pipeline(self) -> MessagePipeline:
        return MessagePipeline(self.store)

    @property
    def receipts(self) -> ReceiptService:
        return ReceiptService(
            self.store,
            conflate_read_on_delivery=get_config().receipts.conflate_read_on_delivery,
        )

    # =========================================================================
    # Connections and sessions
    # =========================================================================

    async def connect(self, websocket: WebSocket) -> str:
        """Accept a socket and assign it a connection id."""
        await websocket.accept()
        connection_id = str(uuid.uuid4())
        self.rooms.attach(connection_id, websocket)
        await self.rooms.send_to(connection_id, CONNECTED, {"connectionId": connection_id})
        return connection_id

    async def join_chat(
        self, connection_id: str, user_id: Optional[str], username: Optional[str]
    ) -> Optional[SessionEntry]:
        """Register the connection's user and broadcast presence.

        Returns:
            The session entry, or None when registration was refused
            (missing user id). A refused connection stays unauthenticated.
        """
        previous = self.sessions.get(connection_id)
        if not self.sessions.register(connection_id, user_id, username):
            return None
        if previous is not None and previous.userId != user_id:
            # Room grants belong to the previous user's memberships.
            self.rooms.leave_all(connection_id)
        entry = self.sessions.get(connection_id)
        logger.info("[Core] %s (%s) joined on %s", entry.username, entry.userId, connection_id)
        await self.presence.announce_joined(entry)
        return entry

    async def logout(self, connection_id: str) -> Optional[SessionEntry]:
        """End the session and leave every room, but keep the socket open."""
        left_rooms = self.rooms.leave_all(connection_id)
        entry = self.sessions.unregister(connection_id)
        if entry is not None:
            logger.info(
                "[Core] %s logged out on %s, left %d room(s)",
                entry.username, connection_id, len(left_rooms),
            )
            await self.presence.announce_left(entry)
        return entry

    async def disconnect(self, connection_id: str) -> Optional[SessionEntry]:
        """Tear down a closed socket: leave all rooms, drop session, announce."""
        left_rooms = self.rooms.detach(connection_id)
        entry = self.sessions.unregister(connection_id)
        if entry is not None:
            logger.info(
                "[Core] %s disconnected (%s), left %d room(s)",
                entry.username, connection_id, len(left_rooms),
            )
            await self.presence.announce_left(entry)
        else:
            logger.info("[Core] Unknown connection disconnected: %s", connection_id)
        return entry

    def session(self, connection_id: str) -> Optional[SessionEntry]:
        return self.sessions.get(connection_id)

    def is_online(self, user_id: str) -> bool:
        return self.sessions.is_online(user_id)

    def active_users(self) -> List[SessionEntry]:
        return self.sessions.snapshot()

    def _require_session(self, connection_id: str) -> SessionEntry:
        entry = self.sessions.get(connection_id)
        if entry is None:
            raise UnregisteredConnection("User not registered")
        return entry

    # =========================================================================
    # Rooms
    # =========================================================================

    async def join_room(self, connection_id: str, key: Optional[str]) -> str:
        """Admit a connection into a room and acknowledge it.

        When ``rooms.verify_membership`` is on, the room key must name a chat
        the connection's user belongs to.

        Raises:
            ValidationError: Missing room key, or malformed when verifying.
            UnregisteredConnection: Verifying and no session exists.
            AccessDenied / NotFound: Verifying and the user is not a member.
        """
        if not key or not isinstance(key, str):
            raise ValidationError("roomKey is required")

        if get_config().rooms.verify_membership:
            entry = self._require_session(connection_id)
            chat_id = chat_id_from_room(key)
            if chat_id is None:
                raise ValidationError(f"Invalid room key: {key}")
            if not await self.store.is_member(chat_id, entry.userId):
                logger.warning("[Core] %s refused entry to %s (not a member)", entry.userId, key)
                raise AccessDenied("Access denied")

        self.rooms.join(connection_id, key)
        await self.rooms.send_to(connection_id, ROOM_JOINED, {"roomKey": key})
        logger.info("[Core] Connection %s joined room %s", connection_id, key)
        return key

    async def leave_room(self, connection_id: str, key: Optional[str]) -> bool:
        if not key or not isinstance(key, str):
            raise ValidationError("roomKey is required")
        left = self.rooms.leave(connection_id, key)
        await self.rooms.send_to(connection_id, ROOM_LEFT, {"roomKey": key})
        return left

    async def set_typing(self, connection_id: str, key: Optional[str], is_typing: bool) -> bool:
        if key is not None and not isinstance(key, str):
            raise ValidationError("room must be a string")
        return await self.presence.set_typing(connection_id, key or "", is_typing)

    # =========================================================================
    # Messages
    # =========================================================================

    async def publish(self, message: Message) -> int:
        """Fan a persisted message out to its room, sender included."""
        return await self.rooms.broadcast(
            room_key(message.chat_id), RECEIVE_MESSAGE, to_receive_payload(message)
        )

    async def send_message(self, connection_id: str, data: dict) -> Message:
        """Handle an inbound ``send_message`` event end to end.

        The sender is always the session's user; a different ``senderId`` in
        the payload is rejected. With ``fileUrl`` the event records an
        uploaded attachment, otherwise a text message from ``text``.
        """
        entry = self._require_session(connection_id)

        claimed = string_field(data, "senderId")
        if claimed and claimed != entry.userId:
            raise AccessDenied("senderId does not match the connected user")

        chat_id = string_field(data, "chatId") or chat_id_from_room(string_field(data, "room"))
        if not chat_id:
            raise ValidationError("A chat room is required")

        file_url = string_field(data, "fileUrl")
        if file_url:
            blob = BlobRef(
                url=file_url,
                mime_type=string_field(data, "mimeType", "fileType") or "",
                file_name=string_field(data, "fileName") or file_url.rsplit("/", 1)[-1] or "file",
            )
            message = await self.pipeline.submit_attachment(entry.userId, chat_id, blob)
        else:
            message = await self.pipeline.submit_text(entry.userId, chat_id, data.get("text"))

        await self.publish(message)
        await self.presence.typing_stopped(connection_id, room_key(chat_id))
        return message

    async def submit_text(self, user_id: str, chat_id: str, content: Optional[str]) -> Message:
        """REST entry point: persist then fan out."""
        message = await self.pipeline.submit_text(user_id, chat_id, content)
        await self.publish(message)
        return message

    async def submit_attachment(self, user_id: str, chat_id: str, blob: BlobRef) -> Message:
        message = await self.pipeline.submit_attachment(user_id, chat_id, blob)
        await self.publish(message)
        return message

    # =========================================================================
    # Receipts
    # =========================================================================

    async def mark_delivered(self, user_id: str, chat_id: str) -> int:
        """Reconcile deliveries and tell the room when anything changed."""
        count = await self.receipts.mark_delivered(user_id, chat_id)
        if count:
            await self.rooms.broadcast(
                room_key(chat_id),
                MESSAGES_DELIVERED,
                {"chatId": chat_id, "userId": user_id, "markedCount": count},
            )
        return count

    async def mark_read(
        self, user_id: str, chat_id: str, message_ids: Optional[Sequence[str]] = None
    ) -> int:
        count = await self.receipts.mark_read(user_id, chat_id, message_ids)
        if count:
            await self.rooms.broadcast(
                room_key(chat_id),
                MESSAGES_READ,
                {"chatId": chat_id, "userId": user_id, "updatedCount": count},
            )
        return count

    async def announce_chat_deleted(self, chat_id: str) -> int:
        return await self.rooms.broadcast(room_key(chat_id), CHAT_DELETED, {"chatId": chat_id})


# Global singleton instance used by the gateway and REST routers
manager = ChatCore()
