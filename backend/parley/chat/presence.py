"""Presence and typing relay.

Presence is global: every register/unregister broadcasts the full session
snapshot to all connections, because client sidebars show online dots for
every user regardless of the open chat.

Typing is a pure relay scoped to one room. There are no timers and no
debouncing; a client clears a stale indicator when it receives
``isTyping=false`` or a new message from that user.
"""
import logging

from .rooms import RoomRouter
from .schemas import SessionEntry
from .sessions import SessionRegistry

logger = logging.getLogger(__name__)

USER_JOINED = "user_joined"
USER_LEFT = "user_left"
USER_TYPING = "user_typing"


class PresenceCoordinator:
    """Derives presence and typing events from session and room state."""

    def __init__(self, sessions: SessionRegistry, rooms: RoomRouter) -> None:
        self._sessions = sessions
        self._rooms = rooms

    def presence_payload(self, entry: SessionEntry) -> dict:
        return {
            "username": entry.username,
            "userId": entry.userId,
            "activeUsers": [e.model_dump() for e in self._sessions.snapshot()],
        }

    async def announce_joined(self, entry: SessionEntry) -> int:
        return await self._rooms.broadcast_all(USER_JOINED, self.presence_payload(entry))

    async def announce_left(self, entry: SessionEntry) -> int:
        return await self._rooms.broadcast_all(USER_LEFT, self.presence_payload(entry))

    async def set_typing(self, connection_id: str, room_key: str, is_typing: bool) -> bool:
        """Relay a typing transition to the room, excluding the origin.

        Returns:
            False when the connection has no session (silently dropped).
        """
        entry = self._sessions.get(connection_id)
        if entry is None or not room_key:
            return False
        await self._rooms.broadcast(
            room_key,
            USER_TYPING,
            {"userId": entry.userId, "username": entry.username, "isTyping": bool(is_typing)},
            exclude=connection_id,
        )
        return True

    async def typing_stopped(self, connection_id: str, room_key: str) -> bool:
        """Emit the idle transition that follows a successful send."""
        return await self.set_typing(connection_id, room_key, False)
