"""Room router: connection membership in conversation rooms and fan-out.

A room is a runtime group of connections keyed ``chat:<chatId>``. It is
never persisted; empty rooms are dropped from the map.

Performance Notes:
    - Broadcasting uses asyncio.gather() for concurrent delivery to the
      members of one room
    - Connections whose send fails are detached during broadcast
"""
import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class RoomRouter:
    """Tracks live sockets and which rooms each one has joined.

    The router holds non-owning references to the sockets; the gateway
    owns them and calls :meth:`detach` when a socket goes away.
    """

    def __init__(self) -> None:
        # connectionId -> WebSocket (anything with an async send_json)
        self._connections: Dict[str, WebSocket] = {}

        # roomKey -> ordered set of connectionIds
        self._rooms: Dict[str, Dict[str, None]] = {}

        # connectionId -> set of roomKeys, for leave_all on disconnect
        self._memberships: Dict[str, Set[str]] = {}

    # =========================================================================
    # Connection handles
    # =========================================================================

    def attach(self, connection_id: str, websocket: WebSocket) -> None:
        self._connections[connection_id] = websocket

    def detach(self, connection_id: str) -> List[str]:
        """Forget a socket and drop it from every room it joined."""
        left = self.leave_all(connection_id)
        self._connections.pop(connection_id, None)
        return left

    def is_attached(self, connection_id: str) -> bool:
        return connection_id in self._connections

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    # =========================================================================
    # Membership
    # =========================================================================

    def join(self, connection_id: str, room_key: str) -> None:
        """Add a connection to a room. Joining twice is harmless."""
        self._rooms.setdefault(room_key, {})[connection_id] = None
        self._memberships.setdefault(connection_id, set()).add(room_key)

    def leave(self, connection_id: str, room_key: str) -> bool:
        """Remove a connection from a room.

        Returns:
            True if the connection was a member.
        """
        members = self._rooms.get(room_key)
        if members is None or connection_id not in members:
            return False
        del members[connection_id]
        if not members:
            del self._rooms[room_key]

        rooms = self._memberships.get(connection_id)
        if rooms is not None:
            rooms.discard(room_key)
            if not rooms:
                del self._memberships[connection_id]
        return True

    def leave_all(self, connection_id: str) -> List[str]:
        """Remove a connection from every room. Returns the rooms it left."""
        rooms = sorted(self._memberships.get(connection_id, ()))
        for room_key in rooms:
            self.leave(connection_id, room_key)
        return rooms

    def members(self, room_key: str) -> List[str]:
        return list(self._rooms.get(room_key, {}))

    def rooms_of(self, connection_id: str) -> Set[str]:
        return set(self._memberships.get(connection_id, ()))

    def room_size(self, room_key: str) -> int:
        return len(self._rooms.get(room_key, {}))

    def has_room(self, room_key: str) -> bool:
        return room_key in self._rooms

    def clear(self) -> None:
        self._connections.clear()
        self._rooms.clear()
        self._memberships.clear()

    # =========================================================================
    # Fan-out
    # =========================================================================

    async def broadcast(
        self,
        room_key: str,
        event: str,
        payload: Dict[str, Any],
        exclude: Optional[str] = None,
    ) -> int:
        """Send ``{"type": event, **payload}`` to every member of a room.

        Args:
            room_key: Room to fan out to.
            event: Outbound event name.
            payload: JSON-serializable event body.
            exclude: Connection to skip (typing indicators skip the origin).

        Returns:
            Number of connections the event was delivered to.
        """
        targets = [cid for cid in self._rooms.get(room_key, {}) if cid != exclude]
        return await self._send_many(targets, {"type": event, **payload})

    async def broadcast_all(
        self, event: str, payload: Dict[str, Any], exclude: Optional[str] = None
    ) -> int:
        """Send an event to every attached connection (presence is global)."""
        targets = [cid for cid in self._connections if cid != exclude]
        return await self._send_many(targets, {"type": event, **payload})

    async def send_to(self, connection_id: str, event: str, payload: Dict[str, Any]) -> bool:
        """Send an event to a single connection (acks and errors)."""
        return await self._send_many([connection_id], {"type": event, **payload}) == 1

    async def _send_many(self, connection_ids: Iterable[str], message: dict) -> int:
        targets = [
            (cid, self._connections[cid]) for cid in connection_ids
            if cid in self._connections
        ]
        if not targets:
            return 0

        results = await asyncio.gather(
            *[self._safe_send(ws, message) for _, ws in targets],
            return_exceptions=True
        )

        delivered = 0
        for (cid, _), ok in zip(targets, results):
            if ok is True:
                delivered += 1
            else:
                self.detach(cid)
                logger.debug("[Core] Removed dead connection %s", cid)
        return delivered

    async def _safe_send(self, connection: WebSocket, message: dict) -> bool:
        """Send a message with error handling.

        Returns:
            True if successful, False if the connection failed.
        """
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False
