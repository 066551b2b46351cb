"""Session registry: which connections belong to which authenticated user.

This is the source of truth for "who is online right now". It is a plain
in-memory map owned by the chat core; it never touches the network and
never raises for bad input. Presence broadcasts are issued by the core
after a successful mutation.
"""
import logging
from typing import Dict, List, Optional

from .schemas import SessionEntry

logger = logging.getLogger(__name__)


class SessionRegistry:
    """connectionId -> SessionEntry map.

    Invariants:
        - at most one entry per connectionId
        - a user may own any number of entries (tabs, devices)
    """

    def __init__(self) -> None:
        self._entries: Dict[str, SessionEntry] = {}

    def register(self, connection_id: str, user_id: Optional[str], username: Optional[str]) -> bool:
        """Insert or replace the entry for a connection.

        Returns:
            False (and leaves the registry untouched) when connection_id or
            user_id is missing; True otherwise.
        """
        if not connection_id or not user_id:
            logger.info("[Core] Refusing registration without user id (connection=%s)", connection_id)
            return False
        self._entries[connection_id] = SessionEntry(
            connectionId=connection_id,
            userId=user_id,
            username=username or "",
        )
        return True

    def unregister(self, connection_id: str) -> Optional[SessionEntry]:
        """Remove the entry for a connection.

        Returns:
            The removed entry, or None if there was none (callers broadcast
            presence only when something was removed).
        """
        return self._entries.pop(connection_id, None)

    def get(self, connection_id: str) -> Optional[SessionEntry]:
        return self._entries.get(connection_id)

    def is_online(self, user_id: str) -> bool:
        return any(e.userId == user_id for e in self._entries.values())

    def connections_for(self, user_id: str) -> List[str]:
        """All live connection ids of a user."""
        return [cid for cid, e in self._entries.items() if e.userId == user_id]

    def snapshot(self) -> List[SessionEntry]:
        """Copies of all current entries, in registration order."""
        return [e.model_copy() for e in self._entries.values()]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
