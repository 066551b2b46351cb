"""Real-time chat core: sessions, rooms, presence, delivery and receipts."""

from .manager import ChatCore, manager

__all__ = ["ChatCore", "manager"]
