"""Durable store module: users, chats, messages and receipts in DuckDB."""

from .schemas import Chat, ChatMember, Message, MessageRead, User
from .service import ChatStore, utcnow

__all__ = [
    "Chat",
    "ChatMember",
    "ChatStore",
    "Message",
    "MessageRead",
    "User",
    "utcnow",
]
