"""Wire and in-memory models for the real-time chat core.

Field names follow the WebSocket protocol (camelCase), the same shape the
clients send and receive.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from parley.store.schemas import MessageRead

# Room keys are "chat:<chatId>".
ROOM_PREFIX = "chat:"


class SessionEntry(BaseModel):
    """Live binding of one connection to an authenticated user.

    Attributes:
        connectionId: Server-assigned id of the WebSocket.
        userId: Verified user id.
        username: Display name broadcast in presence events.
    """
    connectionId: str = Field(..., description="Server-assigned connection ID")
    userId: str = Field(..., description="Authenticated user ID")
    username: str = Field(default="", description="Display name")


class ReadStatus(str, Enum):
    """Per-viewer status of a message.

    Attributes:
        SENT: No receipt row yet, or the viewer is the sender.
        DELIVERED: Receipt row exists, not read.
        READ: Receipt row exists with readAt set.
    """
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class ReceiptEntry(BaseModel):
    """One recipient's receipt for a message."""
    userId: str
    username: str = ""
    deliveredAt: datetime
    readAt: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: MessageRead) -> "ReceiptEntry":
        return cls(
            userId=row.user_id,
            username=row.username,
            deliveredAt=row.delivered_at,
            readAt=row.read_at,
        )


class ReadReceiptSummary(BaseModel):
    """Receipts of one message plus aggregate counts."""
    messageId: str
    receipts: List[ReceiptEntry] = Field(default_factory=list)
    totalMembers: int = 0
    delivered: int = 0
    read: int = 0


class MessageView(BaseModel):
    """A persisted message as returned to clients, with per-viewer status."""
    id: str
    chatId: str
    senderId: str
    senderName: str = ""
    senderAvatar: Optional[str] = None
    content: Optional[str] = None
    fileUrl: Optional[str] = None
    fileType: Optional[str] = None
    fileName: Optional[str] = None
    createdAt: datetime
    status: ReadStatus = ReadStatus.SENT
