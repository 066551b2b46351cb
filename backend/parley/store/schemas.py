"""Pydantic schemas for the durable chat store.

These models mirror the DuckDB tables managed by :class:`ChatStore`:

    users          - registered user profiles
    chats          - direct and group conversations
    chat_members   - (chat, user) membership rows
    messages       - immutable text or attachment messages
    message_reads  - per-(message, recipient) delivery/read timestamps

Request bodies for the REST surface live here too.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class User(BaseModel):
    """A registered user profile."""
    id: str = Field(..., description="User ID")
    username: str = Field(..., description="Unique display handle")
    email: Optional[str] = Field(None, description="Contact email")
    avatar: Optional[str] = Field(None, description="Avatar URL")
    created_at: datetime = Field(..., description="Registration time (UTC)")


class ChatMember(BaseModel):
    """Durable record asserting a user belongs to a chat."""
    chat_id: str
    user_id: str
    username: str = ""
    joined_at: datetime


class Message(BaseModel):
    """A persisted chat message.

    Exactly one of ``content`` or the file triple (``file_url``,
    ``file_type``, ``file_name``) is set. ``sender_name`` and
    ``sender_avatar`` are joined in from the users table on read.
    """
    id: str
    chat_id: str
    sender_id: str
    content: Optional[str] = None
    file_url: Optional[str] = None
    file_type: Optional[str] = None
    file_name: Optional[str] = None
    created_at: datetime
    sender_name: str = ""
    sender_avatar: Optional[str] = None

    @property
    def is_attachment(self) -> bool:
        return self.file_url is not None


class MessageRead(BaseModel):
    """Delivery/read timestamps of one message for one recipient."""
    message_id: str
    user_id: str
    delivered_at: datetime
    read_at: Optional[datetime] = None
    username: str = ""


class Chat(BaseModel):
    """A conversation with its members and, optionally, its latest message."""
    id: str
    is_group: bool
    name: Optional[str] = None
    created_at: datetime
    members: List[ChatMember] = Field(default_factory=list)
    last_message: Optional[Message] = None

    @property
    def member_ids(self) -> List[str]:
        return [m.user_id for m in self.members]


# =============================================================================
# Request Models
# =============================================================================


class UserCreate(BaseModel):
    """Request body for registering a user profile."""
    username: str = Field(..., min_length=1, max_length=64)
    email: Optional[str] = Field(None, max_length=254)
    avatar: Optional[str] = None


class DirectChatCreate(BaseModel):
    """Request body for opening a direct chat with another user."""
    userId: str = Field(..., min_length=1, description="The other participant")


class GroupChatCreate(BaseModel):
    """Request body for creating a group chat."""
    name: str = Field(..., min_length=1, max_length=120)
    userIds: List[str] = Field(..., min_length=1, description="Members besides the creator")


class TextMessageCreate(BaseModel):
    """Request body for posting a text message over REST."""
    content: str = Field(..., description="Message text")


class MarkReadRequest(BaseModel):
    """Request body for marking messages read. No ids means all delivered."""
    messageIds: Optional[List[str]] = None

    @model_validator(mode="after")
    def _drop_blank_ids(self) -> "MarkReadRequest":
        if self.messageIds is not None:
            self.messageIds = [m for m in self.messageIds if m]
        return self
