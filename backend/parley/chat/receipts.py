"""Receipt reconciliation between live clients and the MessageRead ledger.

Derived status per (message, viewer):

    sent       no receipt row, or the viewer is the sender
    delivered  receipt row exists, readAt is null
    read       receipt row exists, readAt is set

``mark_delivered`` creates rows, ``mark_read`` only stamps rows that already
exist, and readAt is never cleared, so a viewer's status only moves forward.

By default ``mark_delivered`` stamps readAt together with deliveredAt. This
collapses "delivered" into "read" for everyone who opens the chat; pass
``conflate_read_on_delivery=False`` for a real delivered-but-unread state.
"""
import logging
from typing import Dict, List, Optional, Sequence

from parley.errors import AccessDenied, NotFound
from parley.store.schemas import Message, MessageRead
from parley.store.service import ChatStore, utcnow

from .pipeline import to_view
from .schemas import MessageView, ReadReceiptSummary, ReadStatus, ReceiptEntry

logger = logging.getLogger(__name__)


def status_of(message: Message, viewer_id: str, receipt: Optional[MessageRead]) -> ReadStatus:
    """Derive the read status of a message for one viewer.

    Args:
        message: The message.
        viewer_id: Who is looking at it.
        receipt: The viewer's receipt row for the message, if any.
    """
    if message.sender_id == viewer_id or receipt is None:
        return ReadStatus.SENT
    if receipt.read_at is None:
        return ReadStatus.DELIVERED
    return ReadStatus.READ


class ReceiptService:
    """Delivery/read bookkeeping for chat members."""

    def __init__(self, store: ChatStore, conflate_read_on_delivery: bool = True) -> None:
        self._store = store
        self.conflate_read_on_delivery = conflate_read_on_delivery

    async def _require_member(self, user_id: str, chat_id: str) -> None:
        if await self._store.is_member(chat_id, user_id):
            return
        if await self._store.get_chat(chat_id) is None:
            raise NotFound("Chat not found")
        raise AccessDenied("Access denied")

    async def mark_delivered(self, user_id: str, chat_id: str) -> int:
        """Create receipt rows for every message of others not yet delivered.

        Returns:
            Number of rows created (zero is a normal outcome).
        """
        await self._require_member(user_id, chat_id)

        pending = await self._store.find_undelivered_messages(chat_id, user_id)
        if not pending:
            return 0

        now = utcnow()
        created = await self._store.create_many_message_reads(
            [m.id for m in pending],
            user_id,
            delivered_at=now,
            read_at=now if self.conflate_read_on_delivery else None,
        )
        logger.info("[Core] %d message(s) delivered to %s in chat %s", created, user_id, chat_id)
        return created

    async def mark_read(
        self, user_id: str, chat_id: str, message_ids: Optional[Sequence[str]] = None
    ) -> int:
        """Stamp readAt on delivered messages of others.

        Args:
            user_id: The reader.
            chat_id: Chat the messages belong to.
            message_ids: Restrict to these messages; None means all delivered.

        Returns:
            Number of rows updated. Messages without a receipt row are
            skipped (read requires prior delivery).
        """
        await self._require_member(user_id, chat_id)
        updated = await self._store.update_message_reads_read_at(
            chat_id,
            user_id,
            read_at=utcnow(),
            message_ids=list(message_ids) if message_ids is not None else None,
        )
        logger.info("[Core] %d message(s) read by %s in chat %s", updated, user_id, chat_id)
        return updated

    async def read_receipts_for(self, message_id: str, requester_id: str) -> ReadReceiptSummary:
        """Receipts of one message, for a member of its chat.

        Raises:
            NotFound: The message does not exist.
            AccessDenied: The requester is not a member of the message's chat.
        """
        message = await self._store.get_message(message_id)
        if message is None:
            raise NotFound("Message not found")
        if not await self._store.is_member(message.chat_id, requester_id):
            raise AccessDenied("Access denied")

        rows = await self._store.find_read_receipts(message_id)
        total = await self._store.count_chat_members(message.chat_id)
        return ReadReceiptSummary(
            messageId=message_id,
            receipts=[ReceiptEntry.from_row(r) for r in rows],
            totalMembers=total,
            delivered=len(rows),
            read=sum(1 for r in rows if r.read_at is not None),
        )

    async def unread_count(self, user_id: str, chat_id: str) -> int:
        await self._require_member(user_id, chat_id)
        return await self._store.count_unread(chat_id, user_id)

    async def history_for(self, user_id: str, chat_id: str, limit: int) -> List[MessageView]:
        """Latest messages of a chat with the viewer's status on each."""
        await self._require_member(user_id, chat_id)
        messages = await self._store.list_messages(chat_id, limit)
        reads: Dict[str, MessageRead] = await self._store.find_reads_for_user(chat_id, user_id)
        return [to_view(m, status_of(m, user_id, reads.get(m.id))) for m in messages]
