"""DuckDB-backed durable store for users, chats, messages and receipts.

The chat core treats this service as its durable store: every membership
check, message write and receipt reconciliation goes through it. The
service implements the singleton pattern so that one DuckDB connection
exists per process.

Database Schema:
    users          (id, username UNIQUE, email, avatar, created_at)
    chats          (id, is_group, name, created_at)
    chat_members   (chat_id, user_id, joined_at)      PK (chat_id, user_id)
    messages       (id, seq, chat_id, sender_id, content,
                    file_url, file_type, file_name, created_at)
    message_reads  (message_id, user_id, delivered_at, read_at)
                                                      PK (message_id, user_id)

Query methods are declared ``async`` to match the chat core's interface,
but they never yield: each DuckDB call runs to completion on the event
loop thread before the method returns. A method therefore never
interleaves with another handler.

Thread Safety:
    The DuckDB connection is NOT thread-safe. Use one instance per event
    loop.

Usage:
    store = ChatStore.get_instance()
    if await store.is_member(chat_id, user_id):
        message = await store.create_message(chat_id, user_id, content="hi")
"""
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import duckdb

from parley.errors import NotFound, TransientStoreError, ValidationError

from .schemas import Chat, ChatMember, Message, MessageRead, User

logger = logging.getLogger(__name__)

_MESSAGE_COLUMNS = """
    m.id, m.chat_id, m.sender_id, m.content, m.file_url, m.file_type,
    m.file_name, m.created_at, COALESCE(u.username, ''), u.avatar
"""


def utcnow() -> datetime:
    """Naive UTC timestamp, the form DuckDB TIMESTAMP columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return str(uuid.uuid4())


def _row_to_message(row: Sequence) -> Message:
    return Message(
        id=row[0],
        chat_id=row[1],
        sender_id=row[2],
        content=row[3],
        file_url=row[4],
        file_type=row[5],
        file_name=row[6],
        created_at=row[7],
        sender_name=row[8],
        sender_avatar=row[9],
    )


def _row_to_read(row: Sequence) -> MessageRead:
    return MessageRead(
        message_id=row[0],
        user_id=row[1],
        delivered_at=row[2],
        read_at=row[3],
        username=row[4] if len(row) > 4 and row[4] is not None else "",
    )


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    """Translate DuckDB failures into TransientStoreError."""
    try:
        yield
    except duckdb.Error as exc:
        logger.error("[Store] %s failed: %s", operation, exc)
        raise TransientStoreError(f"Store operation failed: {operation}") from exc


class ChatStore:
    """Singleton service over the chat database.

    Attributes:
        _instance: Singleton instance of the service.
        _db_path: Path to the DuckDB database file (``:memory:`` for tests).
    """

    _instance: Optional["ChatStore"] = None
    _db_path: str = "parley.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "ChatStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the connection and forget the singleton (for tests)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create tables if they don't exist (idempotent)."""
        conn = self._get_connection()
        conn.execute("CREATE SEQUENCE IF NOT EXISTS messages_seq START 1")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id VARCHAR PRIMARY KEY,
                username VARCHAR NOT NULL UNIQUE,
                email VARCHAR,
                avatar VARCHAR,
                created_at TIMESTAMP NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS chats (
                id VARCHAR PRIMARY KEY,
                is_group BOOLEAN NOT NULL,
                name VARCHAR,
                created_at TIMESTAMP NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS chat_members (
                chat_id VARCHAR NOT NULL,
                user_id VARCHAR NOT NULL,
                joined_at TIMESTAMP NOT NULL,
                PRIMARY KEY (chat_id, user_id)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id VARCHAR PRIMARY KEY,
                seq BIGINT DEFAULT nextval('messages_seq'),
                chat_id VARCHAR NOT NULL,
                sender_id VARCHAR NOT NULL,
                content VARCHAR,
                file_url VARCHAR,
                file_type VARCHAR,
                file_name VARCHAR,
                created_at TIMESTAMP NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS message_reads (
                message_id VARCHAR NOT NULL,
                user_id VARCHAR NOT NULL,
                delivered_at TIMESTAMP NOT NULL,
                read_at TIMESTAMP,
                PRIMARY KEY (message_id, user_id)
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages(chat_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_members_user ON chat_members(user_id)")

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    # =========================================================================
    # Users
    # =========================================================================

    async def create_user(
        self,
        username: str,
        email: Optional[str] = None,
        avatar: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> User:
        """Register a user profile.

        Raises:
            ValidationError: If the username is empty or already taken.
        """
        username = (username or "").strip()
        if not username:
            raise ValidationError("Username is required")

        conn = self._get_connection()
        with _store_errors("create_user"):
            taken = conn.execute(
                "SELECT 1 FROM users WHERE username = ?", [username]
            ).fetchone()
            if not taken and email:
                taken = conn.execute(
                    "SELECT 1 FROM users WHERE email = ?", [email]
                ).fetchone()
            if taken:
                raise ValidationError("User already exists")

            user = User(
                id=user_id or _new_id(),
                username=username,
                email=email,
                avatar=avatar,
                created_at=utcnow(),
            )
            conn.execute(
                "INSERT INTO users (id, username, email, avatar, created_at) VALUES (?, ?, ?, ?, ?)",
                [user.id, user.username, user.email, user.avatar, user.created_at],
            )
        logger.info("[Store] Registered user %s (%s)", user.username, user.id)
        return user

    async def get_user(self, user_id: str) -> Optional[User]:
        conn = self._get_connection()
        with _store_errors("get_user"):
            row = conn.execute(
                "SELECT id, username, email, avatar, created_at FROM users WHERE id = ?",
                [user_id],
            ).fetchone()
        if not row:
            return None
        return User(id=row[0], username=row[1], email=row[2], avatar=row[3], created_at=row[4])

    async def get_users(self, user_ids: Sequence[str]) -> List[User]:
        """Fetch several users; unknown ids are skipped."""
        if not user_ids:
            return []
        conn = self._get_connection()
        placeholders = ", ".join("?" for _ in user_ids)
        with _store_errors("get_users"):
            rows = conn.execute(
                f"SELECT id, username, email, avatar, created_at FROM users "
                f"WHERE id IN ({placeholders}) ORDER BY username",
                list(user_ids),
            ).fetchall()
        return [
            User(id=r[0], username=r[1], email=r[2], avatar=r[3], created_at=r[4])
            for r in rows
        ]

    async def list_users(self, exclude_id: Optional[str] = None, search: Optional[str] = None) -> List[User]:
        """Users to start a chat with, newest first.

        Args:
            exclude_id: Usually the caller, who is left out of the list.
            search: Case-insensitive substring of username or email.
        """
        clauses, params = [], []
        if exclude_id:
            clauses.append("id <> ?")
            params.append(exclude_id)
        if search:
            clauses.append("(username ILIKE ? OR COALESCE(email, '') ILIKE ?)")
            params.extend([f"%{search}%", f"%{search}%"])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        conn = self._get_connection()
        with _store_errors("list_users"):
            rows = conn.execute(
                f"SELECT id, username, email, avatar, created_at FROM users {where} "
                f"ORDER BY created_at DESC, username",
                params,
            ).fetchall()
        return [
            User(id=r[0], username=r[1], email=r[2], avatar=r[3], created_at=r[4])
            for r in rows
        ]

    # =========================================================================
    # Chats
    # =========================================================================

    def _fetch_members(self, chat_id: str) -> List[ChatMember]:
        rows = self._get_connection().execute(
            """
            SELECT cm.chat_id, cm.user_id, COALESCE(u.username, ''), cm.joined_at
            FROM chat_members cm
            LEFT JOIN users u ON u.id = cm.user_id
            WHERE cm.chat_id = ?
            ORDER BY cm.joined_at, cm.user_id
            """,
            [chat_id],
        ).fetchall()
        return [
            ChatMember(chat_id=r[0], user_id=r[1], username=r[2], joined_at=r[3])
            for r in rows
        ]

    def _fetch_last_message(self, chat_id: str) -> Optional[Message]:
        row = self._get_connection().execute(
            f"""
            SELECT {_MESSAGE_COLUMNS}
            FROM messages m
            LEFT JOIN users u ON u.id = m.sender_id
            WHERE m.chat_id = ?
            ORDER BY m.seq DESC
            LIMIT 1
            """,
            [chat_id],
        ).fetchone()
        return _row_to_message(row) if row else None

    def _fetch_chat(self, chat_id: str, with_last_message: bool = False) -> Optional[Chat]:
        row = self._get_connection().execute(
            "SELECT id, is_group, name, created_at FROM chats WHERE id = ?",
            [chat_id],
        ).fetchone()
        if not row:
            return None
        return Chat(
            id=row[0],
            is_group=row[1],
            name=row[2],
            created_at=row[3],
            members=self._fetch_members(chat_id),
            last_message=self._fetch_last_message(chat_id) if with_last_message else None,
        )

    def _insert_chat(self, is_group: bool, name: Optional[str], member_ids: Sequence[str]) -> str:
        conn = self._get_connection()
        chat_id = _new_id()
        now = utcnow()
        conn.begin()
        try:
            conn.execute(
                "INSERT INTO chats (id, is_group, name, created_at) VALUES (?, ?, ?, ?)",
                [chat_id, is_group, name, now],
            )
            conn.executemany(
                "INSERT INTO chat_members (chat_id, user_id, joined_at) VALUES (?, ?, ?)",
                [[chat_id, uid, now] for uid in member_ids],
            )
            conn.commit()
        except duckdb.Error:
            conn.rollback()
            raise
        return chat_id

    def _missing_users(self, user_ids: Sequence[str]) -> List[str]:
        placeholders = ", ".join("?" for _ in user_ids)
        rows = self._get_connection().execute(
            f"SELECT id FROM users WHERE id IN ({placeholders})",
            list(user_ids),
        ).fetchall()
        found = {r[0] for r in rows}
        return [uid for uid in user_ids if uid not in found]

    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        """Get a chat with its members, or None if absent."""
        with _store_errors("get_chat"):
            return self._fetch_chat(chat_id, with_last_message=True)

    async def create_direct_chat(self, user_id: str, other_user_id: str) -> Tuple[Chat, bool]:
        """Open the direct chat between two users.

        At most one direct chat exists per unordered pair; if it already
        exists it is returned unchanged.

        Returns:
            Tuple of (chat, created).

        Raises:
            ValidationError: If both ids are the same or one is empty.
            NotFound: If the other user does not exist.
        """
        if not other_user_id:
            raise ValidationError("User ID is required")
        if user_id == other_user_id:
            raise ValidationError("Cannot create chat with yourself")

        conn = self._get_connection()
        with _store_errors("create_direct_chat"):
            if self._missing_users([other_user_id]):
                raise NotFound("User not found")

            existing = conn.execute(
                """
                SELECT c.id FROM chats c
                WHERE c.is_group = FALSE
                  AND EXISTS (SELECT 1 FROM chat_members a WHERE a.chat_id = c.id AND a.user_id = ?)
                  AND EXISTS (SELECT 1 FROM chat_members b WHERE b.chat_id = c.id AND b.user_id = ?)
                  AND (SELECT COUNT(*) FROM chat_members n WHERE n.chat_id = c.id) = 2
                LIMIT 1
                """,
                [user_id, other_user_id],
            ).fetchone()
            if existing:
                return self._fetch_chat(existing[0], with_last_message=True), False

            chat_id = self._insert_chat(False, None, [user_id, other_user_id])
            logger.info("[Store] Direct chat %s created for %s and %s", chat_id, user_id, other_user_id)
            return self._fetch_chat(chat_id), True

    async def create_group_chat(self, creator_id: str, name: str, user_ids: Sequence[str]) -> Chat:
        """Create a group chat with the creator plus the given members.

        Raises:
            ValidationError: Empty name, or no member besides the creator.
            NotFound: If any listed user does not exist.
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("Group name is required")
        member_ids = list(dict.fromkeys([creator_id, *[u for u in user_ids if u]]))
        if len(member_ids) < 2:
            raise ValidationError("A group needs at least one member besides the creator")

        with _store_errors("create_group_chat"):
            missing = self._missing_users(member_ids)
            if missing:
                raise NotFound(f"Unknown users: {', '.join(missing)}")
            chat_id = self._insert_chat(True, name, member_ids)
            logger.info("[Store] Group chat %s '%s' created with %d members", chat_id, name, len(member_ids))
            return self._fetch_chat(chat_id)

    async def list_user_chats(self, user_id: str) -> List[Chat]:
        """All chats the user belongs to, newest first, with last message."""
        conn = self._get_connection()
        with _store_errors("list_user_chats"):
            rows = conn.execute(
                """
                SELECT c.id FROM chats c
                JOIN chat_members cm ON cm.chat_id = c.id
                WHERE cm.user_id = ?
                ORDER BY c.created_at DESC
                """,
                [user_id],
            ).fetchall()
            return [self._fetch_chat(r[0], with_last_message=True) for r in rows]

    async def delete_chat(self, chat_id: str) -> bool:
        """Delete a chat with its members, messages and receipts.

        Returns:
            True if the chat existed.
        """
        conn = self._get_connection()
        with _store_errors("delete_chat"):
            if not conn.execute("SELECT 1 FROM chats WHERE id = ?", [chat_id]).fetchone():
                return False
            conn.begin()
            try:
                conn.execute(
                    "DELETE FROM message_reads WHERE message_id IN "
                    "(SELECT id FROM messages WHERE chat_id = ?)",
                    [chat_id],
                )
                conn.execute("DELETE FROM messages WHERE chat_id = ?", [chat_id])
                conn.execute("DELETE FROM chat_members WHERE chat_id = ?", [chat_id])
                conn.execute("DELETE FROM chats WHERE id = ?", [chat_id])
                conn.commit()
            except duckdb.Error:
                conn.rollback()
                raise
        logger.info("[Store] Deleted chat %s", chat_id)
        return True

    async def is_member(self, chat_id: str, user_id: str) -> bool:
        conn = self._get_connection()
        with _store_errors("is_member"):
            row = conn.execute(
                "SELECT 1 FROM chat_members WHERE chat_id = ? AND user_id = ?",
                [chat_id, user_id],
            ).fetchone()
        return row is not None

    async def count_chat_members(self, chat_id: str) -> int:
        conn = self._get_connection()
        with _store_errors("count_chat_members"):
            row = conn.execute(
                "SELECT COUNT(*) FROM chat_members WHERE chat_id = ?", [chat_id]
            ).fetchone()
        return int(row[0])

    # =========================================================================
    # Messages
    # =========================================================================

    async def create_message(
        self,
        chat_id: str,
        sender_id: str,
        content: Optional[str] = None,
        file_url: Optional[str] = None,
        file_type: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> Message:
        """Persist a message and return it with sender display fields.

        Raises:
            NotFound: If the chat no longer exists (e.g. deleted after the
                caller's membership check).
            TransientStoreError: On any database failure.
        """
        conn = self._get_connection()
        message_id = _new_id()
        with _store_errors("create_message"):
            if not conn.execute("SELECT 1 FROM chats WHERE id = ?", [chat_id]).fetchone():
                raise NotFound("Chat not found")
            conn.execute(
                """
                INSERT INTO messages
                (id, chat_id, sender_id, content, file_url, file_type, file_name, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [message_id, chat_id, sender_id, content, file_url, file_type, file_name, utcnow()],
            )
            return self._fetch_message(message_id)

    def _fetch_message(self, message_id: str) -> Optional[Message]:
        row = self._get_connection().execute(
            f"""
            SELECT {_MESSAGE_COLUMNS}
            FROM messages m
            LEFT JOIN users u ON u.id = m.sender_id
            WHERE m.id = ?
            """,
            [message_id],
        ).fetchone()
        return _row_to_message(row) if row else None

    async def get_message(self, message_id: str) -> Optional[Message]:
        with _store_errors("get_message"):
            return self._fetch_message(message_id)

    async def list_messages(self, chat_id: str, limit: int = 50) -> List[Message]:
        """The latest *limit* messages of a chat, oldest first."""
        conn = self._get_connection()
        with _store_errors("list_messages"):
            rows = conn.execute(
                f"""
                SELECT * FROM (
                    SELECT {_MESSAGE_COLUMNS}, m.seq
                    FROM messages m
                    LEFT JOIN users u ON u.id = m.sender_id
                    WHERE m.chat_id = ?
                    ORDER BY m.seq DESC
                    LIMIT ?
                ) ORDER BY seq ASC
                """,
                [chat_id, limit],
            ).fetchall()
        return [_row_to_message(r) for r in rows]

    # =========================================================================
    # Receipts
    # =========================================================================

    async def find_undelivered_messages(self, chat_id: str, user_id: str) -> List[Message]:
        """Messages in the chat sent by others with no receipt row for user."""
        conn = self._get_connection()
        with _store_errors("find_undelivered_messages"):
            rows = conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS}
                FROM messages m
                LEFT JOIN users u ON u.id = m.sender_id
                WHERE m.chat_id = ?
                  AND m.sender_id <> ?
                  AND NOT EXISTS (
                      SELECT 1 FROM message_reads r
                      WHERE r.message_id = m.id AND r.user_id = ?
                  )
                ORDER BY m.seq ASC
                """,
                [chat_id, user_id, user_id],
            ).fetchall()
        return [_row_to_message(r) for r in rows]

    async def create_many_message_reads(
        self,
        message_ids: Sequence[str],
        user_id: str,
        delivered_at: datetime,
        read_at: Optional[datetime] = None,
    ) -> int:
        """Insert one receipt row per message for *user_id*.

        Returns:
            Number of rows created.
        """
        if not message_ids:
            return 0
        conn = self._get_connection()
        with _store_errors("create_many_message_reads"):
            conn.begin()
            try:
                conn.executemany(
                    """
                    INSERT INTO message_reads (message_id, user_id, delivered_at, read_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    [[mid, user_id, delivered_at, read_at] for mid in message_ids],
                )
                conn.commit()
            except duckdb.Error:
                conn.rollback()
                raise
        return len(message_ids)

    async def update_message_reads_read_at(
        self,
        chat_id: str,
        user_id: str,
        read_at: datetime,
        message_ids: Optional[Sequence[str]] = None,
    ) -> int:
        """Stamp ``read_at`` on existing receipt rows of *user_id* in a chat.

        Only rows for messages sent by others are touched; no rows are
        created. ``read_at`` is never cleared.

        Returns:
            Number of rows updated.
        """
        if message_ids is not None and not message_ids:
            return 0

        conn = self._get_connection()
        filters = ""
        params: List = [user_id, chat_id, user_id]
        if message_ids is not None:
            filters = f" AND r.message_id IN ({', '.join('?' for _ in message_ids)})"
            params.extend(message_ids)

        with _store_errors("update_message_reads_read_at"):
            rows = conn.execute(
                f"""
                SELECT r.message_id
                FROM message_reads r
                JOIN messages m ON m.id = r.message_id
                WHERE r.user_id = ? AND m.chat_id = ? AND m.sender_id <> ?{filters}
                """,
                params,
            ).fetchall()
            target_ids = [r[0] for r in rows]
            if not target_ids:
                return 0
            conn.execute(
                f"""
                UPDATE message_reads SET read_at = ?
                WHERE user_id = ? AND message_id IN ({', '.join('?' for _ in target_ids)})
                """,
                [read_at, user_id, *target_ids],
            )
        return len(target_ids)

    async def find_read_receipts(self, message_id: str) -> List[MessageRead]:
        conn = self._get_connection()
        with _store_errors("find_read_receipts"):
            rows = conn.execute(
                """
                SELECT r.message_id, r.user_id, r.delivered_at, r.read_at, u.username
                FROM message_reads r
                LEFT JOIN users u ON u.id = r.user_id
                WHERE r.message_id = ?
                ORDER BY r.delivered_at, r.user_id
                """,
                [message_id],
            ).fetchall()
        return [_row_to_read(r) for r in rows]

    async def find_reads_for_user(self, chat_id: str, user_id: str) -> Dict[str, MessageRead]:
        """Receipt rows of *user_id* in a chat, keyed by message id."""
        conn = self._get_connection()
        with _store_errors("find_reads_for_user"):
            rows = conn.execute(
                """
                SELECT r.message_id, r.user_id, r.delivered_at, r.read_at
                FROM message_reads r
                JOIN messages m ON m.id = r.message_id
                WHERE m.chat_id = ? AND r.user_id = ?
                """,
                [chat_id, user_id],
            ).fetchall()
        return {r[0]: _row_to_read(r) for r in rows}

    async def count_unread(self, chat_id: str, user_id: str) -> int:
        """Messages by others that the user has not read yet."""
        conn = self._get_connection()
        with _store_errors("count_unread"):
            row = conn.execute(
                """
                SELECT COUNT(*)
                FROM messages m
                LEFT JOIN message_reads r ON r.message_id = m.id AND r.user_id = ?
                WHERE m.chat_id = ? AND m.sender_id <> ? AND r.read_at IS NULL
                """,
                [user_id, chat_id, user_id],
            ).fetchone()
        return int(row[0])
