"""DuckDB-backed chat and message storage.

This is the persistence collaborator of the realtime core: the socket layer is
an optimization on top of it, never the source of truth. The service follows
the singleton pattern so the HTTP routes, the event router and the upload
service share one connection.

Database Schema:
    users: id, username (display identity cache, refreshed on every
        authenticated request)
    chats: id, kind, name, created_by, created_at, member_key
        (member_key is the sorted member pair for direct chats)
    chat_members: (chat_id, user_id) primary key, joined_at, read pointer
        (last_read_message_id, last_read_at), is_active
    messages: id (client-minted), chat_id, sender_id, sender_username,
        content, images (JSON array), sent_at, is_edited, is_deleted

Ordering:
    Message history is ordered by (sent_at, id). Pages are read newest first
    with a (sent_at, id) cursor, so traversal is strictly decreasing and
    deterministic even when timestamps collide.

Thread Safety:
    The DuckDB connection is NOT thread-safe. The store is meant to be used
    from the single asyncio event loop that serves HTTP and WebSocket traffic.

Usage:
    store = ChatStore.get_instance()
    chat, existing = store.create_chat("alice", ["bob"])
    page = store.get_chat_messages(chat.id, limit=20)
"""
import json
import logging
import time
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

import duckdb

from bubbles.errors import ConflictError, NotFoundError, ValidationError

from .schemas import (
    Chat,
    ChatKind,
    ChatMember,
    ChatSummary,
    Cursor,
    Message,
    MessagePage,
    ReadReceipt,
)

logger = logging.getLogger(__name__)

_MESSAGE_COLUMNS = (
    "id, chat_id, sender_id, sender_username, content, images, "
    "sent_at, is_edited, is_deleted"
)


def _row_to_message(row) -> Message:
    return Message(
        id=row[0],
        chat_id=row[1],
        sender_id=row[2],
        sender_username=row[3] or "",
        content=row[4],
        images=json.loads(row[5]) if row[5] else [],
        sent_at=row[6],
        is_edited=bool(row[7]),
        is_deleted=bool(row[8]),
    )


def direct_member_key(member_ids: Iterable[str]) -> str:
    """Key identifying an unordered member pair."""
    return "|".join(sorted(member_ids))


class ChatStore:
    """Singleton store for chats, memberships, messages and read pointers.

    Attributes:
        _instance: Singleton instance of the store.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["ChatStore"] = None
    _db_path: str = "bubbles.duckdb"

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
        """Close the connection and drop the singleton (for testing)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            if self._db_path != ":memory:":
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create tables if they don't exist. Safe to call multiple times."""
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id VARCHAR PRIMARY KEY,
                username VARCHAR NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS chats (
                id VARCHAR PRIMARY KEY,
                kind VARCHAR NOT NULL,
                name VARCHAR,
                created_by VARCHAR NOT NULL,
                created_at DOUBLE NOT NULL,
                member_key VARCHAR
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS chat_members (
                chat_id VARCHAR NOT NULL,
                user_id VARCHAR NOT NULL,
                joined_at DOUBLE NOT NULL,
                last_read_message_id VARCHAR,
                last_read_at DOUBLE,
                is_active BOOLEAN NOT NULL DEFAULT TRUE,
                PRIMARY KEY (chat_id, user_id)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id VARCHAR PRIMARY KEY,
                chat_id VARCHAR NOT NULL,
                sender_id VARCHAR NOT NULL,
                sender_username VARCHAR,
                content VARCHAR,
                images VARCHAR,
                sent_at DOUBLE NOT NULL,
                is_edited BOOLEAN NOT NULL DEFAULT FALSE,
                is_deleted BOOLEAN NOT NULL DEFAULT FALSE
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_messages_chat_sent ON messages(chat_id, sent_at)
        """)

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    # =========================================================================
    # Users
    # =========================================================================

    def remember_user(self, user_id: str, username: str) -> None:
        """Cache the display identity of an authenticated user."""
        conn = self._get_connection()
        existing = conn.execute(
            "SELECT username FROM users WHERE id = ?", [user_id]
        ).fetchone()
        if existing is None:
            conn.execute("INSERT INTO users (id, username) VALUES (?, ?)", [user_id, username])
        elif existing[0] != username:
            conn.execute("UPDATE users SET username = ? WHERE id = ?", [username, user_id])

    # =========================================================================
    # Chats and membership
    # =========================================================================

    def create_chat(
        self,
        creator_id: str,
        member_ids: List[str],
        name: Optional[str] = None,
    ) -> Tuple[Chat, bool]:
        """Create a chat, or return the existing direct chat for the pair.

        Args:
            creator_id: User creating the chat (always a member).
            member_ids: Other members; duplicates are ignored.
            name: Group name. Required for groups, ignored for direct chats.

        Returns:
            Tuple of (chat, existing) where existing is True when a direct
            chat for the same unordered pair already existed.

        Raises:
            ValidationError: Fewer than two distinct members, or a group
                without a name.
        """
        unique_ids = sorted(set(member_ids) | {creator_id})
        if len(unique_ids) < 2:
            raise ValidationError("At least two unique members are required")

        conn = self._get_connection()
        now = time.time()

        if len(unique_ids) == 2:
            key = direct_member_key(unique_ids)
            row = conn.execute(
                "SELECT id FROM chats WHERE kind = ? AND member_key = ?",
                [ChatKind.DIRECT.value, key],
            ).fetchone()
            if row is not None:
                chat_id = row[0]
                # A member who left a direct chat is brought back by new activity
                conn.execute(
                    "UPDATE chat_members SET is_active = TRUE WHERE chat_id = ? AND is_active = FALSE",
                    [chat_id],
                )
                logger.info(f"[Store] Reusing direct chat {chat_id} for {key}")
                return self.get_chat(chat_id), True
            kind, chat_name, member_key = ChatKind.DIRECT, None, key
        else:
            chat_name = (name or "").strip()
            if not chat_name:
                raise ValidationError("Group chats require a name")
            kind, member_key = ChatKind.GROUP, None

        chat = Chat(kind=kind, name=chat_name, created_by=creator_id, created_at=now)
        conn.execute("BEGIN TRANSACTION")
        try:
            conn.execute(
                """
                INSERT INTO chats (id, kind, name, created_by, created_at, member_key)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [chat.id, kind.value, chat_name, creator_id, now, member_key],
            )
            for user_id in unique_ids:
                conn.execute(
                    "INSERT INTO chat_members (chat_id, user_id, joined_at) VALUES (?, ?, ?)",
                    [chat.id, user_id, now],
                )
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise

        logger.info(f"[Store] Created {kind.value} chat {chat.id} with {len(unique_ids)} members")
        return self.get_chat(chat.id), False

    def get_chat(self, chat_id: str) -> Chat:
        """Load a chat with its members.

        Raises:
            NotFoundError: If the chat doesn't exist.
        """
        conn = self._get_connection()
        row = conn.execute(
            "SELECT id, kind, name, created_by, created_at FROM chats WHERE id = ?",
            [chat_id],
        ).fetchone()
        if row is None:
            raise NotFoundError("Chat not found")
        return Chat(
            id=row[0],
            kind=ChatKind(row[1]),
            name=row[2],
            created_by=row[3],
            created_at=row[4],
            members=self.get_chat_members(chat_id),
        )

    def get_chat_members(self, chat_id: str) -> List[ChatMember]:
        """All members of a chat, including those who left."""
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT m.chat_id, m.user_id, COALESCE(u.username, ''), m.joined_at,
                   m.last_read_message_id, m.last_read_at, m.is_active
            FROM chat_members m
            LEFT JOIN users u ON u.id = m.user_id
            WHERE m.chat_id = ?
            ORDER BY m.joined_at, m.user_id
            """,
            [chat_id],
        ).fetchall()
        return [
            ChatMember(
                chat_id=r[0],
                user_id=r[1],
                username=r[2],
                joined_at=r[3],
                last_read_message_id=r[4],
                last_read_at=r[5],
                is_active=bool(r[6]),
            )
            for r in rows
        ]

    def get_active_member_ids(self, chat_id: str) -> List[str]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT user_id FROM chat_members WHERE chat_id = ? AND is_active ORDER BY user_id",
            [chat_id],
        ).fetchall()
        return [r[0] for r in rows]

    def is_member(self, chat_id: str, user_id: str) -> bool:
        """True if the user is an active member of the chat."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT 1 FROM chat_members WHERE chat_id = ? AND user_id = ? AND is_active",
            [chat_id, user_id],
        ).fetchone()
        return row is not None

    def get_user_chats(self, user_id: str) -> List[ChatSummary]:
        """Chats the user is an active member of, most recent activity first."""
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT c.id,
                   GREATEST(c.created_at, COALESCE(MAX(msg.sent_at), c.created_at)) AS activity
            FROM chats c
            JOIN chat_members m ON m.chat_id = c.id AND m.user_id = ? AND m.is_active
            LEFT JOIN messages msg ON msg.chat_id = c.id
            GROUP BY c.id, c.created_at
            ORDER BY activity DESC, c.id
            """,
            [user_id],
        ).fetchall()

        summaries = []
        for chat_id, _ in rows:
            latest = self.get_chat_messages(chat_id, limit=1)
            summaries.append(ChatSummary(
                chat=self.get_chat(chat_id),
                last_message=latest.items[0] if latest.items else None,
            ))
        return summaries

    def leave_chat(self, chat_id: str, user_id: str) -> Tuple[bool, List[str]]:
        """Mark a member as having left.

        When no active member remains the chat is hard-deleted together with
        its messages.

        Returns:
            Tuple of (fully_deleted, image_urls) where image_urls lists the
            attachments of deleted messages so the caller can remove the files.
        """
        conn = self._get_connection()
        conn.execute(
            "UPDATE chat_members SET is_active = FALSE WHERE chat_id = ? AND user_id = ?",
            [chat_id, user_id],
        )
        if self.get_active_member_ids(chat_id):
            logger.info(f"[Store] User {user_id} left chat {chat_id}")
            return False, []

        rows = conn.execute(
            "SELECT images FROM messages WHERE chat_id = ?", [chat_id]
        ).fetchall()
        image_urls = [url for (images,) in rows if images for url in json.loads(images)]

        conn.execute("DELETE FROM messages WHERE chat_id = ?", [chat_id])
        conn.execute("DELETE FROM chat_members WHERE chat_id = ?", [chat_id])
        conn.execute("DELETE FROM chats WHERE id = ?", [chat_id])
        logger.info(f"[Store] Chat {chat_id} deleted after last member left")
        return True, image_urls

    # =========================================================================
    # Messages
    # =========================================================================

    def create_message(
        self,
        message_id: str,
        chat_id: str,
        sender_id: str,
        sender_username: str,
        content: Optional[str],
        image_urls: List[str],
        sent_at: Optional[float] = None,
    ) -> Message:
        """Persist a new message under its client-minted id.

        A retry of the same id by the same sender in the same chat returns the
        stored message instead of inserting twice.

        Raises:
            ConflictError: If the id is already used by another message.
        """
        existing = self.find_message(message_id)
        if existing is not None:
            if existing.sender_id == sender_id and existing.chat_id == chat_id:
                return existing
            raise ConflictError(f"Message id {message_id} is already taken")

        message = Message(
            id=message_id,
            chat_id=chat_id,
            sender_id=sender_id,
            sender_username=sender_username,
            content=content,
            images=list(image_urls),
            sent_at=sent_at if sent_at is not None else time.time(),
        )
        conn = self._get_connection()
        conn.execute(
            f"""
            INSERT INTO messages ({_MESSAGE_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                message.id,
                message.chat_id,
                message.sender_id,
                message.sender_username,
                message.content,
                json.dumps(message.images),
                message.sent_at,
                False,
                False,
            ],
        )
        return message

    def find_message(self, message_id: str) -> Optional[Message]:
        conn = self._get_connection()
        row = conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?", [message_id]
        ).fetchone()
        return _row_to_message(row) if row else None

    def get_message(self, message_id: str) -> Message:
        """Raises NotFoundError if the message doesn't exist."""
        message = self.find_message(message_id)
        if message is None:
            raise NotFoundError("Message not found")
        return message

    def edit_message(
        self, message_id: str, content: Optional[str], image_urls: List[str]
    ) -> Message:
        """Replace content and attachments; sent_at is left untouched."""
        self.get_message(message_id)
        conn = self._get_connection()
        conn.execute(
            "UPDATE messages SET content = ?, images = ?, is_edited = TRUE WHERE id = ?",
            [content, json.dumps(list(image_urls)), message_id],
        )
        return self.get_message(message_id)

    def soft_delete_message(self, message_id: str) -> Message:
        """Clear content and attachments and flag the message as deleted."""
        self.get_message(message_id)
        conn = self._get_connection()
        conn.execute(
            "UPDATE messages SET content = NULL, images = '[]', is_deleted = TRUE WHERE id = ?",
            [message_id],
        )
        return self.get_message(message_id)

    def get_chat_messages(
        self, chat_id: str, limit: int, cursor: Optional[Cursor] = None
    ) -> MessagePage:
        """Read one page of history, newest first.

        Args:
            chat_id: The chat to read.
            limit: Page size.
            cursor: (sent_at, id) of the oldest message already seen. Only
                strictly older messages are returned.

        Returns:
            MessagePage whose next_cursor points at the oldest returned item
            when more history exists.
        """
        conn = self._get_connection()
        if cursor is None:
            rows = conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages
                WHERE chat_id = ?
                ORDER BY sent_at DESC, id DESC
                LIMIT ?
                """,
                [chat_id, limit + 1],
            ).fetchall()
        else:
            rows = conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages
                WHERE chat_id = ?
                  AND (sent_at < ? OR (sent_at = ? AND id < ?))
                ORDER BY sent_at DESC, id DESC
                LIMIT ?
                """,
                [chat_id, cursor.sent_at, cursor.sent_at, cursor.id, limit + 1],
            ).fetchall()

        # One extra row tells us whether there is more history
        has_more = len(rows) > limit
        items = [_row_to_message(r) for r in rows[:limit]]
        next_cursor = items[-1].position if has_more and items else None
        return MessagePage(items=items, next_cursor=next_cursor, has_more=has_more)

    # =========================================================================
    # Read pointers
    # =========================================================================

    def set_last_read(
        self, chat_id: str, user_id: str, message_id: str
    ) -> Tuple[ReadReceipt, bool]:
        """Advance a member's read pointer; never moves it backwards.

        Returns:
            Tuple of (receipt, advanced). The receipt is the pointer after the
            call; advanced is False when the message was not after the
            existing pointer.

        Raises:
            NotFoundError: If the message is not in this chat.
        """
        message = self.get_message(message_id)
        if message.chat_id != chat_id:
            raise NotFoundError("Message not found in this chat")

        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT last_read_message_id, last_read_at FROM chat_members
            WHERE chat_id = ? AND user_id = ?
            """,
            [chat_id, user_id],
        ).fetchone()
        if row is None:
            raise NotFoundError("Chat member not found")

        if row[0] is not None and (message.sent_at, message.id) <= (row[1], row[0]):
            return ReadReceipt(
                chat_id=chat_id,
                user_id=user_id,
                last_read_message_id=row[0],
                last_read_at=row[1],
            ), False

        conn.execute(
            """
            UPDATE chat_members SET last_read_message_id = ?, last_read_at = ?
            WHERE chat_id = ? AND user_id = ?
            """,
            [message.id, message.sent_at, chat_id, user_id],
        )
        return ReadReceipt(
            chat_id=chat_id,
            user_id=user_id,
            last_read_message_id=message.id,
            last_read_at=message.sent_at,
        ), True

    def get_read_receipts(self, chat_id: str) -> List[ReadReceipt]:
        """Read pointers of every active member who has read something."""
        return [
            ReadReceipt(
                chat_id=chat_id,
                user_id=m.user_id,
                last_read_message_id=m.last_read_message_id,
                last_read_at=m.last_read_at,
            )
            for m in self.get_chat_members(chat_id)
            if m.is_active and m.last_read_message_id is not None
        ]
