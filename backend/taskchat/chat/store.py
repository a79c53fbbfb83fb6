"""MessageStore: DuckDB-backed direct messages.

Every message is one row, appended by a single INSERT ... RETURNING. The
store assigns ``id`` (sequence) and ``created_at`` (server clock, UTC); the
only later mutation is ``is_read`` going from false to true, and only at the
receiver's request.

Reads join the users table for display names (LEFT JOIN so a message whose
participant row disappeared still reads back).

Usage:
    store = MessageStore(Database.get_instance())
    message = store.insert(sender_id=5, receiver_id=9, content="hi")
    history = store.conversation(5, 9)
"""
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import duckdb

from taskchat.database import Database

from .schemas import Message, MessageThread

logger = logging.getLogger(__name__)

_SELECT = """
    SELECT m.id, m.content, m.sender_id, m.receiver_id, m.is_read, m.created_at,
           s.username AS sender_name, r.username AS receiver_name
    FROM messages m
    LEFT JOIN users s ON m.sender_id = s.id
    LEFT JOIN users r ON m.receiver_id = r.id
"""


class MessageStoreError(Exception):
    """The store could not complete an operation (unavailable, constraint...)."""


class MessageNotFound(Exception):
    """No message with the requested id."""


class ReadNotPermitted(Exception):
    """Someone other than the receiver tried to mark a message read."""


class MessageStore:
    """Parameterized SQL access to the messages table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def insert(self, sender_id: int, receiver_id: int, content: str) -> Message:
        """Append one message and read it back with display names.

        Raises:
            MessageStoreError: If the insert or the read-back fails.
        """
        try:
            # Clock read and insert under one lock: id order == created_at order
            with self._db.locked() as conn:
                created_at = datetime.now(timezone.utc).replace(tzinfo=None)
                row = conn.execute(
                    """
                    INSERT INTO messages (content, sender_id, receiver_id, is_read, created_at)
                    VALUES (?, ?, ?, FALSE, ?)
                    RETURNING id
                    """,
                    [content, sender_id, receiver_id, created_at],
                ).fetchone()
            message = self.get(row[0]) if row else None
        except duckdb.Error as e:
            logger.error(f"[Store] Insert failed for {sender_id}->{receiver_id}: {e}")
            raise MessageStoreError(str(e)) from e

        if message is None:
            raise MessageStoreError("Failed to retrieve created message")
        logger.debug(f"[Store] Saved message {message.id} ({sender_id}->{receiver_id})")
        return message

    def mark_read(self, message_id: int, actor_id: int) -> Tuple[Message, bool]:
        """Mark a message read on behalf of its receiver.

        Returns:
            The message (isRead=True) and whether this call flipped it. Of
            several concurrent calls for one unread message exactly one
            reports a change, since the UPDATE only matches unread rows.

        Raises:
            MessageNotFound: Unknown id.
            ReadNotPermitted: ``actor_id`` is not the receiver.
            MessageStoreError: On storage failure.
        """
        message = self.get(message_id)
        if message is None:
            raise MessageNotFound(message_id)
        if message.receiverId != actor_id:
            raise ReadNotPermitted(message_id)

        row = self._fetchone(
            """
            UPDATE messages SET is_read = TRUE
            WHERE id = ? AND receiver_id = ? AND is_read = FALSE
            RETURNING id
            """,
            [message_id, actor_id],
        )
        return message.model_copy(update={"isRead": True}), row is not None

    def mark_all_read(self, sender_id: int, receiver_id: int) -> List[Message]:
        """Mark every unread message from ``sender_id`` to ``receiver_id`` read.

        Returns:
            The messages this call changed, oldest first.
        """
        rows = self._fetchall(
            """
            UPDATE messages SET is_read = TRUE
            WHERE sender_id = ? AND receiver_id = ? AND is_read = FALSE
            RETURNING id
            """,
            [sender_id, receiver_id],
        )
        if not rows:
            return []
        ids = [r[0] for r in rows]
        placeholders = ", ".join("?" for _ in ids)
        return self._query(
            _SELECT + f" WHERE m.id IN ({placeholders}) ORDER BY m.created_at ASC, m.id ASC",
            ids,
        )

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def get(self, message_id: int) -> Optional[Message]:
        rows = self._query(_SELECT + " WHERE m.id = ?", [message_id])
        return rows[0] if rows else None

    def conversation(self, user_a: int, user_b: int) -> List[Message]:
        """All messages between two users, oldest first."""
        return self._query(
            _SELECT + """
            WHERE (m.sender_id = ? AND m.receiver_id = ?)
               OR (m.sender_id = ? AND m.receiver_id = ?)
            ORDER BY m.created_at ASC, m.id ASC
            """,
            [user_a, user_b, user_b, user_a],
        )

    def unread_count(self, user_id: int) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) FROM messages WHERE receiver_id = ? AND is_read = FALSE",
            [user_id],
        )
        return int(row[0]) if row else 0

    def threads(self, user_id: int) -> List[MessageThread]:
        """One entry per counterpart, most recent conversation first."""
        messages = self._query(
            _SELECT + """
            WHERE m.sender_id = ? OR m.receiver_id = ?
            ORDER BY m.created_at DESC, m.id DESC
            """,
            [user_id, user_id],
        )

        threads: Dict[int, MessageThread] = {}
        for message in messages:
            outgoing = message.senderId == user_id
            other_id = message.receiverId if outgoing else message.senderId
            thread = threads.get(other_id)
            if thread is None:
                thread = MessageThread(
                    userId=other_id,
                    username=message.receiverName if outgoing else message.senderName,
                    lastMessage=message,
                )
                threads[other_id] = thread
            if not outgoing and not message.isRead:
                thread.unreadCount += 1
        # dict preserves first-seen order, i.e. newest last message first
        return list(threads.values())

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    def _query(self, sql: str, params: list) -> List[Message]:
        try:
            rows = self._db.fetchall(sql, params)
        except duckdb.Error as e:
            raise MessageStoreError(str(e)) from e
        return [self._row_to_message(r) for r in rows]

    def _fetchone(self, sql: str, params: list) -> Optional[tuple]:
        try:
            return self._db.fetchone(sql, params)
        except duckdb.Error as e:
            raise MessageStoreError(str(e)) from e

    def _fetchall(self, sql: str, params: list) -> List[tuple]:
        try:
            return self._db.fetchall(sql, params)
        except duckdb.Error as e:
            raise MessageStoreError(str(e)) from e

    @staticmethod
    def _row_to_message(row: tuple) -> Message:
        return Message(
            id=row[0],
            content=row[1],
            senderId=row[2],
            receiverId=row[3],
            isRead=bool(row[4]),
            # TIMESTAMP columns come back naive; they are stored as UTC
            createdAt=row[5].replace(tzinfo=timezone.utc),
            senderName=row[6],
            receiverName=row[7],
        )
