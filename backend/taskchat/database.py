"""DuckDB connection owner for the messaging tables.

The users and messages tables share one database so that message reads can
join sender/receiver display names. The service is a singleton, mirroring the
other DuckDB-backed services: one connection per process.

Database Schema:
    users table:
        - id: Sequence-assigned primary key
        - username: Display name, unique
        - role: 'admin' or 'student'
        - university_id: Optional student number
        - created_at: Row creation time (UTC)

    messages table:
        - id: Sequence-assigned primary key (monotonic)
        - content: Trimmed message text
        - sender_id / receiver_id: users.id of each participant (checked by
          the chat layer before insert)
        - is_read: False until the receiver marks it read
        - created_at: Assigned once at insert time (UTC)

Thread Safety:
    A DuckDB connection must not be used from two threads at once. Every
    statement goes through ``fetchone``/``fetchall`` (or ``locked``), which hold
    a lock, so callers may run them from a worker thread pool.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Sequence

import duckdb

logger = logging.getLogger(__name__)

_SCHEMA = [
    "CREATE SEQUENCE IF NOT EXISTS users_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS users (
        id            INTEGER DEFAULT nextval('users_seq') PRIMARY KEY,
        username      VARCHAR NOT NULL UNIQUE,
        role          VARCHAR NOT NULL,
        university_id VARCHAR,
        created_at    TIMESTAMP NOT NULL
    )
    """,
    "CREATE SEQUENCE IF NOT EXISTS messages_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS messages (
        id          INTEGER DEFAULT nextval('messages_seq') PRIMARY KEY,
        content     VARCHAR NOT NULL,
        sender_id   INTEGER NOT NULL,
        receiver_id INTEGER NOT NULL,
        is_read     BOOLEAN NOT NULL DEFAULT FALSE,
        created_at  TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_pair ON messages(sender_id, receiver_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_receiver ON messages(receiver_id)",
]


class Database:
    """Singleton wrapper around the DuckDB connection.

    Attributes:
        _instance: Singleton instance of the database.
        _default_path: Database file used when no path is given.
    """

    _instance: Optional["Database"] = None
    _default_path: str = "taskchat.duckdb"

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path or self._default_path
        self._lock = threading.Lock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize()
        logger.info("[Database] Initialized with db=%s", self.path)

    @classmethod
    def get_instance(cls, path: Optional[str] = None) -> "Database":
        """Get or create the singleton instance.

        Args:
            path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the connection and forget the singleton (tests)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self.path)
        return self._connection

    def _initialize(self) -> None:
        with self._lock:
            conn = self._get_connection()
            for statement in _SCHEMA:
                conn.execute(statement)

    @contextmanager
    def locked(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Hold the connection for several statements (or a clock read plus one)."""
        with self._lock:
            yield self._get_connection()

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[tuple]:
        with self._lock:
            return self._get_connection().execute(sql, list(params)).fetchone()

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[tuple]:
        with self._lock:
            return self._get_connection().execute(sql, list(params)).fetchall()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
