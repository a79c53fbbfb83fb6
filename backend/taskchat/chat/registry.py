"""Connection registry for direct-message delivery.

Maps an authenticated user id to the set of that user's live socket
connections (one per open tab/device) and delivers events to them.

Key features:
    - Multiple sessions per user, all receiving the same pushes
    - Concurrent delivery with asyncio.gather()
    - Automatic dead connection cleanup (a failed send deregisters)
    - Serialized sends per connection so pushes and acks never interleave

Thread Safety:
    Designed for a single event loop. Mutations of the map happen under an
    asyncio.Lock; delivery works on a snapshot taken under the lock, so a
    connection closing mid-push is simply pruned.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from taskchat.auth.schemas import Identity

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Lifecycle of a channel connection.

    CONNECTING -> OPEN -> CLOSED on the happy path; CONNECTING -> REJECTED
    when the handshake credential is missing or invalid.
    """
    CONNECTING = "connecting"
    OPEN = "open"
    REJECTED = "rejected"
    CLOSED = "closed"


@dataclass(eq=False)
class ChannelConnection:
    """One live socket plus the identity bound to it at handshake.

    Attributes:
        transport: Object with an async ``send_json`` (a FastAPI WebSocket).
        identity: Authenticated identity, set when the handshake succeeds.
        state: Current lifecycle state.
        joined_at: Unix time the connection was registered.
    """
    transport: Any
    identity: Optional[Identity] = None
    state: ConnectionState = ConnectionState.CONNECTING
    joined_at: float = field(default_factory=time.time)
    _send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    async def send(self, event: dict) -> None:
        async with self._send_lock:
            await self.transport.send_json(event)


class ConnectionRegistry:
    """Owns the user id -> connections map; the map itself is never exposed."""

    def __init__(self) -> None:
        # user id -> set of live connections
        self._connections: Dict[int, Set[ChannelConnection]] = {}
        self._lock = asyncio.Lock()

    async def register(self, connection: ChannelConnection) -> None:
        """Add a connection under its identity. Idempotent per connection."""
        if connection.identity is None:
            raise ValueError("Cannot register a connection without an identity")
        user_id = connection.identity.id
        async with self._lock:
            self._connections.setdefault(user_id, set()).add(connection)
            count = len(self._connections[user_id])
        logger.info(f"[Registry] User {user_id} registered ({count} session(s))")

    async def deregister(self, connection: ChannelConnection) -> bool:
        """Remove a connection. Returns False if it was not registered."""
        async with self._lock:
            return self._discard(connection)

    def _discard(self, connection: ChannelConnection) -> bool:
        if connection.identity is None:
            return False
        user_id = connection.identity.id
        sessions = self._connections.get(user_id)
        if not sessions or connection not in sessions:
            return False
        sessions.discard(connection)
        if not sessions:
            del self._connections[user_id]
        logger.debug(f"[Registry] User {user_id} session removed")
        return True

    async def push(self, user_id: int, event: dict) -> int:
        """Deliver ``event`` to every live connection of ``user_id``.

        Returns:
            Number of connections that accepted the event.
        """
        return await self.push_many([user_id], event)

    async def push_many(self, user_ids: Iterable[int], event: dict) -> int:
        """Deliver ``event`` once to each connection of any of ``user_ids``.

        A connection that fails to accept delivery is treated as dead and
        pruned; it is not retried.
        """
        wanted = set(user_ids)
        async with self._lock:
            targets: List[ChannelConnection] = [
                conn
                for uid in wanted
                for conn in self._connections.get(uid, ())
            ]
        if not targets:
            return 0

        results = await asyncio.gather(
            *[self._safe_send(conn, event) for conn in targets],
            return_exceptions=True
        )

        failed = [conn for conn, ok in zip(targets, results) if ok is not True]
        if failed:
            async with self._lock:
                for conn in failed:
                    self._discard(conn)
            logger.debug(f"[Registry] Pruned {len(failed)} dead connection(s)")
        return len(targets) - len(failed)

    async def _safe_send(self, connection: ChannelConnection, event: dict) -> bool:
        try:
            await connection.send(event)
            return True
        except Exception as e:
            logger.debug(f"[Registry] Failed to send to connection: {e}")
            return False

    def connections_for(self, user_id: int) -> List[ChannelConnection]:
        """Snapshot of a user's live connections."""
        return list(self._connections.get(user_id, ()))

    def connection_count(self, user_id: Optional[int] = None) -> int:
        if user_id is not None:
            return len(self._connections.get(user_id, ()))
        return sum(len(s) for s in self._connections.values())

    def online_user_ids(self) -> List[int]:
        return sorted(self._connections)

    async def clear(self) -> None:
        async with self._lock:
            self._connections.clear()
