"""ChatChannel: authenticated direct messaging over WebSocket.

Handles the complete lifecycle of one socket:

    1. Handshake: credential from the ``token`` query parameter (or an
       ``Authorization: Bearer`` header). Missing → close 4001, invalid →
       close 4002. Success binds the Identity and registers the connection.
    2. Send events: each frame is parsed, validated, persisted and fanned out
       before the next frame on that connection is read, so per-connection
       order is preserved.
    3. Disconnect: the connection is deregistered; messages already accepted
       stay persisted and reachable through pull-sync.

Outbound events:
    {type: "new_message", message: {...}}          sender's and receiver's sessions
    {type: "ack", status: "success", messageId}    originating connection only
    {type: "error", status: "error", message}      originating connection only
    {type: "message_read", messageIds, readerId}   sender's and reader's sessions

The HTTP fallback routes call ``send``/``mark_read`` on the same instance, so
both delivery paths share validation, persistence and fan-out.
"""
import asyncio
import logging
from typing import List, Optional, Set, Union

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool

from taskchat.auth.dependencies import bearer_token
from taskchat.auth.schemas import Identity
from taskchat.auth.service import InvalidTokenError, TokenVerifier
from taskchat.users.service import UserDirectory

from .protocol import coerce_id, parse_send_request
from .registry import ChannelConnection, ConnectionRegistry, ConnectionState
from .schemas import (
    ChatError,
    Message,
    MessageRejected,
    SendRequest,
    ack_event,
    error_event,
    new_message_event,
    read_event,
)
from .store import MessageStore, MessageStoreError

logger = logging.getLogger(__name__)

# Close codes/reasons for failed handshakes
CLOSE_MISSING_CREDENTIAL = (4001, "unauthorized: missing credential")
CLOSE_INVALID_CREDENTIAL = (4002, "unauthorized: invalid credential")


class ChatChannel:
    """Socket handshake, send pipeline and fan-out for direct messages."""

    def __init__(
        self,
        verifier: TokenVerifier,
        store: MessageStore,
        users: UserDirectory,
        registry: Optional[ConnectionRegistry] = None,
        max_content_length: int = 2000,
        support_user_id: int = 1,
    ) -> None:
        self.verifier = verifier
        self.store = store
        self.users = users
        self.registry = registry or ConnectionRegistry()
        self.max_content_length = max_content_length
        self.support_user_id = support_user_id
        # Accepted sends still persisting or fanning out
        self._in_flight: Set[asyncio.Task] = set()

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def serve(self, websocket: WebSocket) -> None:
        """Run one socket from handshake to disconnect."""
        connection = await self.authenticate(websocket)
        if connection is None:
            return

        try:
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(frame.get("code", 1000))
                raw = frame.get("text")
                if raw is None:
                    raw = frame.get("bytes") or b""
                await self.handle_frame(connection, raw)
        except WebSocketDisconnect:
            pass
        finally:
            await self.close(connection)

    async def authenticate(self, websocket: WebSocket) -> Optional[ChannelConnection]:
        """Verify the handshake credential and register the connection.

        Returns:
            The OPEN connection, or None if it was rejected and closed.
        """
        connection = ChannelConnection(transport=websocket)
        token = websocket.query_params.get("token") or bearer_token(
            websocket.headers.get("authorization")
        )

        await websocket.accept()

        if not token:
            logger.info("[WS] Rejected connection: no credential")
            await self._reject(connection, *CLOSE_MISSING_CREDENTIAL)
            return None

        try:
            identity = self.verifier.verify(token)
        except InvalidTokenError as e:
            logger.info(f"[WS] Rejected connection: {e}")
            await self._reject(connection, *CLOSE_INVALID_CREDENTIAL)
            return None

        connection.identity = identity
        connection.state = ConnectionState.OPEN
        await self.registry.register(connection)
        logger.info(f"[WS] User {identity.id} ({identity.role.value}) connected")
        return connection

    async def _reject(self, connection: ChannelConnection, code: int, reason: str) -> None:
        connection.state = ConnectionState.REJECTED
        await connection.transport.close(code=code, reason=reason)

    async def close(self, connection: ChannelConnection) -> None:
        """Mark a connection closed and drop it from the registry."""
        if connection.state == ConnectionState.CLOSED:
            return
        connection.state = ConnectionState.CLOSED
        await self.registry.deregister(connection)
        if connection.identity is not None:
            logger.info(f"[WS] User {connection.identity.id} disconnected")

    # =========================================================================
    # Send pipeline
    # =========================================================================

    async def handle_frame(self, connection: ChannelConnection, raw: Union[str, bytes]) -> None:
        """Process one inbound frame; problems become error events, never exceptions."""
        if connection.state != ConnectionState.OPEN or connection.identity is None:
            return

        try:
            request = parse_send_request(
                raw, connection.identity.id, self.max_content_length
            )
            message = await self.send(connection.identity, request)
        except MessageRejected as e:
            logger.info(
                f"[WS] Rejected message from user {connection.identity.id}: {e.reason}"
            )
            await self._reply(connection, error_event(e.reason, e.client_id))
            return

        await self._reply(connection, ack_event(message.id, request.clientId))

    async def send(self, identity: Identity, request: SendRequest) -> Message:
        """Persist a validated request and push it to both participants.

        Once the receiver is known to exist the message is accepted: its
        insert and fan-out run in their own task, so the sender's connection
        closing mid-send does not stop delivery to the receiver.

        Raises:
            MessageRejected: Sender mismatch, out-of-range or unknown
                receiver, or the store failed (nothing delivered in that case).
        """
        if request.senderId != identity.id:
            raise MessageRejected(ChatError.SENDER_MISMATCH, request.clientId)
        if coerce_id(request.senderId) is None:
            raise MessageRejected(ChatError.INVALID_SENDER, request.clientId)
        if coerce_id(request.receiverId) is None:
            raise MessageRejected(ChatError.INVALID_RECEIVER, request.clientId)

        try:
            receiver_exists = await run_in_threadpool(self.users.exists, request.receiverId)
        except Exception as e:
            logger.error(f"[WS] Receiver lookup failed: {e}")
            raise MessageRejected(ChatError.SAVE_FAILED, request.clientId) from e
        if not receiver_exists:
            raise MessageRejected(ChatError.UNKNOWN_RECEIVER, request.clientId)

        task = asyncio.ensure_future(self._persist_and_push(identity, request))
        self._in_flight.add(task)
        task.add_done_callback(self._finish_in_flight)
        return await asyncio.shield(task)

    async def _persist_and_push(self, identity: Identity, request: SendRequest) -> Message:
        try:
            message = await run_in_threadpool(
                self.store.insert, request.senderId, request.receiverId, request.content
            )
        except MessageStoreError as e:
            logger.error(f"[WS] Failed to save message from user {identity.id}: {e}")
            raise MessageRejected(ChatError.SAVE_FAILED, request.clientId) from e
        except Exception as e:
            logger.exception(f"[WS] Unexpected error saving message from user {identity.id}")
            raise MessageRejected(ChatError.SAVE_FAILED, request.clientId) from e

        delivered = await self.registry.push_many(
            (message.senderId, message.receiverId), new_message_event(message)
        )
        logger.info(
            f"[WS] Message {message.id} {message.senderId}->{message.receiverId} "
            f"delivered to {delivered} connection(s)"
        )
        return message

    def _finish_in_flight(self, task: asyncio.Task) -> None:
        self._in_flight.discard(task)
        # Nobody awaits the result once the sender's handler was cancelled
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"[WS] Accepted send finished with: {task.exception()}")

    async def _reply(self, connection: ChannelConnection, event: dict) -> None:
        try:
            await connection.send(event)
        except Exception as e:
            # Originating socket went away; the message (if any) is still stored
            logger.debug(f"[WS] Could not reply on closed connection: {e}")

    # =========================================================================
    # Read receipts
    # =========================================================================

    async def mark_read(self, identity: Identity, message_id: int) -> Message:
        """Mark one message read and notify both participants.

        Raises:
            MessageNotFound, ReadNotPermitted, MessageStoreError: from the store.
        """
        message, changed = await run_in_threadpool(
            self.store.mark_read, message_id, identity.id
        )
        if changed:
            await self.registry.push_many(
                (message.senderId, identity.id), read_event([message.id], identity.id)
            )
        return message

    async def mark_all_read(self, identity: Identity, sender_id: int) -> List[Message]:
        """Mark everything from ``sender_id`` to the caller read."""
        updated = await run_in_threadpool(self.store.mark_all_read, sender_id, identity.id)
        if updated:
            await self.registry.push_many(
                (sender_id, identity.id), read_event([m.id for m in updated], identity.id)
            )
        return updated


# ---------------------------------------------------------------------------
# Process-wide channel (set during app startup)
# ---------------------------------------------------------------------------

_channel: Optional[ChatChannel] = None


def get_channel() -> Optional[ChatChannel]:
    return _channel


def set_channel(channel: Optional[ChatChannel]) -> None:
    global _channel
    _channel = channel
