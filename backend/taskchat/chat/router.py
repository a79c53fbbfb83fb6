"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws/chat: Real-time direct messaging (push path)
    - GET /api/student/messages: Student's history with the support admin
    - GET /api/admin/messages/{student_id}: Admin's history with a student
    - GET /api/messages/{user_id}: Caller's history with any user
    - POST /api/messages: Send via HTTP (fallback for the socket)
    - POST /api/student/messages: Student sends to the support admin
    - POST /api/messages/{message_id}/read: Read receipt for one message
    - POST /api/messages/read-all/{sender_id}: Read receipt for a conversation
    - GET /api/messages/unread-count: Caller's unread total
    - GET /api/messages/threads: Caller's conversations, newest first

Pull-sync (the GET history routes) is the durable source of truth: push
delivery is best effort, so clients load history on start and re-poll after
a reconnect to catch anything sent while they were offline.

All HTTP routes take ``Authorization: Bearer <token>``; 401 when missing,
403 when invalid or the role does not match.
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, WebSocket
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from taskchat.auth.dependencies import get_identity, require_role
from taskchat.auth.schemas import Identity, Role

from .channel import ChatChannel, get_channel
from .protocol import validate_content
from .schemas import (
    ChatError,
    Message,
    MessageRejected,
    SendMessageBody,
    SendRequest,
    StudentMessageBody,
)
from .store import MessageNotFound, MessageStoreError, ReadNotPermitted

logger = logging.getLogger(__name__)

router = APIRouter()

# HTTP status for each send failure reported by the channel
_REJECTION_STATUS = {
    ChatError.UNKNOWN_RECEIVER: 404,
    ChatError.SAVE_FAILED: 500,
    ChatError.SENDER_MISMATCH: 403,
}


def _channel() -> ChatChannel:
    channel = get_channel()
    if channel is None:
        raise RuntimeError("Chat channel is not initialised")
    return channel


def _messages(messages: List[Message]) -> JSONResponse:
    return JSONResponse([m.to_wire() for m in messages])


def _store_unavailable(e: Exception) -> JSONResponse:
    logger.error(f"[chat] Message store error: {e}")
    return JSONResponse({"error": "Failed to fetch messages"}, status_code=500)


# =============================================================================
# WebSocket (push path)
# =============================================================================


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for real-time direct messages.

    Protocol Flow:
        1. Client connects with ?token=<jwt>
           → missing token: close 4001 "unauthorized: missing credential"
           → bad token:     close 4002 "unauthorized: invalid credential"
        2. Client sends: {sender_id, receiver_id, content, client_id?}
           → sender & receiver sessions: {type: "new_message", message: {...}}
           → sender's connection:        {type: "ack", status: "success", messageId}
           → or on failure:              {type: "error", status: "error", message}
        3. On disconnect the connection is deregistered.
    """
    await _channel().serve(websocket)


# =============================================================================
# Pull-sync
# =============================================================================


@router.get("/api/student/messages")
async def get_student_messages(
    identity: Identity = Depends(require_role(Role.STUDENT)),
) -> JSONResponse:
    """Get the student's conversation with the support admin, oldest first."""
    channel = _channel()
    try:
        messages = await run_in_threadpool(
            channel.store.conversation, identity.id, channel.support_user_id
        )
    except MessageStoreError as e:
        return _store_unavailable(e)
    return _messages(messages)


@router.get("/api/admin/messages/{student_id}")
async def get_admin_messages(
    student_id: int,
    identity: Identity = Depends(require_role(Role.ADMIN)),
) -> JSONResponse:
    """Get the admin's conversation with one student, oldest first."""
    try:
        messages = await run_in_threadpool(_channel().store.conversation, identity.id, student_id)
    except MessageStoreError as e:
        return _store_unavailable(e)
    return _messages(messages)


@router.get("/api/messages/unread-count")
async def get_unread_count(identity: Identity = Depends(get_identity)) -> JSONResponse:
    """Count messages addressed to the caller that are still unread."""
    try:
        count = await run_in_threadpool(_channel().store.unread_count, identity.id)
    except MessageStoreError as e:
        return _store_unavailable(e)
    return JSONResponse({"count": count})


@router.get("/api/messages/threads")
async def get_threads(identity: Identity = Depends(get_identity)) -> JSONResponse:
    """List the caller's conversations with last message and unread count."""
    try:
        threads = await run_in_threadpool(_channel().store.threads, identity.id)
    except MessageStoreError as e:
        return _store_unavailable(e)
    return JSONResponse([t.model_dump(mode="json") for t in threads])


@router.get("/api/messages/{user_id}")
async def get_conversation(
    user_id: int,
    identity: Identity = Depends(get_identity),
) -> JSONResponse:
    """Get the caller's conversation with ``user_id``, oldest first."""
    try:
        messages = await run_in_threadpool(_channel().store.conversation, identity.id, user_id)
    except MessageStoreError as e:
        return _store_unavailable(e)
    return _messages(messages)


# =============================================================================
# Send fallback
# =============================================================================


async def _send(identity: Identity, receiver_id: int, content: str, client_id) -> JSONResponse:
    channel = _channel()
    try:
        text = validate_content(content, channel.max_content_length, client_id)
        message = await channel.send(
            identity,
            SendRequest(
                senderId=identity.id,
                receiverId=receiver_id,
                content=text,
                clientId=client_id,
            ),
        )
    except MessageRejected as e:
        status = _REJECTION_STATUS.get(e.reason, 400)
        return JSONResponse({"error": e.reason}, status_code=status)

    logger.info(f"[chat] HTTP send {message.id} from user {identity.id}")
    return JSONResponse(message.to_wire(), status_code=201)


@router.post("/api/messages", status_code=201)
async def send_message(
    body: SendMessageBody,
    identity: Identity = Depends(get_identity),
) -> JSONResponse:
    """Send a message over HTTP.

    Same validation, persistence and push fan-out as the socket path.

    Returns:
        The created Message (201), or {"error": ...} with 400/404/500.
    """
    return await _send(identity, body.receiver_id, body.content, body.client_id)


@router.post("/api/student/messages", status_code=201)
async def send_student_message(
    body: StudentMessageBody,
    identity: Identity = Depends(require_role(Role.STUDENT)),
) -> JSONResponse:
    """Send a message from a student to the support admin."""
    support_id = _channel().support_user_id
    return await _send(identity, support_id, body.content, body.client_id)


# =============================================================================
# Read receipts
# =============================================================================


@router.post("/api/messages/read-all/{sender_id}")
async def mark_all_messages_read(
    sender_id: int,
    identity: Identity = Depends(get_identity),
) -> JSONResponse:
    """Mark every message from ``sender_id`` to the caller as read."""
    try:
        updated = await _channel().mark_all_read(identity, sender_id)
    except MessageStoreError as e:
        return _store_unavailable(e)
    return _messages(updated)


@router.post("/api/messages/{message_id}/read")
async def mark_message_read(
    message_id: int,
    identity: Identity = Depends(get_identity),
) -> JSONResponse:
    """Mark one message as read. Only its receiver may do this."""
    try:
        message = await _channel().mark_read(identity, message_id)
    except MessageNotFound:
        return JSONResponse({"error": f"Message with ID {message_id} not found"}, status_code=404)
    except ReadNotPermitted:
        return JSONResponse(
            {"error": "You can only mark messages sent to you as read"}, status_code=403
        )
    except MessageStoreError as e:
        return _store_unavailable(e)
    return JSONResponse(message.to_wire())
