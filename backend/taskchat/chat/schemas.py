"""Pydantic schemas for direct messages.

These schemas are used by:
    - ChatChannel: socket send pipeline and outbound events
    - MessageStore: DuckDB storage layer
    - chat router: pull-sync and fallback HTTP endpoints
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Error strings
# =============================================================================


class ChatError:
    """Error messages reported to clients through error events.

    The strings are part of the wire protocol; clients match on them.
    """
    INVALID_JSON = "Invalid JSON format"
    INVALID_FORMAT = "Invalid message format"
    INVALID_SENDER = "Invalid sender_id"
    INVALID_RECEIVER = "Invalid receiver_id"
    EMPTY_CONTENT = "Message content is empty"
    TOO_LONG = "Message too long"
    SENDER_MISMATCH = "Sender ID mismatch"
    UNKNOWN_RECEIVER = "Receiver does not exist"
    SAVE_FAILED = "Failed to save message"


class MessageRejected(Exception):
    """A send request failed validation before anything was persisted.

    Attributes:
        reason: One of the ChatError strings.
        client_id: The client's temporary id for the message, if it sent one.
    """

    def __init__(self, reason: str, client_id: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.client_id = client_id


# =============================================================================
# Data Models
# =============================================================================


class SendRequest(BaseModel):
    """A validated request to send one message.

    Only produced by ``protocol.parse_send_request`` (socket path) or by the
    HTTP fallback routes, after every field has been coerced and checked.

    Attributes:
        senderId: Sender user ID (equals the authenticated identity).
        receiverId: Receiver user ID (existence checked separately).
        content: Trimmed, non-empty message text within the length limit.
        clientId: Optional client-side temporary id echoed back in the ack.
    """
    model_config = ConfigDict(frozen=True)

    senderId: int
    receiverId: int
    content: str
    clientId: Optional[str] = None


class Message(BaseModel):
    """Canonical persisted message, as pushed to clients and returned by pull-sync.

    Attributes:
        id: Store-assigned, monotonic message ID.
        content: Message text.
        senderId: Sender's user ID.
        receiverId: Receiver's user ID.
        isRead: Whether the receiver has read it.
        createdAt: Server time of persistence (UTC).
        senderName: Sender's username, when known.
        receiverName: Receiver's username, when known.
    """
    id: int = Field(..., description="Store-assigned message ID")
    content: str = Field(..., description="Message content")
    senderId: int = Field(..., description="User ID of the sender")
    receiverId: int = Field(..., description="User ID of the receiver")
    isRead: bool = Field(default=False, description="Read by the receiver")
    createdAt: datetime = Field(..., description="Persistence time (UTC)")
    senderName: Optional[str] = Field(default=None, description="Sender display name")
    receiverName: Optional[str] = Field(default=None, description="Receiver display name")

    def to_wire(self) -> Dict[str, Any]:
        """JSON-ready dict (datetimes as ISO-8601 strings)."""
        return self.model_dump(mode="json")


class MessageThread(BaseModel):
    """One conversation in a user's inbox.

    Attributes:
        userId: The counterpart's user ID.
        username: The counterpart's username, when known.
        lastMessage: Most recent message in either direction.
        unreadCount: Messages from the counterpart not yet read.
    """
    userId: int
    username: Optional[str] = None
    lastMessage: Optional[Message] = None
    unreadCount: int = 0


class SendMessageBody(BaseModel):
    """HTTP fallback body for ``POST /api/messages``."""
    receiver_id: int
    content: str
    client_id: Optional[str] = None


class StudentMessageBody(BaseModel):
    """HTTP fallback body for ``POST /api/student/messages``."""
    content: str
    client_id: Optional[str] = None


# =============================================================================
# Outbound events
# =============================================================================


def new_message_event(message: Message) -> Dict[str, Any]:
    return {"type": "new_message", "message": message.to_wire()}


def ack_event(message_id: int, client_id: Optional[str] = None) -> Dict[str, Any]:
    event: Dict[str, Any] = {"type": "ack", "status": "success", "messageId": message_id}
    if client_id is not None:
        event["clientId"] = client_id
    return event


def error_event(reason: str, client_id: Optional[str] = None) -> Dict[str, Any]:
    event: Dict[str, Any] = {"type": "error", "status": "error", "message": reason}
    if client_id is not None:
        event["clientId"] = client_id
    return event


def read_event(message_ids: List[int], reader_id: int) -> Dict[str, Any]:
    return {"type": "message_read", "messageIds": list(message_ids), "readerId": reader_id}
