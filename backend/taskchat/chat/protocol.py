"""Parse-and-validate step for inbound send events.

Clients send JSON text frames shaped like::

    {"sender_id": 5, "receiver_id": 9, "content": "hi", "client_id": "tmp-1"}

``sender_id``/``receiver_id`` may be numbers or numeric strings. ``type`` is
optional; when present it must be ``send_message``. ``client_id`` is the
client's temporary id and is echoed back in the ack or error.

Nothing downstream touches the raw payload: ``parse_send_request`` either
returns a SendRequest or raises MessageRejected with the error string to
report. Receiver existence is checked by the channel, which owns the user
lookup.
"""
import json
import math
from typing import Any, Optional, Union

from .schemas import ChatError, MessageRejected, SendRequest

SEND_EVENT_TYPE = "send_message"


# sender_id / receiver_id are stored in DuckDB INTEGER columns
ID_MIN = -(2 ** 31)
ID_MAX = 2 ** 31 - 1


def _integral(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) and value.is_integer() else None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            return None
        return int(number) if math.isfinite(number) and number.is_integer() else None
    return None


def coerce_id(value: Any) -> Optional[int]:
    """Coerce a user id from a JSON value.

    Returns None unless the value is integral and fits the id columns.
    """
    number = _integral(value)
    if number is None or not ID_MIN <= number <= ID_MAX:
        return None
    return number


def validate_content(content: Any, max_length: int, client_id: Optional[str] = None) -> str:
    """Trim and bound-check message content, returning the stored form."""
    if not isinstance(content, str):
        raise MessageRejected(ChatError.INVALID_FORMAT, client_id)
    text = content.strip()
    if not text:
        raise MessageRejected(ChatError.EMPTY_CONTENT, client_id)
    if len(text) > max_length:
        raise MessageRejected(ChatError.TOO_LONG, client_id)
    return text


def _client_id(payload: dict) -> Optional[str]:
    value = payload.get("client_id", payload.get("clientId"))
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return None
    return str(value)


def parse_send_request(
    raw: Union[str, bytes, dict],
    authenticated_id: int,
    max_length: int,
) -> SendRequest:
    """Turn one inbound frame into a SendRequest.

    Args:
        raw: Text frame, or an already-decoded JSON value.
        authenticated_id: User ID bound to the connection.
        max_length: Maximum trimmed content length.

    Returns:
        The validated SendRequest.

    Raises:
        MessageRejected: On the first failed check, in this order: JSON
            syntax, payload shape, sender_id, receiver_id, content,
            sender/identity mismatch.
    """
    if isinstance(raw, (str, bytes)):
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise MessageRejected(ChatError.INVALID_JSON)
    else:
        payload = raw

    if not isinstance(payload, dict):
        raise MessageRejected(ChatError.INVALID_FORMAT)

    client_id = _client_id(payload)

    event_type = payload.get("type", SEND_EVENT_TYPE)
    if event_type != SEND_EVENT_TYPE:
        raise MessageRejected(ChatError.INVALID_FORMAT, client_id)

    sender_id = coerce_id(payload.get("sender_id"))
    if sender_id is None:
        raise MessageRejected(ChatError.INVALID_SENDER, client_id)

    receiver_id = coerce_id(payload.get("receiver_id"))
    if receiver_id is None:
        raise MessageRejected(ChatError.INVALID_RECEIVER, client_id)

    content = validate_content(payload.get("content"), max_length, client_id)

    if sender_id != authenticated_id:
        raise MessageRejected(ChatError.SENDER_MISMATCH, client_id)

    return SendRequest(
        senderId=sender_id,
        receiverId=receiver_id,
        content=content,
        clientId=client_id,
    )
