"""Direct messaging between admins and students.

Push delivery over WebSocket (ChatChannel + ConnectionRegistry), durable
storage in DuckDB (MessageStore), and HTTP pull-sync over the same store.
"""

from .channel import ChatChannel, get_channel, set_channel
from .registry import ChannelConnection, ConnectionRegistry, ConnectionState
from .schemas import ChatError, Message, MessageRejected, SendRequest
from .store import MessageNotFound, MessageStore, MessageStoreError, ReadNotPermitted

__all__ = [
    "ChannelConnection",
    "ChatChannel",
    "ChatError",
    "ConnectionRegistry",
    "ConnectionState",
    "Message",
    "MessageNotFound",
    "MessageRejected",
    "MessageStore",
    "MessageStoreError",
    "ReadNotPermitted",
    "SendRequest",
    "get_channel",
    "set_channel",
]
