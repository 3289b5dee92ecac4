# Transport
# Reconnecting stream connection to the broker with a FIFO outbox

from agentlink.transport.backoff import BackoffKind, BackoffPolicy
from agentlink.transport.connection import ConnectionState, Transport, websocket_connector
from agentlink.transport.events import (
    Connected,
    Disconnected,
    FrameRejected,
    MessageReceived,
    TransportEvent,
)

__all__ = [
    "BackoffKind",
    "BackoffPolicy",
    "ConnectionState",
    "Transport",
    "websocket_connector",
    "Connected",
    "Disconnected",
    "FrameRejected",
    "MessageReceived",
    "TransportEvent",
]
