"""
Transport Events

The closed set of events a Transport publishes to its observers.
Observers dispatch on them with `match`, so every variant is handled
explicitly rather than by string name.
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, Union

from agentlink.errors import ConnectionLost
from agentlink.protocol.message import Message


@dataclass(frozen=True)
class Connected:
    """Handshake completed; queued messages are about to be flushed."""
    url: str
    attempt: int


@dataclass(frozen=True)
class Disconnected:
    """The connection dropped or could not be established."""
    reason: ConnectionLost
    retry_in: float | None  # None once the transport is closed


@dataclass(frozen=True)
class MessageReceived:
    message: Message


@dataclass(frozen=True)
class FrameRejected:
    """An inbound frame was not a valid Message."""
    raw: str
    error: str


TransportEvent = Union[Connected, Disconnected, MessageReceived, FrameRejected]

TransportListener = Callable[[TransportEvent], Awaitable[None]]
