"""
A2A Message Model

Every frame exchanged between agents is a Message serialized as JSON.
The message carries:
- Sender-generated identity (globally unique id)
- Type classification for dispatch (request/response/notification/broadcast/error)
- Temporal context (timestamp, optional ttl)
- Correlation (correlationId links a response/error to its request)
- Session binding (sessionId ties a message to a conversation)
- Delivery bookkeeping (status, retryCount)

Python attributes are snake_case; the JSON wire names are camelCase.
A message is immutable once sent except for status and retry_count.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Reserved peer id of the broker endpoint on the streaming connection
BROKER_ID = "broker"

# Handshake method sent as the first frame on every connection
INITIALIZE_METHOD = "initialize"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_message_id() -> str:
    return f"msg-{uuid4().hex}"


class WireModel(BaseModel):
    """Base for models that travel as JSON with camelCase field names."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> dict[str, Any]:
        """Dump to a JSON-compatible dict using wire names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class MessageType(str, Enum):
    """How the receiving router dispatches a message."""
    REQUEST = "request"            # Invokes a method, expects response/error
    RESPONSE = "response"          # Successful reply to a request
    NOTIFICATION = "notification"  # Typed event, no reply
    BROADCAST = "broadcast"        # Fan-out copy, no reply
    ERROR = "error"                # Failed reply to a request


class MessageStatus(str, Enum):
    """Delivery status as seen by the sender."""
    PENDING = "pending"            # Queued while disconnected
    SENT = "sent"                  # Written to the connection
    DELIVERED = "delivered"        # Received by the peer
    ACKNOWLEDGED = "acknowledged"  # Correlated reply received
    FAILED = "failed"              # Gave up after retries


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class AccessLevel(str, Enum):
    PUBLIC = "public"
    INTERNAL = "internal"
    RESTRICTED = "restricted"


class MessageMetadata(WireModel):
    timestamp: datetime = Field(
        default_factory=utc_now,
        description="When the sender created the message"
    )
    priority: Priority = Field(
        default=Priority.NORMAL,
        description="Delivery priority hint"
    )
    ttl: float | None = Field(
        default=None,
        gt=0,
        description="Seconds after timestamp when the message expires. None = no expiry."
    )
    correlation_id: str | None = Field(
        default=None,
        description="Id of the request this message answers"
    )
    session_id: str | None = Field(
        default=None,
        description="Conversation this message belongs to"
    )


class SecurityContext(WireModel):
    access_level: AccessLevel = Field(
        default=AccessLevel.INTERNAL,
        description="Declared sensitivity of the payload"
    )


class Message(WireModel):
    """A single A2A frame."""

    # === Identity ===
    id: str = Field(
        default_factory=new_message_id,
        description="Globally unique id, generated by the sender"
    )

    # === Routing ===
    from_agent: str = Field(..., description="Sender agent id")
    to_agent: str = Field(..., description="Recipient agent id")
    type: MessageType = Field(..., description="Dispatch class")
    method: str | None = Field(
        default=None,
        description="Request method name (requests and their replies)"
    )

    # === Content ===
    payload: dict[str, Any] = Field(default_factory=dict)
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)
    security: SecurityContext = Field(default_factory=SecurityContext)

    # === Delivery ===
    status: MessageStatus = Field(default=MessageStatus.PENDING)
    retry_count: int = Field(default=0, ge=0)

    @property
    def correlation_id(self) -> str | None:
        return self.metadata.correlation_id

    @property
    def session_id(self) -> str | None:
        return self.metadata.session_id

    @property
    def expires_at(self) -> datetime | None:
        if self.metadata.ttl is None:
            return None
        return self.metadata.timestamp + timedelta(seconds=self.metadata.ttl)

    def is_expired(self, now: datetime | None = None) -> bool:
        expires_at = self.expires_at
        if expires_at is None:
            return False
        return (now or utc_now()) > expires_at

    def is_reply(self) -> bool:
        return self.type in (MessageType.RESPONSE, MessageType.ERROR)

    def to_frame(self) -> str:
        """Serialize for the wire."""
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_frame(cls, raw: str | bytes) -> "Message":
        """Parse a wire frame. Raises pydantic.ValidationError."""
        return cls.model_validate_json(raw)


# === Convenience constructors ===

def create_request(
    sender_id: str,
    to_agent: str,
    method: str,
    payload: dict[str, Any] | None = None,
    priority: Priority = Priority.NORMAL,
    ttl: float | None = None,
    session_id: str | None = None,
) -> Message:
    return Message(
        from_agent=sender_id,
        to_agent=to_agent,
        type=MessageType.REQUEST,
        method=method,
        payload=payload or {},
        metadata=MessageMetadata(priority=priority, ttl=ttl, session_id=session_id),
    )


def create_response(
    request: Message,
    payload: dict[str, Any],
) -> Message:
    """Build the successful reply to a request."""
    return Message(
        from_agent=request.to_agent,
        to_agent=request.from_agent,
        type=MessageType.RESPONSE,
        method=request.method,
        payload=payload,
        metadata=MessageMetadata(
            priority=request.metadata.priority,
            correlation_id=request.id,
            session_id=request.metadata.session_id,
        ),
    )


def create_error(
    request: Message,
    code: str,
    message: str,
    sender_id: str | None = None,
) -> Message:
    """
    Build an error reply to a request.

    sender_id overrides the reply's sender, used by the broker when it
    bounces a frame on behalf of an unreachable agent.
    """
    return Message(
        from_agent=sender_id or request.to_agent,
        to_agent=request.from_agent,
        type=MessageType.ERROR,
        method=request.method,
        payload={"code": code, "message": message},
        metadata=MessageMetadata(
            correlation_id=request.id,
            session_id=request.metadata.session_id,
        ),
    )


def create_notification(
    sender_id: str,
    to_agent: str,
    notification_type: str,
    data: dict[str, Any] | None = None,
    priority: Priority = Priority.NORMAL,
    session_id: str | None = None,
) -> Message:
    return Message(
        from_agent=sender_id,
        to_agent=to_agent,
        type=MessageType.NOTIFICATION,
        payload={"type": notification_type, "data": data or {}},
        metadata=MessageMetadata(priority=priority, session_id=session_id),
    )


def create_initialize(sender_id: str, version: str) -> Message:
    """Handshake frame, always the first frame on a new connection."""
    return create_request(
        sender_id=sender_id,
        to_agent=BROKER_ID,
        method=INITIALIZE_METHOD,
        payload={"agentId": sender_id, "version": version},
    )
