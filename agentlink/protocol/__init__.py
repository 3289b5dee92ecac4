# Wire Protocol
# Message model, enums and convenience constructors.
# Payload schemas live in agentlink.protocol.payloads.

from agentlink.protocol.message import (
    BROKER_ID,
    INITIALIZE_METHOD,
    AccessLevel,
    Message,
    MessageMetadata,
    MessageStatus,
    MessageType,
    Priority,
    SecurityContext,
    create_error,
    create_initialize,
    create_notification,
    create_request,
    create_response,
)

__all__ = [
    "BROKER_ID",
    "INITIALIZE_METHOD",
    "AccessLevel",
    "Message",
    "MessageMetadata",
    "MessageStatus",
    "MessageType",
    "Priority",
    "SecurityContext",
    "create_error",
    "create_initialize",
    "create_notification",
    "create_request",
    "create_response",
]
