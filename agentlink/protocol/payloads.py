"""
Payload Schemas

Typed payloads for the built-in request methods and notification
sub-types. Inbound payloads are deserialized, then validated here before
any handler sees them; anything that does not fit its schema raises
UnknownPayload instead of flowing through as untyped data.

Notification payloads always have the shape {"type": ..., "data": {...}}.
Error payloads always have the shape {"code": ..., "message": ...}.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from agentlink.conversation.conversation import Conversation
from agentlink.errors import UnknownPayload
from agentlink.protocol.message import INITIALIZE_METHOD, Message, WireModel, utc_now
from agentlink.registry.agent import Agent, AgentStatus
from agentlink.tasks.task import Task, TaskSpec


class BuiltinMethod(str, Enum):
    PING = "ping"
    GET_CAPABILITIES = "get_capabilities"
    GET_STATUS = "get_status"
    ASSIGN_TASK = "assign_task"


class NotificationType(str, Enum):
    AGENT_JOINED = "agent_joined"
    AGENT_LEFT = "agent_left"
    TASK_ASSIGNED = "task_assigned"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_CANCELLED = "task_cancelled"
    CONVERSATION_STARTED = "conversation_started"
    CONVERSATION_ENDED = "conversation_ended"
    CONVERSATION_MESSAGE = "conversation_message"


class ErrorCode(str, Enum):
    UNKNOWN_METHOD = "UNKNOWN_METHOD"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    HANDLER_FAILED = "HANDLER_FAILED"
    AGENT_UNREACHABLE = "AGENT_UNREACHABLE"
    HANDSHAKE_REQUIRED = "HANDSHAKE_REQUIRED"


# =============================================================================
# Request / response payloads
# =============================================================================

class EmptyPayload(WireModel):
    """Payload-less methods accept and ignore any body."""


class InitializePayload(WireModel):
    agent_id: str = Field(..., min_length=1)
    version: str = Field(default="1.0.0")


class PingResult(WireModel):
    pong: bool = True
    timestamp: datetime = Field(default_factory=utc_now)


class CapabilitiesResult(WireModel):
    capabilities: list[str] = Field(default_factory=list)


class StatusResult(WireModel):
    status: AgentStatus


class AssignTaskResult(WireModel):
    task: Task


class ErrorPayload(WireModel):
    code: str
    message: str


REQUEST_SCHEMAS: dict[str, type[BaseModel]] = {
    BuiltinMethod.PING.value: EmptyPayload,
    BuiltinMethod.GET_CAPABILITIES.value: EmptyPayload,
    BuiltinMethod.GET_STATUS.value: EmptyPayload,
    BuiltinMethod.ASSIGN_TASK.value: TaskSpec,
    INITIALIZE_METHOD: InitializePayload,
}


# =============================================================================
# Notification payloads
# =============================================================================

class AgentJoinedData(WireModel):
    agent: Agent


class AgentLeftData(WireModel):
    agent_id: str


class TaskAssignedData(WireModel):
    task: Task


class TaskUpdateData(WireModel):
    """Carried by task_started / task_completed / task_failed / task_cancelled."""
    task_id: str
    task: Task | None = None
    result: Any | None = None
    error: str | None = None


class ConversationStartedData(WireModel):
    conversation: Conversation


class ConversationEndedData(WireModel):
    conversation_id: str


class ConversationMessageData(WireModel):
    conversation_id: str
    content: dict[str, Any] = Field(default_factory=dict)


NOTIFICATION_SCHEMAS: dict[NotificationType, type[BaseModel]] = {
    NotificationType.AGENT_JOINED: AgentJoinedData,
    NotificationType.AGENT_LEFT: AgentLeftData,
    NotificationType.TASK_ASSIGNED: TaskAssignedData,
    NotificationType.TASK_STARTED: TaskUpdateData,
    NotificationType.TASK_COMPLETED: TaskUpdateData,
    NotificationType.TASK_FAILED: TaskUpdateData,
    NotificationType.TASK_CANCELLED: TaskUpdateData,
    NotificationType.CONVERSATION_STARTED: ConversationStartedData,
    NotificationType.CONVERSATION_ENDED: ConversationEndedData,
    NotificationType.CONVERSATION_MESSAGE: ConversationMessageData,
}


@dataclass(frozen=True)
class Notification:
    """A validated inbound notification."""
    type: NotificationType
    data: BaseModel
    message: Message

    @property
    def sender(self) -> str:
        return self.message.from_agent


# =============================================================================
# Boundary validation
# =============================================================================

def validate_payload(
    schema: type[BaseModel],
    payload: dict[str, Any],
    kind: str,
) -> BaseModel:
    """
    Validate a raw payload against schema.

    Raises:
        UnknownPayload: If the payload does not fit the schema
    """
    try:
        return schema.model_validate(payload)
    except ValidationError as e:
        raise UnknownPayload(kind, str(e)) from e


def parse_notification(message: Message) -> Notification:
    """
    Deserialize-then-validate a notification message.

    Raises:
        UnknownPayload: If the sub-type is unknown or the data is malformed
    """
    raw_type = message.payload.get("type")
    try:
        notification_type = NotificationType(raw_type)
    except ValueError as e:
        raise UnknownPayload("notification", f"unknown notification type {raw_type!r}") from e

    data = message.payload.get("data", {})
    if not isinstance(data, dict):
        raise UnknownPayload(notification_type.value, "data must be an object")

    schema = NOTIFICATION_SCHEMAS[notification_type]
    return Notification(
        type=notification_type,
        data=validate_payload(schema, data, notification_type.value),
        message=message,
    )


def parse_error(message: Message) -> ErrorPayload:
    """Read an error reply, tolerating peers that send a bare message."""
    try:
        return ErrorPayload.model_validate(message.payload)
    except ValidationError:
        text = message.payload.get("error") or message.payload.get("message") or "error"
        return ErrorPayload(code=ErrorCode.HANDLER_FAILED.value, message=str(text))
