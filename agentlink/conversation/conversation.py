"""
Conversation Model

A multi-party, ordered message thread with shared context.

Conversation Lifecycle:
1. ACTIVE - Messages are appended as they are exchanged
2. PAUSED - Temporarily idle, can resume
3. COMPLETED - Ended by the initiator
4. ARCHIVED - Retained for history only
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import Field

from agentlink.protocol.message import Message, WireModel, utc_now


def new_conversation_id() -> str:
    return f"conv-{uuid4().hex[:16]}"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class Conversation(WireModel):
    # === Identity ===
    id: str = Field(default_factory=new_conversation_id)
    initiator: str = Field(..., description="Agent that started the conversation")

    # === Participants ===
    participants: list[str] = Field(
        default_factory=list,
        description="Ordered, duplicate-free participant ids (initiator first)"
    )

    # === Thread ===
    messages: list[Message] = Field(
        default_factory=list,
        description="Append-only message log"
    )
    context: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    # === Lifecycle ===
    status: ConversationStatus = Field(default=ConversationStatus.ACTIVE)
    started_at: datetime = Field(default_factory=utc_now)
    last_activity: datetime = Field(default_factory=utc_now)

    @property
    def is_ended(self) -> bool:
        return self.status in (ConversationStatus.COMPLETED, ConversationStatus.ARCHIVED)

    def has_message(self, message_id: str) -> bool:
        return any(m.id == message_id for m in self.messages)

    def append(self, message: Message) -> bool:
        """
        Append a message and bump last_activity.

        Callers must hold the conversation's lock. Returns False for a
        message already in the log.
        """
        if self.has_message(message.id):
            return False
        self.messages.append(message)
        self.last_activity = utc_now()
        return True

    def other_participants(self, agent_id: str) -> list[str]:
        return [p for p in self.participants if p != agent_id]

    def header(self) -> "Conversation":
        """Copy without the message log, for notifications."""
        return self.model_copy(update={"messages": []})
