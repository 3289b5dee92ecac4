"""
Conversation Manager

Manages the conversations the local agent initiated or was invited to.

Conversations are opened by start_conversation() (initiator side) or by
a conversation_started notification (participant side, a mirror).
Every message that names a known conversation, through
metadata.sessionId or metadata.correlationId, is appended to its log by
a router message hook, under that conversation's own lock.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from agentlink.conversation.conversation import Conversation, ConversationStatus
from agentlink.errors import ConversationNotFound, TransportClosed
from agentlink.protocol.message import Message, Priority
from agentlink.protocol.payloads import (
    ConversationEndedData,
    ConversationMessageData,
    ConversationStartedData,
    Notification,
    NotificationType,
)

if TYPE_CHECKING:
    from agentlink.routing.router import MessageDirection, MessageRouter

logger = logging.getLogger(__name__)

ConversationListener = Callable[[Conversation, Message, dict[str, Any]], Awaitable[None]]


class ConversationManager:
    """
    Owns the local conversation records and their append locks.
    """

    def __init__(self, router: "MessageRouter"):
        self._router = router

        # conversation_id -> Conversation
        self._conversations: dict[str, Conversation] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._listeners: list[ConversationListener] = []

        router.add_message_hook(self._record_message)
        router.on_notification(NotificationType.CONVERSATION_STARTED, self._on_started)
        router.on_notification(NotificationType.CONVERSATION_ENDED, self._on_ended)
        router.on_notification(NotificationType.CONVERSATION_MESSAGE, self._on_message)

    @property
    def agent_id(self) -> str:
        return self._router.agent_id

    def on_message(self, listener: ConversationListener) -> None:
        """Called with (conversation, message, content) for each inbound conversation message."""
        self._listeners.append(listener)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def list_conversations(
        self,
        status: ConversationStatus | None = None,
        participant: str | None = None,
    ) -> list[Conversation]:
        conversations = list(self._conversations.values())
        if status is not None:
            conversations = [c for c in conversations if c.status == status]
        if participant is not None:
            conversations = [c for c in conversations if participant in c.participants]
        return conversations

    def _require(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        return conversation

    def _track(self, conversation: Conversation) -> None:
        self._conversations[conversation.id] = conversation
        self._locks[conversation.id] = asyncio.Lock()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start_conversation(
        self,
        participants: list[str],
        context: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Conversation:
        """
        Open a conversation initiated by the local agent.

        The local agent becomes the first participant; duplicates are
        dropped. Every other participant receives conversation_started.
        """
        ordered = [self.agent_id]
        for participant in participants:
            if participant not in ordered:
                ordered.append(participant)

        conversation = Conversation(
            initiator=self.agent_id,
            participants=ordered,
            context=context or {},
            metadata=metadata or {},
        )
        self._track(conversation)
        logger.info(f"Conversation {conversation.id} started with {ordered}")

        data = ConversationStartedData(conversation=conversation.header())
        for participant in conversation.other_participants(self.agent_id):
            await self._notify(participant, NotificationType.CONVERSATION_STARTED, data, conversation.id)

        return conversation

    async def end_conversation(self, conversation_id: str) -> Conversation:
        """
        Mark the conversation COMPLETED and tell every participant but the
        initiator. Ending an already ended conversation does nothing.

        Raises:
            ConversationNotFound: Unknown conversation id
        """
        conversation = self._require(conversation_id)
        if conversation.is_ended:
            return conversation

        conversation.status = ConversationStatus.COMPLETED
        logger.info(f"Conversation {conversation.id} ended by {self.agent_id}")

        data = ConversationEndedData(conversation_id=conversation.id)
        for participant in conversation.participants:
            if participant in (conversation.initiator, self.agent_id):
                continue
            await self._notify(participant, NotificationType.CONVERSATION_ENDED, data, conversation.id)

        return conversation

    def pause_conversation(self, conversation_id: str) -> Conversation:
        conversation = self._require(conversation_id)
        if conversation.status != ConversationStatus.ACTIVE:
            raise ValueError(f"Conversation {conversation_id} is {conversation.status.value}, not active")
        conversation.status = ConversationStatus.PAUSED
        return conversation

    def resume_conversation(self, conversation_id: str) -> Conversation:
        conversation = self._require(conversation_id)
        if conversation.status != ConversationStatus.PAUSED:
            raise ValueError(f"Conversation {conversation_id} is {conversation.status.value}, not paused")
        conversation.status = ConversationStatus.ACTIVE
        return conversation

    def archive_conversation(self, conversation_id: str) -> Conversation:
        """Retain for history only. Allowed from any state."""
        conversation = self._require(conversation_id)
        conversation.status = ConversationStatus.ARCHIVED
        return conversation

    async def send_to_conversation(
        self,
        conversation_id: str,
        content: dict[str, Any],
        priority: Priority = Priority.NORMAL,
    ) -> list[Message]:
        """
        Notify every other participant, tagged with the conversation id.

        Raises:
            ConversationNotFound: Unknown conversation id
            ValueError: The conversation has ended
        """
        conversation = self._require(conversation_id)
        if conversation.is_ended:
            raise ValueError(f"Conversation {conversation_id} is {conversation.status.value}")

        data = ConversationMessageData(conversation_id=conversation.id, content=content)
        sent = []
        for participant in conversation.other_participants(self.agent_id):
            message = await self._router.notify(
                participant,
                NotificationType.CONVERSATION_MESSAGE,
                data,
                priority=priority,
                session_id=conversation.id,
            )
            sent.append(message)
        return sent

    async def _notify(
        self,
        participant: str,
        notification_type: NotificationType,
        data: Any,
        conversation_id: str,
    ) -> None:
        try:
            await self._router.notify(participant, notification_type, data, session_id=conversation_id)
        except TransportClosed:
            logger.warning(f"Could not send {notification_type.value} to {participant}: transport closed")

    # =========================================================================
    # Inbound
    # =========================================================================

    async def _record_message(self, message: Message, direction: "MessageDirection") -> None:
        for key in (message.session_id, message.correlation_id):
            if key is None:
                continue
            conversation = self._conversations.get(key)
            if conversation is None or conversation.is_ended:
                continue
            async with self._locks[conversation.id]:
                conversation.append(message)
            return

    async def _on_started(self, notification: Notification) -> None:
        data: ConversationStartedData = notification.data
        incoming = data.conversation
        if incoming.id in self._conversations:
            return
        if self.agent_id not in incoming.participants:
            logger.warning(f"Ignoring conversation {incoming.id}: {self.agent_id} is not a participant")
            return

        mirror = incoming.model_copy(update={"messages": []})
        self._track(mirror)
        # Hooks ran before the mirror existed; the invitation opens its log
        async with self._locks[mirror.id]:
            mirror.append(notification.message)
        logger.info(f"Joined conversation {mirror.id} started by {notification.sender}")

    async def _on_ended(self, notification: Notification) -> None:
        data: ConversationEndedData = notification.data
        conversation = self._conversations.get(data.conversation_id)
        if conversation is None or conversation.is_ended:
            return
        conversation.status = ConversationStatus.COMPLETED
        logger.info(f"Conversation {conversation.id} ended by {notification.sender}")

    async def _on_message(self, notification: Notification) -> None:
        data: ConversationMessageData = notification.data
        conversation = self._conversations.get(data.conversation_id)
        if conversation is None:
            logger.warning(f"Message {notification.message.id} for unknown conversation {data.conversation_id}")
            return
        for listener in list(self._listeners):
            try:
                await listener(conversation, notification.message, data.content)
            except Exception:
                logger.exception(f"Conversation listener failed on {notification.message.id}")
