# Conversations
# Conversation model.
# ConversationManager lives in agentlink.conversation.manager.

from agentlink.conversation.conversation import Conversation, ConversationStatus

__all__ = ["Conversation", "ConversationStatus"]
