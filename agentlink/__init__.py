# agentlink - Agent-to-Agent coordination core
# Registry, message protocol, tasks, conversations and reconnecting transport

__version__ = "0.1.0"

from agentlink.errors import (
    A2AError,
    AgentUnavailable,
    ConnectionLost,
    ConversationNotFound,
    DeliveryTimeout,
    InvalidTaskTransition,
    NoCapableAgent,
    NotTaskAssignee,
    RegistryUnavailable,
    RemoteError,
    TaskExecutionFailed,
    TaskNotFound,
    TransportClosed,
    UnknownMethod,
    UnknownPayload,
)
from agentlink.protocol.message import Message, MessageStatus, MessageType, Priority
from agentlink.registry import Agent, AgentRegistryClient, AgentStatus, PeerSnapshot
from agentlink.transport import BackoffPolicy, Transport
from agentlink.routing import MessageRouter
from agentlink.tasks import Task, TaskSpec, TaskStatus
from agentlink.tasks.coordinator import TaskCoordinator, WorkflowResult, WorkflowStep
from agentlink.conversation import Conversation, ConversationStatus
from agentlink.conversation.manager import ConversationManager
from agentlink.heartbeat import HeartbeatMonitor
from agentlink.config import NodeSettings, ServerSettings, node_settings_from_env, server_settings_from_env
from agentlink.node import AgentNode

__all__ = [
    "__version__",
    # Errors
    "A2AError",
    "AgentUnavailable",
    "ConnectionLost",
    "ConversationNotFound",
    "DeliveryTimeout",
    "InvalidTaskTransition",
    "NoCapableAgent",
    "NotTaskAssignee",
    "RegistryUnavailable",
    "RemoteError",
    "TaskExecutionFailed",
    "TaskNotFound",
    "TransportClosed",
    "UnknownMethod",
    "UnknownPayload",
    # Protocol
    "Message",
    "MessageStatus",
    "MessageType",
    "Priority",
    # Components
    "Agent",
    "AgentRegistryClient",
    "AgentStatus",
    "PeerSnapshot",
    "BackoffPolicy",
    "Transport",
    "MessageRouter",
    "Task",
    "TaskSpec",
    "TaskStatus",
    "TaskCoordinator",
    "WorkflowResult",
    "WorkflowStep",
    "Conversation",
    "ConversationStatus",
    "ConversationManager",
    "HeartbeatMonitor",
    # Configuration
    "NodeSettings",
    "ServerSettings",
    "node_settings_from_env",
    "server_settings_from_env",
    "AgentNode",
]
