# Registry and Broker Server
# Agent directory over pluggable storage, frame routing hub, FastAPI app

from agentlink.server.app import create_app, create_app_from_env, create_app_from_settings
from agentlink.server.directory import AgentDirectory
from agentlink.server.hub import BrokerHub
from agentlink.server.queue import OutboundQueue, OutboundQueues, QueueFullError
from agentlink.server.store import AgentStore, InMemoryAgentStore, RedisAgentStore

__all__ = [
    "create_app",
    "create_app_from_env",
    "create_app_from_settings",
    "AgentDirectory",
    "BrokerHub",
    "OutboundQueue",
    "OutboundQueues",
    "QueueFullError",
    "AgentStore",
    "InMemoryAgentStore",
    "RedisAgentStore",
]
