# Agent Registry (client side)
# Agent record, HTTP registry client, cached peer snapshot

from agentlink.registry.agent import Agent, AgentStatus, AgentType
from agentlink.registry.client import AgentRegistryClient
from agentlink.registry.peers import PeerSnapshot

__all__ = ["Agent", "AgentStatus", "AgentType", "AgentRegistryClient", "PeerSnapshot"]
