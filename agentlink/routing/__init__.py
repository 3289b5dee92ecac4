# Message Routing
# Outbound send/correlation and inbound dispatch for one agent

from agentlink.routing.router import BroadcastResult, MessageDirection, MessageRouter

__all__ = ["BroadcastResult", "MessageDirection", "MessageRouter"]
