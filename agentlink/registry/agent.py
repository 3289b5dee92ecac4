"""
Agent Record Model

Represents an agent known to the registry: identity, capabilities,
presence information and how to reach it.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import Field

from agentlink.protocol.message import WireModel, utc_now


class AgentType(str, Enum):
    """Where the agent runs relative to the network."""
    LOCAL = "local"
    REMOTE = "remote"
    EXTERNAL = "external"


class AgentStatus(str, Enum):
    """Agent presence status."""
    ONLINE = "online"
    OFFLINE = "offline"
    BUSY = "busy"      # Online but saturated
    ERROR = "error"    # Online but unhealthy


class Agent(WireModel):
    """
    An agent participating in the coordination network.

    Identity is the id; the registry enforces uniqueness. last_seen is
    owned by the registry and refreshed on every heartbeat.
    """

    # === Identity ===
    id: str = Field(
        ...,
        min_length=1,
        description="Unique identifier for the agent"
    )
    name: str = Field(
        default="",
        description="Human-readable name"
    )
    description: str = Field(
        default="",
        description="What the agent does"
    )
    type: AgentType = Field(
        default=AgentType.LOCAL,
        description="Deployment relationship of the agent"
    )

    # === Presence ===
    status: AgentStatus = Field(
        default=AgentStatus.ONLINE,
        description="Current agent status"
    )
    last_seen: datetime = Field(
        default_factory=utc_now,
        description="Last heartbeat or registration timestamp"
    )

    # === Capabilities ===
    capabilities: list[str] = Field(
        default_factory=list,
        description="Skills this agent can fulfill (e.g., 'echo', 'analyze_data')"
    )
    endpoint: str | None = Field(
        default=None,
        description="Optional direct endpoint of the agent"
    )

    # === Metadata ===
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional agent metadata"
    )
    version: str = Field(
        default="1.0.0",
        description="Agent software version"
    )

    def has_capability(self, capability: str) -> bool:
        return capability in self.capabilities

    def has_any_capability(self, capabilities: list[str]) -> bool:
        return any(cap in self.capabilities for cap in capabilities)

    def is_fresh(self, window_seconds: float, now: datetime | None = None) -> bool:
        """Check whether the agent was seen within the freshness window."""
        elapsed = ((now or utc_now()) - self.last_seen).total_seconds()
        return elapsed <= window_seconds

    def touch(self) -> None:
        """Update last_seen to current time."""
        self.last_seen = utc_now()

    def registration_body(self) -> dict[str, Any]:
        """Wire body for POST /register (lastSeen is set server-side)."""
        body = self.to_wire()
        body.pop("lastSeen", None)
        return body
