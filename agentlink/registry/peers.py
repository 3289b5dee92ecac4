"""
Peer Snapshot

A soft-TTL cache of the registry's discover() result. It answers
capability lookups for broadcast and task distribution without a
registry round-trip on every call.

The snapshot is eventually consistent and never authoritative: it is
refreshed when older than its TTL, patched by agent_joined/agent_left
notifications, and left untouched when the registry is unreachable.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING

from agentlink.registry.agent import Agent, AgentStatus

if TYPE_CHECKING:
    from agentlink.registry.client import AgentRegistryClient

logger = logging.getLogger(__name__)


class PeerSnapshot:
    """Cached view of the other agents on the network."""

    def __init__(
        self,
        registry: "AgentRegistryClient",
        local_agent_id: str,
        ttl_seconds: float = 10.0,
    ):
        """
        Initialize the snapshot.

        Args:
            registry: Registry client used for refreshes
            local_agent_id: Own id, never included in the snapshot
            ttl_seconds: Age after which agents() refreshes from the registry
        """
        self._registry = registry
        self._local_agent_id = local_agent_id
        self._ttl = ttl_seconds
        self._agents: dict[str, Agent] = {}
        self._refreshed_at: float | None = None
        self._lock = asyncio.Lock()

    @property
    def is_stale(self) -> bool:
        if self._refreshed_at is None:
            return True
        return (time.monotonic() - self._refreshed_at) > self._ttl

    async def refresh(self) -> list[Agent]:
        """
        Replace the snapshot with a fresh discover() result.

        Raises:
            RegistryUnavailable: The snapshot is left unchanged
        """
        agents = await self._registry.discover(exclude_agent_id=self._local_agent_id)
        async with self._lock:
            self._agents = {a.id: a for a in agents if a.id != self._local_agent_id}
            self._refreshed_at = time.monotonic()
            logger.debug(f"Peer snapshot refreshed: {len(self._agents)} agents")
            return list(self._agents.values())

    async def agents(self, refresh: bool = False) -> list[Agent]:
        """Return known peers, refreshing first if stale or asked to."""
        if refresh or self.is_stale:
            return await self.refresh()
        async with self._lock:
            return list(self._agents.values())

    def cached(self) -> list[Agent]:
        """Current snapshot without any I/O."""
        return list(self._agents.values())

    def get(self, agent_id: str) -> Agent | None:
        return self._agents.get(agent_id)

    def find_by_capability(self, capability: str) -> list[Agent]:
        return [a for a in self._agents.values() if a.has_capability(capability)]

    def online(self) -> list[Agent]:
        return [a for a in self._agents.values() if a.status == AgentStatus.ONLINE]

    async def upsert(self, agent: Agent) -> None:
        if agent.id == self._local_agent_id:
            return
        async with self._lock:
            self._agents[agent.id] = agent

    async def remove(self, agent_id: str) -> None:
        async with self._lock:
            self._agents.pop(agent_id, None)
