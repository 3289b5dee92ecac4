"""
Agent Directory

Registry semantics on top of an AgentStore:

- register is idempotent per id and stamps last_seen
- heartbeat refreshes last_seen and the reported status
- discover only returns agents seen within the freshness window
- a background sweep removes agents unseen for expiry_seconds

Why two thresholds?
- The freshness window hides agents that stopped heartbeating quickly
- Expiry keeps their record around long enough to come back without
  re-registering
"""

import asyncio
import logging
from datetime import timedelta

from agentlink.registry.agent import Agent, AgentStatus
from agentlink.protocol.message import utc_now
from agentlink.server.store import AgentStore, InMemoryAgentStore

logger = logging.getLogger(__name__)


class AgentDirectory:
    """
    Manages agent registration, presence, and capability lookup.
    """

    def __init__(
        self,
        store: AgentStore | None = None,
        freshness_seconds: float = 90.0,
        expiry_seconds: float = 300.0,
        sweep_interval_seconds: float = 30.0,
    ):
        """
        Initialize the directory.

        Args:
            store: Storage adapter (default: in-memory)
            freshness_seconds: Max age of last_seen for discover()
            expiry_seconds: Age after which an agent is removed
            sweep_interval_seconds: How often to check for expired agents
        """
        self._store = store or InMemoryAgentStore()
        self._freshness = freshness_seconds
        self._expiry = expiry_seconds
        self._sweep_interval = sweep_interval_seconds

        # Serializes read-modify-write on records
        self._lock = asyncio.Lock()

        self._sweep_task: asyncio.Task | None = None

    @property
    def store(self) -> AgentStore:
        return self._store

    async def start(self) -> None:
        """Start background sweep task."""
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info("Agent directory sweep task started")

    async def stop(self) -> None:
        """Stop background sweep task."""
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
            logger.info("Agent directory sweep task stopped")

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._sweep_interval)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in sweep loop: {e}")

    async def sweep(self) -> list[str]:
        """Remove agents not seen within expiry_seconds. Returns removed ids."""
        cutoff = utc_now() - timedelta(seconds=self._expiry)
        removed = []
        async with self._lock:
            for agent in await self._store.list_all():
                if agent.last_seen < cutoff:
                    await self._store.remove(agent.id)
                    removed.append(agent.id)
                    logger.info(f"Agent {agent.id} expired (last seen: {agent.last_seen})")
        return removed

    # =========================================================================
    # Registration
    # =========================================================================

    async def register(self, agent: Agent) -> Agent:
        """Create or replace the record, stamping last_seen."""
        async with self._lock:
            existing = await self._store.get(agent.id)
            agent.touch()
            stored = await self._store.put(agent)

        if existing is not None:
            logger.info(f"Agent re-registered: {agent.id} ({agent.name})")
        else:
            logger.info(f"Agent registered: {agent.id} ({agent.name}) capabilities={agent.capabilities}")
        return stored

    async def unregister(self, agent_id: str) -> bool:
        async with self._lock:
            removed = await self._store.remove(agent_id)
        if removed:
            logger.info(f"Agent unregistered: {agent_id}")
        return removed

    async def heartbeat(self, agent_id: str, status: AgentStatus | None = None) -> Agent | None:
        """
        Refresh last_seen (and status if given).

        Returns:
            Updated record, or None if the agent is unknown
        """
        async with self._lock:
            agent = await self._store.get(agent_id)
            if agent is None:
                return None
            agent.touch()
            if status is not None:
                agent.status = status
            return await self._store.put(agent)

    async def update_status(self, agent_id: str, status: AgentStatus) -> Agent | None:
        return await self.heartbeat(agent_id, status)

    # =========================================================================
    # Lookup
    # =========================================================================

    async def get_agent(self, agent_id: str) -> Agent | None:
        return await self._store.get(agent_id)

    async def discover(
        self,
        capability: str | None = None,
        exclude_agent_id: str | None = None,
    ) -> list[Agent]:
        """Fresh agents, optionally filtered by capability, minus the requester."""
        now = utc_now()
        agents = await self._store.list_all()
        return [
            a for a in agents
            if a.is_fresh(self._freshness, now)
            and a.id != exclude_agent_id
            and (capability is None or a.has_capability(capability))
        ]

    async def count(self) -> tuple[int, int]:
        """(registered, fresh) agent counts."""
        now = utc_now()
        agents = await self._store.list_all()
        return len(agents), sum(1 for a in agents if a.is_fresh(self._freshness, now))
