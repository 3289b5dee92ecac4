"""
Agent Node

Composes the components of one local agent:

    AgentRegistryClient  - control plane (register, heartbeat, discover)
    Transport            - stream to the broker, reconnecting
    PeerSnapshot         - cached discover() result
    MessageRouter        - send / correlate / dispatch
    TaskCoordinator      - task assignment and execution
    ConversationManager  - conversation threads
    HeartbeatMonitor     - presence refresh

Usage:
    async with AgentNode.from_settings(node_settings_from_env()) as node:
        node.tasks.register_executor("echo", echo)
        reply = await node.router.request("other-agent", "ping")
"""

from __future__ import annotations

import logging
import random
from collections import Counter
from typing import Any

import httpx

from agentlink.config import NodeSettings
from agentlink.conversation.conversation import ConversationStatus
from agentlink.conversation.manager import ConversationManager
from agentlink.errors import RegistryUnavailable, TransportClosed
from agentlink.heartbeat.monitor import HeartbeatMonitor
from agentlink.protocol.payloads import (
    AgentJoinedData,
    AgentLeftData,
    Notification,
    NotificationType,
)
from agentlink.registry.agent import Agent, AgentStatus
from agentlink.registry.client import AgentRegistryClient
from agentlink.registry.peers import PeerSnapshot
from agentlink.routing.router import MessageRouter
from agentlink.tasks.coordinator import TaskCoordinator
from agentlink.transport.connection import Connector, Transport

logger = logging.getLogger(__name__)


class AgentNode:
    """
    One local agent and everything it needs to take part in the network.

    open() registers and connects; close() tears down in reverse order.
    Components are exposed as attributes for direct use.
    """

    def __init__(
        self,
        agent: Agent,
        registry: AgentRegistryClient,
        transport: Transport,
        heartbeat_interval: float = 30.0,
        message_timeout: float = 60.0,
        discovery_ttl: float = 10.0,
        rng: random.Random | None = None,
    ):
        self.agent = agent
        self.registry = registry
        self.transport = transport
        self.peers = PeerSnapshot(registry, agent.id, ttl_seconds=discovery_ttl)
        self.router = MessageRouter(agent, transport, self.peers, default_timeout=message_timeout)
        self.tasks = TaskCoordinator(self.router, self.peers, rng=rng)
        self.conversations = ConversationManager(self.router)
        self.heartbeat = HeartbeatMonitor(
            registry,
            agent.id,
            status_provider=lambda: self.agent.status,
            interval_seconds=heartbeat_interval,
            on_unknown_agent=lambda: self.registry.register(self.agent),
        )

        self.router.on_notification(NotificationType.AGENT_JOINED, self._on_agent_joined)
        self.router.on_notification(NotificationType.AGENT_LEFT, self._on_agent_left)

        self._opened = False

    @classmethod
    def from_settings(
        cls,
        settings: NodeSettings,
        registry_transport: httpx.AsyncBaseTransport | None = None,
        connector: Connector | None = None,
        rng: random.Random | None = None,
    ) -> "AgentNode":
        """
        Build a node from settings.

        registry_transport and connector replace the network for
        in-process use (tests, embedded servers).
        """
        agent = Agent(
            id=settings.agent_id,
            name=settings.name or settings.agent_id,
            description=settings.description,
            capabilities=list(settings.capabilities),
        )
        registry = AgentRegistryClient(
            settings.registry_url,
            timeout_seconds=settings.registry_timeout,
            transport=registry_transport,
        )
        transport = Transport(
            agent.id,
            settings.broker_url,
            backoff=settings.backoff_policy(),
            max_retries=settings.max_retries,
            connector=connector,
            version=agent.version,
        )
        return cls(
            agent,
            registry,
            transport,
            heartbeat_interval=settings.heartbeat_interval,
            message_timeout=settings.message_timeout,
            discovery_ttl=settings.discovery_ttl,
            rng=rng,
        )

    @property
    def agent_id(self) -> str:
        return self.agent.id

    @property
    def is_open(self) -> bool:
        return self._opened

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def open(self) -> None:
        """
        Register, connect and start heartbeats.

        Raises:
            RegistryUnavailable: Registration failed; nothing was started
        """
        if self._opened:
            return

        await self.registry.open()
        try:
            registered = await self.registry.register(self.agent)
        except RegistryUnavailable:
            await self.registry.close()
            raise
        self.agent.last_seen = registered.last_seen

        self.router.start()
        await self.transport.start()
        await self.heartbeat.start()
        self._opened = True

        try:
            peers = await self.peers.refresh()
        except RegistryUnavailable as e:
            logger.warning(f"Initial discovery failed for {self.agent_id}: {e.reason}")
            peers = []

        for peer in peers:
            await self._notify_peer(peer.id, NotificationType.AGENT_JOINED, AgentJoinedData(agent=self.agent))

        logger.info(f"Agent {self.agent_id} online with {len(peers)} known peers")

    async def close(self) -> None:
        """Stop heartbeats, unregister, disconnect. Queued messages are dropped."""
        if not self._opened:
            return
        self._opened = False

        await self.heartbeat.stop()

        for peer in self.peers.cached():
            await self._notify_peer(peer.id, NotificationType.AGENT_LEFT, AgentLeftData(agent_id=self.agent_id))

        try:
            await self.registry.unregister(self.agent_id)
        except RegistryUnavailable as e:
            logger.warning(f"Unregister of {self.agent_id} failed: {e.reason}")

        await self.tasks.close()
        await self.transport.close()
        await self.router.close()
        await self.registry.close()
        logger.info(f"Agent {self.agent_id} closed")

    async def __aenter__(self) -> "AgentNode":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _notify_peer(self, agent_id: str, notification_type: NotificationType, data: Any) -> None:
        try:
            await self.router.notify(agent_id, notification_type, data)
        except TransportClosed:
            logger.debug(f"Skipped {notification_type.value} to {agent_id}: transport closed")

    async def _on_agent_joined(self, notification: Notification) -> None:
        data: AgentJoinedData = notification.data
        if data.agent.id != notification.sender:
            logger.warning(f"Ignoring agent_joined for {data.agent.id} sent by {notification.sender}")
            return
        await self.peers.upsert(data.agent)
        logger.info(f"Peer joined: {data.agent.id} ({data.agent.capabilities})")

    async def _on_agent_left(self, notification: Notification) -> None:
        data: AgentLeftData = notification.data
        await self.peers.remove(data.agent_id)
        logger.info(f"Peer left: {data.agent_id}")

    # =========================================================================
    # Presence and discovery
    # =========================================================================

    async def set_status(self, status: AgentStatus) -> None:
        """
        Change the local status and report it to the registry.

        The local status changes even if the registry call fails; the next
        heartbeat carries it.

        Raises:
            RegistryUnavailable
        """
        self.agent.status = status
        await self.registry.update_status(self.agent_id, status)

    async def discover(self, capability: str | None = None) -> list[Agent]:
        """Ask the registry for peers, refreshing the snapshot on a full query."""
        if capability is None:
            return await self.peers.refresh()
        return await self.registry.discover(capability=capability, exclude_agent_id=self.agent_id)

    async def find_agents_by_capability(self, capability: str) -> list[Agent]:
        """Capability lookup against the peer snapshot (refreshed when stale)."""
        agents = await self.peers.agents()
        return [a for a in agents if a.has_capability(capability)]

    # =========================================================================
    # Introspection
    # =========================================================================

    def network_stats(self) -> dict[str, Any]:
        """Return a summary for logging/debugging."""
        peers = self.peers.cached()
        task_counts = Counter(t.status.value for t in self.tasks.list_tasks())
        return {
            "agent_id": self.agent_id,
            "status": self.agent.status.value,
            "connection": self.transport.state.value,
            "queued_messages": self.transport.queued_count,
            "pending_requests": self.router.pending_count,
            "known_peers": len(peers),
            "online_peers": len(self.peers.online()),
            "tasks": dict(task_counts),
            "active_conversations": len(
                self.conversations.list_conversations(status=ConversationStatus.ACTIVE)
            ),
            "heartbeat_failures": self.heartbeat.consecutive_failures,
        }

    def export_registry(self) -> dict[str, Any]:
        """Snapshot of the local view: self, peers, conversations and tasks."""
        return {
            "agent": self.agent.to_wire(),
            "peers": [a.to_wire() for a in self.peers.cached()],
            "conversations": [c.to_wire() for c in self.conversations.list_conversations()],
            "tasks": [t.to_wire() for t in self.tasks.list_tasks()],
        }
