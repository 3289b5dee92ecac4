"""
Agent Store

Storage port for the registry plus two adapters:

- InMemoryAgentStore: single-process development and tests
- RedisAgentStore: shared registry for several server replicas,
  with key TTLs as a second line of expiry

The store only persists records; freshness and expiry rules live in
AgentDirectory.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod

from pydantic import ValidationError
from redis.asyncio import Redis

from agentlink.registry.agent import Agent


class AgentStore(ABC):
    """
    Storage interface for registered agents.
    """

    @abstractmethod
    async def put(self, agent: Agent) -> Agent:
        """
        Create or replace the record for agent.id.

        Returns:
            The stored record
        """
        ...

    @abstractmethod
    async def get(self, agent_id: str) -> Agent | None:
        ...

    @abstractmethod
    async def remove(self, agent_id: str) -> bool:
        """
        Delete a record.

        Returns:
            True if removed, False if not found
        """
        ...

    @abstractmethod
    async def list_all(self) -> list[Agent]:
        """All records, in a stable order."""
        ...

    async def close(self) -> None:
        """Release connections held by the adapter."""


class InMemoryAgentStore(AgentStore):
    def __init__(self) -> None:
        self._agents: dict[str, Agent] = {}
        self._lock = asyncio.Lock()

    async def put(self, agent: Agent) -> Agent:
        async with self._lock:
            self._agents[agent.id] = agent.model_copy(deep=True)
            return agent

    async def get(self, agent_id: str) -> Agent | None:
        agent = self._agents.get(agent_id)
        return agent.model_copy(deep=True) if agent else None

    async def remove(self, agent_id: str) -> bool:
        async with self._lock:
            return self._agents.pop(agent_id, None) is not None

    async def list_all(self) -> list[Agent]:
        return [a.model_copy(deep=True) for a in self._agents.values()]


def _text(value: bytes | str) -> str:
    return value.decode() if isinstance(value, bytes) else value


class RedisAgentStore(AgentStore):
    """
    Redis-based agent store.

    Key patterns:
    - {prefix}:agent:{agent_id} -> JSON-encoded Agent (expires after ttl)
    - {prefix}:agents -> SET of agent ids

    Index entries whose record expired are pruned on list_all().
    """

    def __init__(
        self,
        redis: Redis,
        key_prefix: str = "a2a",
        ttl_seconds: int = 300,
    ) -> None:
        """
        Initialize Redis agent store.

        Args:
            redis: Redis async client
            key_prefix: Prefix for all keys
            ttl_seconds: TTL for agent records, refreshed on every put
        """
        self._redis = redis
        self._prefix = key_prefix
        self._ttl = ttl_seconds

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "a2a", ttl_seconds: int = 300) -> "RedisAgentStore":
        return cls(Redis.from_url(url), key_prefix=key_prefix, ttl_seconds=ttl_seconds)

    def _agent_key(self, agent_id: str) -> str:
        return f"{self._prefix}:agent:{agent_id}"

    def _index_key(self) -> str:
        return f"{self._prefix}:agents"

    def _deserialize(self, data: bytes | str) -> Agent | None:
        try:
            return Agent.model_validate_json(_text(data))
        except ValidationError:
            return None

    async def put(self, agent: Agent) -> Agent:
        await self._redis.set(
            self._agent_key(agent.id),
            agent.model_dump_json(by_alias=True),
            ex=self._ttl,
        )
        await self._redis.sadd(self._index_key(), agent.id)
        return agent

    async def get(self, agent_id: str) -> Agent | None:
        data = await self._redis.get(self._agent_key(agent_id))
        if not data:
            return None
        return self._deserialize(data)

    async def remove(self, agent_id: str) -> bool:
        await self._redis.srem(self._index_key(), agent_id)
        deleted = await self._redis.delete(self._agent_key(agent_id))
        return deleted > 0

    async def list_all(self) -> list[Agent]:
        agent_ids = [_text(a) for a in await self._redis.smembers(self._index_key())]
        if not agent_ids:
            return []

        # Pipeline fetch for efficiency
        pipe = self._redis.pipeline()
        for agent_id in agent_ids:
            pipe.get(self._agent_key(agent_id))
        values = await pipe.execute()

        agents: list[Agent] = []
        expired: list[str] = []
        for agent_id, value in zip(agent_ids, values):
            agent = self._deserialize(value) if value else None
            if agent is None:
                expired.append(agent_id)
            else:
                agents.append(agent)

        if expired:
            await self._redis.srem(self._index_key(), *expired)

        return sorted(agents, key=lambda a: a.id)

    async def close(self) -> None:
        await self._redis.aclose()
