"""
Configuration

Environment-based settings for agent nodes and the registry/broker server.

Usage:
    # From environment (and a .env file, loaded by the caller)
    settings = node_settings_from_env()
    node = AgentNode.from_settings(settings)

    # Explicit
    settings = NodeSettings(agent_id="calc", capabilities=["math"])
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from agentlink.transport.backoff import BackoffKind, BackoffPolicy


def _split(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class NodeSettings:
    """
    Configuration for one local agent.

    Attributes:
        agent_id: Unique agent id
        name: Display name (defaults to agent_id)
        description: Free text shown in discovery
        capabilities: Advertised capability tags
        registry_url: Base URL of the registry HTTP API
        broker_url: Stream URL of the broker
        heartbeat_interval: Seconds between heartbeats
        message_timeout: Default ceiling for request replies
        max_retries: Write attempts per queued message beyond the first
        reconnect_delay: Base reconnect delay in seconds
        backoff: fixed or exponential reconnect delays
        max_reconnect_delay: Upper bound for exponential delays
        discovery_ttl: Peer snapshot soft TTL in seconds
        registry_timeout: Per-call timeout of registry requests
    """
    agent_id: str
    name: str = ""
    description: str = ""
    capabilities: list[str] = field(default_factory=list)
    registry_url: str = "http://localhost:8000"
    broker_url: str = "ws://localhost:8000/ws"
    heartbeat_interval: float = 30.0
    message_timeout: float = 60.0
    max_retries: int = 3
    reconnect_delay: float = 5.0
    backoff: BackoffKind = BackoffKind.FIXED
    max_reconnect_delay: float = 60.0
    discovery_ttl: float = 10.0
    registry_timeout: float = 10.0

    def backoff_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            kind=self.backoff,
            base_delay=self.reconnect_delay,
            max_delay=self.max_reconnect_delay,
        )


@dataclass
class ServerSettings:
    """
    Configuration for the registry/broker server.

    Attributes:
        host: Bind address
        port: Bind port
        freshness_seconds: discover() only returns agents seen this recently
        expiry_seconds: Agents unseen this long are removed
        sweep_interval: Seconds between expiry sweeps
        redis_url: Use RedisAgentStore when set, in-memory otherwise
        key_prefix: Prefix for Redis keys
        queue_size: Outbound frames buffered per connection
        log_level: Root logging level
    """
    host: str = "0.0.0.0"
    port: int = 8000
    freshness_seconds: float = 90.0
    expiry_seconds: float = 300.0
    sweep_interval: float = 30.0
    redis_url: str | None = None
    key_prefix: str = "a2a"
    queue_size: int = 100
    log_level: str = "INFO"


def node_settings_from_env() -> NodeSettings:
    """
    Create NodeSettings from environment variables.

    Environment variables:
        A2A_AGENT_ID: Agent id (required)
        A2A_AGENT_NAME, A2A_AGENT_DESCRIPTION
        A2A_CAPABILITIES: Comma-separated capability list
        A2A_REGISTRY_URL: Registry base URL
        A2A_BROKER_URL: Broker stream URL
        A2A_HEARTBEAT_INTERVAL: Seconds
        A2A_MESSAGE_TIMEOUT: Seconds
        A2A_MAX_RETRIES: Integer
        A2A_RECONNECT_DELAY: Seconds
        A2A_BACKOFF: "fixed" or "exponential"
        A2A_MAX_RECONNECT_DELAY: Seconds
        A2A_DISCOVERY_TTL: Seconds

    Raises:
        ValueError: If A2A_AGENT_ID is missing
    """
    agent_id = os.getenv("A2A_AGENT_ID")
    if not agent_id:
        raise ValueError("A2A_AGENT_ID must be set")

    return NodeSettings(
        agent_id=agent_id,
        name=os.getenv("A2A_AGENT_NAME", agent_id),
        description=os.getenv("A2A_AGENT_DESCRIPTION", ""),
        capabilities=_split(os.getenv("A2A_CAPABILITIES")),
        registry_url=os.getenv("A2A_REGISTRY_URL", "http://localhost:8000"),
        broker_url=os.getenv("A2A_BROKER_URL", "ws://localhost:8000/ws"),
        heartbeat_interval=float(os.getenv("A2A_HEARTBEAT_INTERVAL", "30")),
        message_timeout=float(os.getenv("A2A_MESSAGE_TIMEOUT", "60")),
        max_retries=int(os.getenv("A2A_MAX_RETRIES", "3")),
        reconnect_delay=float(os.getenv("A2A_RECONNECT_DELAY", "5")),
        backoff=BackoffKind(os.getenv("A2A_BACKOFF", "fixed").lower()),
        max_reconnect_delay=float(os.getenv("A2A_MAX_RECONNECT_DELAY", "60")),
        discovery_ttl=float(os.getenv("A2A_DISCOVERY_TTL", "10")),
    )


def server_settings_from_env() -> ServerSettings:
    """
    Create ServerSettings from environment variables.

    Environment variables:
        A2A_HOST, A2A_PORT
        A2A_FRESHNESS_SECONDS: discover() freshness window
        A2A_EXPIRY_SECONDS: Removal threshold
        A2A_SWEEP_INTERVAL: Seconds between sweeps
        A2A_REDIS_URL: Redis connection URL (optional)
        A2A_KEY_PREFIX: Redis key prefix
        A2A_QUEUE_SIZE: Per-connection outbound buffer
        A2A_LOG_LEVEL: DEBUG, INFO, WARNING...
    """
    return ServerSettings(
        host=os.getenv("A2A_HOST", "0.0.0.0"),
        port=int(os.getenv("A2A_PORT", "8000")),
        freshness_seconds=float(os.getenv("A2A_FRESHNESS_SECONDS", "90")),
        expiry_seconds=float(os.getenv("A2A_EXPIRY_SECONDS", "300")),
        sweep_interval=float(os.getenv("A2A_SWEEP_INTERVAL", "30")),
        redis_url=os.getenv("A2A_REDIS_URL") or None,
        key_prefix=os.getenv("A2A_KEY_PREFIX", "a2a"),
        queue_size=int(os.getenv("A2A_QUEUE_SIZE", "100")),
        log_level=os.getenv("A2A_LOG_LEVEL", "INFO").upper(),
    )
