"""
Registry and Broker Application

FastAPI application exposing the registry HTTP API and the agent stream.

HTTP (control plane):
- POST /register      Agent record -> stored record
- POST /unregister    {agentId}
- POST /heartbeat     {agentId, status?, lastSeen?}
- POST /status        {agentId, status}
- GET  /discover      ?capability=&agentId=  (agentId is excluded)
- GET  /agent/{id}    404 if unknown
- GET  /health

WebSocket (data plane):
- /ws?agentId=<id>    initialize handshake, then frames routed by toAgent

Configuration is read from A2A_* environment variables, optionally from a
.env file:
- A2A_HOST / A2A_PORT
- A2A_FRESHNESS_SECONDS / A2A_EXPIRY_SECONDS / A2A_SWEEP_INTERVAL
- A2A_REDIS_URL: Redis URL for a shared registry (in-memory otherwise)
- A2A_QUEUE_SIZE: Per-connection outbound buffer

Run with:
    python -m agentlink.server
    uvicorn agentlink.server.app:create_app_from_env --factory
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, WebSocket
from pydantic import Field

from agentlink import __version__
from agentlink.config import ServerSettings, server_settings_from_env
from agentlink.protocol.message import WireModel
from agentlink.registry.agent import Agent, AgentStatus
from agentlink.server.directory import AgentDirectory
from agentlink.server.hub import BrokerHub
from agentlink.server.queue import OutboundQueues
from agentlink.server.store import AgentStore, InMemoryAgentStore, RedisAgentStore

logger = logging.getLogger(__name__)


class AgentIdRequest(WireModel):
    agent_id: str = Field(..., min_length=1)


class StatusRequest(WireModel):
    agent_id: str = Field(..., min_length=1)
    status: AgentStatus


class HeartbeatRequest(WireModel):
    agent_id: str = Field(..., min_length=1)
    status: AgentStatus | None = None
    last_seen: datetime | None = Field(
        default=None,
        description="Client clock, informational only; the server stamps lastSeen"
    )


def create_app(
    directory: AgentDirectory | None = None,
    hub: BrokerHub | None = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        directory: Agent directory (default: in-memory)
        hub: Broker hub (default: one bound to directory)
    """
    directory = directory or AgentDirectory()
    hub = hub or BrokerHub(directory)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting agent registry and broker...")
        await directory.start()
        logger.info("Agent registry and broker started")

        yield

        logger.info("Shutting down agent registry and broker...")
        await hub.shutdown()
        await directory.stop()
        await directory.store.close()
        logger.info("Agent registry and broker stopped")

    app = FastAPI(
        title="agentlink",
        description="Agent registry and message broker for agent-to-agent coordination",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.directory = directory
    app.state.hub = hub

    # =========================================================================
    # Registry
    # =========================================================================

    @app.post("/register")
    async def register(agent: Agent) -> dict[str, Any]:
        stored = await directory.register(agent)
        return stored.to_wire()

    @app.post("/unregister")
    async def unregister(body: AgentIdRequest) -> dict[str, Any]:
        removed = await directory.unregister(body.agent_id)
        return {"agentId": body.agent_id, "removed": removed}

    @app.post("/heartbeat")
    async def heartbeat(body: HeartbeatRequest) -> dict[str, Any]:
        agent = await directory.heartbeat(body.agent_id, body.status)
        if agent is None:
            raise HTTPException(status_code=404, detail=f"Agent {body.agent_id} not registered")
        return agent.to_wire()

    @app.post("/status")
    async def update_status(body: StatusRequest) -> dict[str, Any]:
        agent = await directory.update_status(body.agent_id, body.status)
        if agent is None:
            raise HTTPException(status_code=404, detail=f"Agent {body.agent_id} not registered")
        return agent.to_wire()

    @app.get("/discover")
    async def discover(
        capability: str | None = Query(default=None),
        agent_id: str | None = Query(default=None, alias="agentId"),
    ) -> list[dict[str, Any]]:
        agents = await directory.discover(capability=capability, exclude_agent_id=agent_id)
        return [a.to_wire() for a in agents]

    @app.get("/agent/{agent_id}")
    async def get_agent(agent_id: str) -> dict[str, Any]:
        agent = await directory.get_agent(agent_id)
        if agent is None:
            raise HTTPException(status_code=404, detail=f"Agent {agent_id} not found")
        return agent.to_wire()

    @app.get("/health")
    async def health_check() -> dict[str, Any]:
        registered, fresh = await directory.count()
        return {
            "status": "healthy",
            "agents": registered,
            "online": fresh,
            "connections": hub.connection_count,
            "framesRouted": hub.frames_routed,
            "framesBounced": hub.frames_bounced,
        }

    # =========================================================================
    # Broker
    # =========================================================================

    @app.websocket("/ws")
    async def websocket_endpoint(
        websocket: WebSocket,
        agent_id: str | None = Query(default=None, alias="agentId"),
    ):
        """
        Agent stream. The first frame must be the initialize request.
        """
        await websocket.accept()
        await hub.serve(agent_id, websocket)

    return app


def create_store(settings: ServerSettings) -> AgentStore:
    if settings.redis_url:
        logger.info("Using Redis agent store")
        return RedisAgentStore.from_url(
            settings.redis_url,
            key_prefix=settings.key_prefix,
            ttl_seconds=int(settings.expiry_seconds),
        )
    return InMemoryAgentStore()


def create_app_from_settings(settings: ServerSettings) -> FastAPI:
    directory = AgentDirectory(
        create_store(settings),
        freshness_seconds=settings.freshness_seconds,
        expiry_seconds=settings.expiry_seconds,
        sweep_interval_seconds=settings.sweep_interval,
    )
    hub = BrokerHub(directory, OutboundQueues(max_queue_size=settings.queue_size))
    return create_app(directory, hub)


def create_app_from_env() -> FastAPI:
    load_dotenv()
    return create_app_from_settings(server_settings_from_env())


def main() -> None:
    """Run the server."""
    load_dotenv()
    settings = server_settings_from_env()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    uvicorn.run(
        create_app_from_settings(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
