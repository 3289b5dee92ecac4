"""Pytest configuration and fixtures."""

import asyncio
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
import pytest_asyncio
from fastapi import WebSocketDisconnect

from agentlink.config import NodeSettings
from agentlink.node import AgentNode
from agentlink.registry.client import AgentRegistryClient
from agentlink.server.app import create_app
from agentlink.server.directory import AgentDirectory
from agentlink.server.hub import BrokerHub


REGISTRY_URL = "http://testserver"
BROKER_URL = "ws://testserver/ws"


class ClientSide:
    """Agent end of an in-process connection (what Transport sees)."""

    def __init__(self):
        self.inbox: asyncio.Queue[str | None] = asyncio.Queue()
        self.peer: "ServerSide | None" = None
        self.closed = False

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionError("connection closed")
        self.peer.inbox.put_nowait(message)

    async def recv(self) -> str:
        item = await self.inbox.get()
        if item is None:
            self.closed = True
            raise ConnectionError("connection closed by peer")
        return item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.peer.inbox.put_nowait(None)


class ServerSide:
    """Broker end of an in-process connection (what BrokerHub sees)."""

    def __init__(self):
        self.inbox: asyncio.Queue[str | None] = asyncio.Queue()
        self.peer: ClientSide | None = None
        self.closed = False
        self.close_code: int | None = None

    async def send_text(self, data: str) -> None:
        if self.closed:
            raise RuntimeError("connection closed")
        self.peer.inbox.put_nowait(data)

    async def receive_text(self) -> str:
        item = await self.inbox.get()
        if item is None:
            self.closed = True
            raise WebSocketDisconnect(code=1000)
        return item

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        if not self.closed:
            self.closed = True
            self.close_code = code
            self.peer.inbox.put_nowait(None)


class FakeNetwork:
    """
    Connector that plugs agent transports straight into a BrokerHub.
    """

    def __init__(self, hub: BrokerHub):
        self.hub = hub
        self.down = False
        self.connections: dict[str, list[tuple[ClientSide, ServerSide]]] = {}
        self._tasks: list[asyncio.Task] = []

    async def connect(self, url: str) -> ClientSide:
        if self.down:
            raise ConnectionRefusedError("network down")

        agent_id = parse_qs(urlsplit(url).query)["agentId"][0]
        client, server = ClientSide(), ServerSide()
        client.peer, server.peer = server, client
        self.connections.setdefault(agent_id, []).append((client, server))
        self._tasks.append(asyncio.create_task(self.hub.serve(agent_id, server)))
        return client

    def drop(self, agent_id: str) -> None:
        """Sever the agent's current connection from both ends."""
        client, server = self.connections[agent_id][-1]
        client.closed = True
        server.closed = True
        client.inbox.put_nowait(None)
        server.inbox.put_nowait(None)

    def connection_count(self, agent_id: str) -> int:
        return len(self.connections.get(agent_id, []))

    async def close(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.hub.shutdown()


async def _eventually(predicate, timeout: float = 2.0, interval: float = 0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if result:
            return result
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def eventually():
    """Poll a predicate until it is truthy."""
    return _eventually


@pytest.fixture
def directory():
    """Create an in-memory agent directory."""
    return AgentDirectory()


@pytest.fixture
def hub(directory):
    return BrokerHub(directory)


@pytest.fixture
def app(directory, hub):
    return create_app(directory, hub)


@pytest_asyncio.fixture
async def registry(app):
    """Registry client talking to the app in-process."""
    client = AgentRegistryClient(REGISTRY_URL, transport=httpx.ASGITransport(app=app))
    await client.open()
    yield client
    await client.close()


@pytest_asyncio.fixture
async def network(hub):
    net = FakeNetwork(hub)
    yield net
    await net.close()


@pytest_asyncio.fixture
async def make_node(app, hub, network):
    """
    Factory for connected AgentNodes sharing one registry and broker.
    """
    nodes: list[AgentNode] = []

    async def factory(agent_id: str, capabilities: list[str] | None = None, **overrides) -> AgentNode:
        settings = NodeSettings(
            agent_id=agent_id,
            capabilities=capabilities or [],
            registry_url=REGISTRY_URL,
            broker_url=BROKER_URL,
            heartbeat_interval=3600.0,
            message_timeout=5.0,
            reconnect_delay=0.02,
            discovery_ttl=0.0,
        )
        for key, value in overrides.items():
            setattr(settings, key, value)

        node = AgentNode.from_settings(
            settings,
            registry_transport=httpx.ASGITransport(app=app),
            connector=network.connect,
        )
        await node.open()
        nodes.append(node)
        await _eventually(lambda: node.transport.is_connected and hub.is_connected(agent_id))
        return node

    yield factory

    for node in reversed(nodes):
        await node.close()
