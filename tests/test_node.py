"""Tests for AgentNode composition and lifecycle."""

import asyncio

import httpx
import pytest

from agentlink.config import NodeSettings
from agentlink.errors import RegistryUnavailable
from agentlink.node import AgentNode
from agentlink.registry.agent import AgentStatus
from agentlink.routing.router import MessageDirection
from agentlink.tasks.task import TaskSpec
from agentlink.transport.connection import ConnectionState


class TestLifecycle:
    """Tests for open / close."""

    @pytest.mark.asyncio
    async def test_open_registers_and_connects(self, make_node, directory, hub):
        node = await make_node("a", ["echo"])

        registered = await directory.get_agent("a")
        assert registered.capabilities == ["echo"]
        assert node.is_open
        assert node.heartbeat.is_running
        assert hub.is_connected("a")

    @pytest.mark.asyncio
    async def test_close_unregisters(self, make_node, directory, hub, eventually):
        node = await make_node("a")

        await node.close()

        assert await directory.get_agent("a") is None
        assert node.transport.state == ConnectionState.CLOSED
        assert not node.heartbeat.is_running
        await eventually(lambda: not hub.is_connected("a"))

        await node.close()

    @pytest.mark.asyncio
    async def test_open_fails_when_registry_down(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        settings = NodeSettings(agent_id="a", registry_url="http://registry", broker_url="ws://broker/ws")
        node = AgentNode.from_settings(settings, registry_transport=httpx.MockTransport(handler))

        with pytest.raises(RegistryUnavailable):
            await node.open()

        assert not node.is_open
        assert node.transport.state == ConnectionState.DISCONNECTED
        assert not node.heartbeat.is_running

    @pytest.mark.asyncio
    async def test_context_manager(self, app, network, directory):
        settings = NodeSettings(agent_id="ctx", registry_url="http://testserver", broker_url="ws://testserver/ws")
        node = AgentNode.from_settings(
            settings,
            registry_transport=httpx.ASGITransport(app=app),
            connector=network.connect,
        )

        async with node:
            assert await directory.get_agent("ctx") is not None

        assert await directory.get_agent("ctx") is None


class TestPresence:
    """Tests for peer tracking and status."""

    @pytest.mark.asyncio
    async def test_peers_learn_about_joins_and_leaves(self, make_node, eventually):
        a = await make_node("a")
        b = await make_node("b", ["echo"])

        await eventually(lambda: a.peers.get("b") is not None)
        assert a.peers.get("b").capabilities == ["echo"]

        await b.close()
        await eventually(lambda: a.peers.get("b") is None)

    @pytest.mark.asyncio
    async def test_set_status(self, make_node, directory):
        node = await make_node("a")

        await node.set_status(AgentStatus.BUSY)

        assert node.agent.status == AgentStatus.BUSY
        assert (await directory.get_agent("a")).status == AgentStatus.BUSY

    @pytest.mark.asyncio
    async def test_find_agents_by_capability(self, make_node):
        a = await make_node("a")
        await make_node("b", ["echo"])
        await make_node("c", ["math"])

        found = await a.find_agents_by_capability("math")
        discovered = await a.discover("echo")

        assert [p.id for p in found] == ["c"]
        assert [p.id for p in discovered] == ["b"]


class TestDelivery:
    """Tests for messages sent across a broker outage."""

    @pytest.mark.asyncio
    async def test_send_while_disconnected_arrives_once(self, make_node, network, eventually):
        a = await make_node("a")
        b = await make_node("b")

        received = []

        async def record(message, direction):
            if direction == MessageDirection.INBOUND and message.payload == {"x": 1}:
                received.append(message.id)

        b.router.add_message_hook(record)

        network.down = True
        network.drop("a")
        await eventually(lambda: not a.transport.is_connected)

        sent = await a.router.send("b", {"x": 1}, method="ping")
        await asyncio.sleep(0.05)
        assert received == []

        network.down = False
        await eventually(lambda: received)
        await asyncio.sleep(0.1)

        assert received == [sent.id]
        assert network.connection_count("a") == 2


class TestIntrospection:
    @pytest.mark.asyncio
    async def test_network_stats(self, make_node):
        a = await make_node("a")
        b = await make_node("b")

        async def echo(task):
            return task.parameters

        b.tasks.register_executor("echo", echo)
        task = await a.tasks.assign_task("b", TaskSpec(name="echo"))
        await a.tasks.wait_for_task(task.id, timeout=2.0)
        await a.conversations.start_conversation(["b"])
        await a.discover()

        stats = a.network_stats()

        assert stats["agent_id"] == "a"
        assert stats["connection"] == "connected"
        assert stats["known_peers"] == 1
        assert stats["tasks"] == {"completed": 1}
        assert stats["active_conversations"] == 1
        assert stats["pending_requests"] == 0

    @pytest.mark.asyncio
    async def test_export_registry(self, make_node):
        a = await make_node("a", ["echo"])
        await make_node("b")
        await a.discover()
        await a.conversations.start_conversation(["b"])

        snapshot = a.export_registry()

        assert snapshot["agent"]["id"] == "a"
        assert snapshot["agent"]["capabilities"] == ["echo"]
        assert [p["id"] for p in snapshot["peers"]] == ["b"]
        assert len(snapshot["conversations"]) == 1
        assert snapshot["tasks"] == []
