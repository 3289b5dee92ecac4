"""
Broker Hub

Routes JSON message frames between connected agents.

Connection lifecycle:
1. Agent connects with ?agentId=<id>
2. First frame must be an `initialize` request to "broker"; the hub
   answers with a correlated response
3. Every following frame is routed by toAgent to the target's outbound
   queue, unchanged
4. On disconnect the agent's queue is dropped

Frames addressed to an agent with no open connection (or a full queue)
are bounced to the sender as an AGENT_UNREACHABLE error correlated to
the frame id. Replies (response/error) are never bounced.
"""

import asyncio
import logging
from typing import Protocol

from fastapi import WebSocketDisconnect
from pydantic import ValidationError

from agentlink.errors import UnknownPayload
from agentlink.protocol.message import (
    BROKER_ID,
    INITIALIZE_METHOD,
    Message,
    MessageType,
    create_error,
    create_response,
)
from agentlink.protocol.payloads import (
    BuiltinMethod,
    ErrorCode,
    InitializePayload,
    PingResult,
    validate_payload,
)
from agentlink.server.directory import AgentDirectory
from agentlink.server.queue import OutboundQueues, QueueFullError

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "1.0.0"

# Policy violation close code
CLOSE_POLICY = 1008


class HubConnection(Protocol):
    """The subset of a server-side WebSocket the hub uses."""

    async def send_text(self, data: str) -> None: ...

    async def receive_text(self) -> str: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


class BrokerHub:
    """
    Message broker for agent-to-agent frames.

    Stateless apart from the open connection queues; it never stores
    or retries a frame.
    """

    def __init__(
        self,
        directory: AgentDirectory | None = None,
        queues: OutboundQueues | None = None,
        handshake_timeout: float = 10.0,
    ):
        """
        Initialize the hub.

        Args:
            directory: Marks agents as seen when they connect (optional)
            queues: Per-agent outbound queues
            handshake_timeout: Max wait for the initialize frame
        """
        self._directory = directory
        self._queues = queues or OutboundQueues()
        self._handshake_timeout = handshake_timeout

        self.frames_routed = 0
        self.frames_bounced = 0

    def is_connected(self, agent_id: str) -> bool:
        return self._queues.is_open(agent_id)

    def connected_agents(self) -> list[str]:
        return self._queues.agent_ids()

    @property
    def connection_count(self) -> int:
        return self._queues.connection_count()

    async def shutdown(self) -> None:
        await self._queues.shutdown()

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def serve(self, agent_id: str | None, conn: HubConnection) -> None:
        """
        Handle one accepted connection until it closes.

        Args:
            agent_id: Value of the agentId query parameter
            conn: The accepted connection
        """
        if not agent_id:
            await conn.close(code=CLOSE_POLICY, reason="agentId query parameter required")
            return

        if not await self._handshake(agent_id, conn):
            return

        queue = await self._queues.open(agent_id, conn.send_text)
        if self._directory is not None:
            await self._directory.heartbeat(agent_id)
        logger.info(f"Agent connected: {agent_id} ({self.connection_count} connections)")

        try:
            while True:
                raw = await conn.receive_text()
                await self.route(agent_id, raw)
        except WebSocketDisconnect:
            logger.info(f"Agent disconnected: {agent_id}")
        except Exception as e:
            logger.error(f"Connection error for {agent_id}: {e}")
        finally:
            await self._queues.close(agent_id, queue)

    async def _handshake(self, agent_id: str, conn: HubConnection) -> bool:
        try:
            raw = await asyncio.wait_for(conn.receive_text(), timeout=self._handshake_timeout)
            message = Message.from_frame(raw)
        except asyncio.TimeoutError:
            logger.warning(f"Handshake timeout for {agent_id}")
            await conn.close(code=CLOSE_POLICY, reason="Handshake timeout")
            return False
        except ValidationError as e:
            logger.warning(f"Invalid handshake frame from {agent_id}: {e.error_count()} errors")
            await conn.close(code=CLOSE_POLICY, reason="Invalid handshake frame")
            return False
        except WebSocketDisconnect:
            logger.info(f"Agent {agent_id} disconnected during handshake")
            return False

        if message.type != MessageType.REQUEST or message.method != INITIALIZE_METHOD:
            await self._reply_and_close(
                conn,
                create_error(
                    message,
                    ErrorCode.HANDSHAKE_REQUIRED.value,
                    "First frame must be an initialize request",
                    sender_id=BROKER_ID,
                ),
                "Handshake required",
            )
            return False

        try:
            init = validate_payload(InitializePayload, message.payload, INITIALIZE_METHOD)
        except UnknownPayload as e:
            await self._reply_and_close(
                conn,
                create_error(message, ErrorCode.INVALID_PAYLOAD.value, str(e), sender_id=BROKER_ID),
                "Invalid initialize payload",
            )
            return False

        if init.agent_id != agent_id or message.from_agent != agent_id:
            await self._reply_and_close(
                conn,
                create_error(
                    message,
                    ErrorCode.INVALID_PAYLOAD.value,
                    f"Handshake agent id does not match connection agent id {agent_id}",
                    sender_id=BROKER_ID,
                ),
                "Agent id mismatch",
            )
            return False

        reply = create_response(message, {
            "agentId": agent_id,
            "version": PROTOCOL_VERSION,
            "status": "connected",
        })
        reply.from_agent = BROKER_ID
        await conn.send_text(reply.to_frame())
        logger.info(f"Handshake completed for {agent_id} (client version {init.version})")
        return True

    async def _reply_and_close(self, conn: HubConnection, reply: Message, reason: str) -> None:
        try:
            await conn.send_text(reply.to_frame())
        finally:
            await conn.close(code=CLOSE_POLICY, reason=reason)

    # =========================================================================
    # Routing
    # =========================================================================

    async def route(self, sender_id: str, raw: str) -> None:
        """Forward one frame from sender_id to its toAgent."""
        try:
            message = Message.from_frame(raw)
        except ValidationError as e:
            logger.warning(f"Dropping invalid frame from {sender_id}: {e.error_count()} validation errors")
            return

        if message.from_agent != sender_id:
            logger.warning(f"Frame {message.id} claims sender {message.from_agent} on {sender_id}'s connection")
            self._send_to(sender_id, create_error(
                message,
                ErrorCode.INVALID_PAYLOAD.value,
                f"fromAgent must be {sender_id}",
                sender_id=BROKER_ID,
            ))
            return

        if message.to_agent == BROKER_ID:
            self._handle_broker_request(sender_id, message)
            return

        try:
            delivered = self._queues.offer(message.to_agent, raw)
            reason = f"Agent {message.to_agent} is not connected"
        except QueueFullError as e:
            delivered = False
            reason = str(e)

        if delivered:
            self.frames_routed += 1
            return

        self.frames_bounced += 1
        if message.is_reply():
            logger.warning(f"Dropping {message.type.value} {message.id} for {message.to_agent}: {reason}")
            return

        logger.info(f"Bouncing {message.type.value} {message.id} from {sender_id}: {reason}")
        self._send_to(sender_id, create_error(
            message,
            ErrorCode.AGENT_UNREACHABLE.value,
            reason,
            sender_id=BROKER_ID,
        ))

    def _handle_broker_request(self, sender_id: str, message: Message) -> None:
        if message.type != MessageType.REQUEST:
            logger.debug(f"Ignoring {message.type.value} addressed to the broker")
            return

        if message.method in (INITIALIZE_METHOD, BuiltinMethod.PING.value):
            reply = create_response(message, PingResult().to_wire())
            reply.from_agent = BROKER_ID
        else:
            reply = create_error(
                message,
                ErrorCode.UNKNOWN_METHOD.value,
                f"Unknown method: {message.method}",
                sender_id=BROKER_ID,
            )
        self._send_to(sender_id, reply)

    def _send_to(self, agent_id: str, message: Message) -> None:
        try:
            if not self._queues.offer(agent_id, message.to_frame()):
                logger.warning(f"Could not deliver broker {message.type.value} to {agent_id}: not connected")
        except QueueFullError as e:
            logger.warning(f"Could not deliver broker {message.type.value} to {agent_id}: {e}")
