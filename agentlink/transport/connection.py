"""
Agent Transport

The agent side of the streaming connection to the broker. Owns raw
send/receive and the reconnection state machine:

    DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED -> ...
    any state    -> CLOSED (only via close())

Design:
- One supervised reconnect task per transport, cancelled by close()
- Handshake: an `initialize` request answered by the broker
- Outbound messages are written directly while connected, otherwise
  appended to a FIFO outbox that is flushed in enqueue order on the
  next successful connection
- A single write lock serializes direct writes and flushes, so a message
  sent during a flush lands behind the flushed ones
- Failed writes are retried on the next connection up to max_retries
- Inbound frames are parsed into Message and published as events
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Awaitable, Callable, Protocol
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import websockets
from pydantic import ValidationError

from agentlink.errors import ConnectionLost, TransportClosed
from agentlink.protocol.message import (
    Message,
    MessageStatus,
    MessageType,
    create_initialize,
)
from agentlink.transport.backoff import BackoffPolicy
from agentlink.transport.events import (
    Connected,
    Disconnected,
    FrameRejected,
    MessageReceived,
    TransportEvent,
    TransportListener,
)

logger = logging.getLogger(__name__)


class StreamConnection(Protocol):
    """The subset of a websockets client connection the transport uses."""

    async def send(self, message: str) -> None: ...

    async def recv(self) -> str | bytes: ...

    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[StreamConnection]]


async def websocket_connector(url: str) -> StreamConnection:
    """Default connector: a websockets client connection."""
    return await websockets.connect(url)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


class Transport:
    """
    Reconnecting message transport for one local agent.

    Connection failures never reach callers of send(); they are reported
    to observers as Disconnected events and recovered by the reconnect loop.
    """

    def __init__(
        self,
        agent_id: str,
        url: str,
        backoff: BackoffPolicy | None = None,
        max_retries: int = 3,
        handshake_timeout: float = 10.0,
        connector: Connector | None = None,
        version: str = "1.0.0",
    ):
        """
        Initialize the transport.

        Args:
            agent_id: Local agent id, sent as ?agentId= and in the handshake
            url: Broker stream URL (e.g., ws://localhost:8000/ws)
            backoff: Reconnect delay policy (default: fixed 5s)
            max_retries: Write attempts per message beyond the first
            handshake_timeout: Max wait for the initialize reply
            connector: Opens a StreamConnection for a URL
            version: Protocol version announced in the handshake
        """
        self._agent_id = agent_id
        self._url = self._with_agent_id(url, agent_id)
        self._backoff = backoff or BackoffPolicy()
        self._max_retries = max_retries
        self._handshake_timeout = handshake_timeout
        self._connect = connector or websocket_connector
        self._version = version

        self._state = ConnectionState.DISCONNECTED
        self._conn: StreamConnection | None = None
        self._outbox: deque[Message] = deque()
        self._write_lock = asyncio.Lock()
        self._listeners: list[TransportListener] = []
        self._task: asyncio.Task | None = None
        self._connected_event = asyncio.Event()

    @staticmethod
    def _with_agent_id(url: str, agent_id: str) -> str:
        parts = urlsplit(url)
        query = [(k, v) for k, v in parse_qsl(parts.query) if k != "agentId"]
        query.append(("agentId", agent_id))
        return urlunsplit(parts._replace(query=urlencode(query)))

    # =========================================================================
    # State
    # =========================================================================

    @property
    def url(self) -> str:
        return self._url

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def queued_count(self) -> int:
        """Messages waiting for the next connection."""
        return len(self._outbox)

    def queued_messages(self) -> list[Message]:
        return list(self._outbox)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        logger.info(f"Transport {self._agent_id}: {self._state.value} -> {state.value}")
        self._state = state
        if state == ConnectionState.CONNECTED:
            self._connected_event.set()
        else:
            self._connected_event.clear()

    async def wait_connected(self, timeout: float | None = None) -> bool:
        """Wait until CONNECTED. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    # =========================================================================
    # Observers
    # =========================================================================

    def subscribe(self, listener: TransportListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: TransportListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _emit(self, event: TransportEvent) -> None:
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception:
                logger.exception(f"Transport listener failed on {type(event).__name__}")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the supervised connect/reconnect task."""
        if self._state == ConnectionState.CLOSED:
            raise TransportClosed(f"Transport for {self._agent_id} is closed")
        if self._task is None:
            self._task = asyncio.create_task(
                self._run(),
                name=f"transport_{self._agent_id}"
            )
            logger.info(f"Transport started for {self._agent_id} -> {self._url}")

    async def close(self) -> None:
        """Shut down for good. Queued messages are not delivered."""
        if self._state == ConnectionState.CLOSED:
            return

        was_connected = self.is_connected
        self._set_state(ConnectionState.CLOSED)

        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self._discard_connection()

        if self._outbox:
            logger.warning(
                f"Transport {self._agent_id} closed with {len(self._outbox)} undelivered messages"
            )

        if was_connected:
            await self._emit(Disconnected(
                reason=ConnectionLost("transport closed"),
                retry_in=None,
            ))
        logger.info(f"Transport closed for {self._agent_id}")

    async def _run(self) -> None:
        """Connect, flush, read until the connection drops, back off, repeat."""
        failures = 0
        while self._state != ConnectionState.CLOSED:
            self._set_state(ConnectionState.CONNECTING)
            conn = None
            try:
                conn = await self._connect(self._url)
                await self._handshake(conn)
            except asyncio.CancelledError:
                if conn is not None:
                    await conn.close()
                raise
            except Exception as e:
                if conn is not None:
                    self._conn = conn
                    await self._discard_connection()
                failures += 1
                await self._disconnected(ConnectionLost(f"connect failed: {e!r}"), failures)
                continue

            attempts = failures + 1
            failures = 0
            self._conn = conn
            self._set_state(ConnectionState.CONNECTED)

            if await self._flush():
                await self._emit(Connected(url=self._url, attempt=attempts))
                reason = await self._read_loop(conn)
            else:
                reason = ConnectionLost("write failed while flushing queue")

            await self._discard_connection()
            failures = 1
            await self._disconnected(reason, failures)

    async def _disconnected(self, reason: ConnectionLost, failures: int) -> None:
        """Report a drop and wait out the backoff delay."""
        if self._state == ConnectionState.CLOSED:
            return
        self._set_state(ConnectionState.DISCONNECTED)
        delay = self._backoff.delay(failures)
        logger.warning(f"Transport {self._agent_id}: {reason.reason}; reconnecting in {delay:.1f}s")
        await self._emit(Disconnected(reason=reason, retry_in=delay))
        await asyncio.sleep(delay)

    async def _discard_connection(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            await conn.close()
        except Exception as e:
            logger.debug(f"Ignoring error while closing connection: {e!r}")

    async def _handshake(self, conn: StreamConnection) -> None:
        init = create_initialize(self._agent_id, self._version)
        await conn.send(init.to_frame())
        raw = await asyncio.wait_for(conn.recv(), timeout=self._handshake_timeout)
        reply = Message.from_frame(raw)
        if reply.type != MessageType.RESPONSE or reply.correlation_id != init.id:
            detail = reply.payload.get("message", reply.type.value)
            raise ConnectionError(f"handshake rejected: {detail}")

    async def _read_loop(self, conn: StreamConnection) -> ConnectionLost:
        """Publish inbound frames until the connection fails."""
        while True:
            try:
                raw = await conn.recv()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                return ConnectionLost(f"receive failed: {e!r}")

            if isinstance(raw, bytes):
                raw = raw.decode("utf-8", errors="replace")

            try:
                message = Message.from_frame(raw)
            except ValidationError as e:
                logger.warning(f"Dropping invalid frame: {e.error_count()} validation errors")
                await self._emit(FrameRejected(raw=raw, error=str(e)))
                continue

            message.status = MessageStatus.DELIVERED
            await self._emit(MessageReceived(message=message))

    # =========================================================================
    # Sending
    # =========================================================================

    async def send(self, message: Message) -> MessageStatus:
        """
        Write a message now, or queue it for the next connection.

        Returns:
            SENT if written to the connection, PENDING if queued

        Raises:
            TransportClosed: If close() was called
        """
        if self._state == ConnectionState.CLOSED:
            raise TransportClosed(f"Transport for {self._agent_id} is closed")

        async with self._write_lock:
            conn = self._conn
            if self.is_connected and conn is not None and not self._outbox:
                try:
                    await conn.send(message.to_frame())
                    message.status = MessageStatus.SENT
                    return message.status
                except Exception as e:
                    message.retry_count += 1
                    logger.warning(f"Write of {message.id} failed, queueing: {e!r}")
                    await self._discard_connection()

            self._outbox.append(message)
            message.status = MessageStatus.PENDING
            logger.debug(f"Queued {message.id} ({len(self._outbox)} waiting)")
            return message.status

    async def _flush(self) -> bool:
        """
        Drain the outbox in FIFO order.

        Returns:
            False if a write failed (the connection is unusable)
        """
        async with self._write_lock:
            if self._outbox:
                logger.info(f"Flushing {len(self._outbox)} queued messages for {self._agent_id}")

            while self._outbox:
                conn = self._conn
                if conn is None:
                    return False

                message = self._outbox[0]
                if message.is_expired():
                    self._outbox.popleft()
                    message.status = MessageStatus.FAILED
                    logger.warning(f"Dropping expired message {message.id}")
                    continue

                try:
                    await conn.send(message.to_frame())
                except Exception as e:
                    message.retry_count += 1
                    if message.retry_count > self._max_retries:
                        self._outbox.popleft()
                        message.status = MessageStatus.FAILED
                        logger.error(
                            f"Giving up on {message.id} after {message.retry_count} attempts: {e!r}"
                        )
                    else:
                        logger.warning(f"Flush write of {message.id} failed: {e!r}")
                    return False

                self._outbox.popleft()
                message.status = MessageStatus.SENT

            return True
