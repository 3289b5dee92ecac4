"""
Message Router

Sits between the Transport and the application components of one agent:

Outbound:
- send() builds a Message with a fresh id and hands it to the transport
  (SENT if written, PENDING if queued for the next connection)
- requests get a pending correlation entry that expires after expires_in
  (or the default ceiling); wait_for_reply() awaits it
- broadcast() fans a payload out to peers filtered by capability

Inbound dispatch by message type:
- request      -> method handler, reply with response or error
- response     -> resolve the pending request (unmatched replies dropped)
- error        -> same as response, surfaced as RemoteError to the waiter
- notification -> typed listeners, keyed by notification sub-type
- broadcast    -> broadcast listeners, no reply

Message hooks observe every inbound and outbound message; the
ConversationManager uses one to append to conversation logs.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from pydantic import BaseModel

from agentlink.errors import (
    DeliveryTimeout,
    RemoteError,
    TransportClosed,
    UnknownMethod,
    UnknownPayload,
)
from agentlink.protocol.message import (
    Message,
    MessageMetadata,
    MessageStatus,
    MessageType,
    Priority,
    WireModel,
    create_error,
    create_response,
)
from agentlink.protocol.payloads import (
    REQUEST_SCHEMAS,
    BuiltinMethod,
    CapabilitiesResult,
    ErrorCode,
    Notification,
    NotificationType,
    PingResult,
    StatusResult,
    parse_error,
    parse_notification,
    validate_payload,
)
from agentlink.transport.events import (
    Connected,
    Disconnected,
    FrameRejected,
    MessageReceived,
    TransportEvent,
)

if TYPE_CHECKING:
    from agentlink.registry.agent import Agent
    from agentlink.registry.peers import PeerSnapshot
    from agentlink.transport.connection import Transport

logger = logging.getLogger(__name__)

MethodHandler = Callable[[Message, Any], Awaitable[Any]]
NotificationListener = Callable[[Notification], Awaitable[None]]
BroadcastListener = Callable[[Message], Awaitable[None]]


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


MessageHook = Callable[[Message, MessageDirection], Awaitable[None]]


@dataclass
class MethodRegistration:
    handler: MethodHandler
    schema: type[BaseModel] | None = None


@dataclass
class PendingRequest:
    """A request waiting for its correlated reply."""
    message: Message
    future: asyncio.Future
    timer: asyncio.TimerHandle
    timeout: float


@dataclass
class BroadcastResult:
    """Outcome of one target of a broadcast."""
    agent_id: str
    message: Message | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def to_payload(value: Any) -> dict[str, Any]:
    """Normalize a handler result or caller payload into a wire dict."""
    if value is None:
        return {}
    if isinstance(value, WireModel):
        return value.to_wire()
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, dict):
        return value
    raise TypeError(f"Payload must be a dict or pydantic model, got {type(value).__name__}")


def _consume_exception(future: asyncio.Future) -> None:
    # Expired requests nobody waited for must not log "exception never retrieved"
    if not future.cancelled():
        future.exception()


class MessageRouter:
    """
    Serializes outbound messages, correlates replies, dispatches inbound ones.
    """

    def __init__(
        self,
        local_agent: "Agent",
        transport: "Transport",
        peers: "PeerSnapshot",
        default_timeout: float = 60.0,
    ):
        """
        Initialize the router.

        Args:
            local_agent: The local agent record (capabilities and status
                are read live by the built-in methods)
            transport: Connection used for all traffic
            peers: Peer snapshot used to resolve broadcast targets
            default_timeout: Ceiling for requests sent without expires_in
        """
        self._local = local_agent
        self._transport = transport
        self._peers = peers
        self._default_timeout = default_timeout

        self._methods: dict[str, MethodRegistration] = {}
        self._notification_listeners: dict[NotificationType, list[NotificationListener]] = {}
        self._broadcast_listeners: list[BroadcastListener] = []
        self._hooks: list[MessageHook] = []

        # message_id -> PendingRequest
        self._pending: dict[str, PendingRequest] = {}

        # In-flight request handlers
        self._handler_tasks: set[asyncio.Task] = set()

        self._started = False

        self.register_method(BuiltinMethod.PING.value, self._handle_ping, REQUEST_SCHEMAS[BuiltinMethod.PING.value])
        self.register_method(
            BuiltinMethod.GET_CAPABILITIES.value,
            self._handle_get_capabilities,
            REQUEST_SCHEMAS[BuiltinMethod.GET_CAPABILITIES.value],
        )
        self.register_method(
            BuiltinMethod.GET_STATUS.value,
            self._handle_get_status,
            REQUEST_SCHEMAS[BuiltinMethod.GET_STATUS.value],
        )

    @property
    def agent_id(self) -> str:
        return self._local.id

    @property
    def local_agent(self) -> "Agent":
        return self._local

    @property
    def pending_count(self) -> int:
        """Requests still holding a correlation entry."""
        return len(self._pending)

    @property
    def methods(self) -> list[str]:
        return sorted(self._methods)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Begin receiving transport events."""
        if not self._started:
            self._transport.subscribe(self._on_transport_event)
            self._started = True

    async def close(self) -> None:
        """Stop dispatching and fail every outstanding request."""
        if self._started:
            self._transport.unsubscribe(self._on_transport_event)
            self._started = False

        tasks = list(self._handler_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for entry in self._pending.values():
            entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(TransportClosed("router closed"))
        self._pending.clear()

    # =========================================================================
    # Registration
    # =========================================================================

    def register_method(
        self,
        method: str,
        handler: MethodHandler,
        schema: type[BaseModel] | None = None,
    ) -> None:
        """
        Register a request handler.

        The handler receives the request message and the payload validated
        against schema (or the raw dict when no schema is given). Its
        return value becomes the response payload.
        """
        self._methods[method] = MethodRegistration(handler=handler, schema=schema)

    def unregister_method(self, method: str) -> None:
        self._methods.pop(method, None)

    def on_notification(
        self,
        notification_type: NotificationType,
        listener: NotificationListener,
    ) -> None:
        self._notification_listeners.setdefault(notification_type, []).append(listener)

    def on_broadcast(self, listener: BroadcastListener) -> None:
        self._broadcast_listeners.append(listener)

    def add_message_hook(self, hook: MessageHook) -> None:
        self._hooks.append(hook)

    # =========================================================================
    # Outbound
    # =========================================================================

    async def send(
        self,
        to_agent: str,
        payload: Any = None,
        type: MessageType = MessageType.REQUEST,
        method: str | None = None,
        priority: Priority = Priority.NORMAL,
        expires_in: float | None = None,
        session_id: str | None = None,
        correlation_id: str | None = None,
    ) -> Message:
        """
        Build and send a message without waiting for delivery.

        Args:
            to_agent: Recipient agent id
            payload: dict or pydantic model
            type: Message type (default: request)
            method: Method name for requests
            priority: Delivery priority
            expires_in: Seconds until the message (and its reply wait) expires
            session_id: Conversation the message belongs to
            correlation_id: Request this message answers

        Returns:
            The message, status SENT or PENDING

        Raises:
            TransportClosed: If the transport was shut down
        """
        message = Message(
            from_agent=self.agent_id,
            to_agent=to_agent,
            type=type,
            method=method,
            payload=to_payload(payload),
            metadata=MessageMetadata(
                priority=priority,
                ttl=expires_in,
                correlation_id=correlation_id,
                session_id=session_id,
            ),
        )

        if type == MessageType.REQUEST:
            self._track(message, expires_in or self._default_timeout)

        try:
            await self._send_message(message)
        except TransportClosed:
            self._release(message.id)
            raise

        return message

    async def notify(
        self,
        to_agent: str,
        notification_type: NotificationType,
        data: Any = None,
        priority: Priority = Priority.NORMAL,
        session_id: str | None = None,
    ) -> Message:
        """Send a typed notification ({type, data})."""
        return await self.send(
            to_agent,
            {"type": notification_type.value, "data": to_payload(data)},
            type=MessageType.NOTIFICATION,
            priority=priority,
            session_id=session_id,
        )

    async def request(
        self,
        to_agent: str,
        method: str,
        payload: Any = None,
        expires_in: float | None = None,
        priority: Priority = Priority.NORMAL,
        session_id: str | None = None,
    ) -> Message:
        """
        Send a request and wait for its reply.

        Raises:
            DeliveryTimeout: No reply within expires_in (or the default ceiling)
            RemoteError: The peer answered with an error
        """
        message = await self.send(
            to_agent,
            payload,
            type=MessageType.REQUEST,
            method=method,
            priority=priority,
            expires_in=expires_in,
            session_id=session_id,
        )
        return await self.wait_for_reply(message)

    async def wait_for_reply(self, message: Message, timeout: float | None = None) -> Message:
        """
        Wait for the reply correlated to a request sent with send().

        Args:
            message: The request
            timeout: Optional shorter wait; the request's own expiry always applies

        Returns:
            The response message

        Raises:
            DeliveryTimeout: The deadline passed first
            RemoteError: The reply was an error message
            TransportClosed: The router was closed while waiting
        """
        if message.type != MessageType.REQUEST:
            raise ValueError(f"Only requests have replies, got {message.type.value}")

        entry = self._pending.get(message.id)
        if entry is None:
            raise DeliveryTimeout(message.id, message.metadata.ttl or self._default_timeout)

        try:
            if timeout is None:
                reply = await entry.future
            else:
                reply = await asyncio.wait_for(asyncio.shield(entry.future), timeout)
        except asyncio.TimeoutError:
            raise DeliveryTimeout(message.id, timeout)
        finally:
            self._release(message.id)

        if reply.type == MessageType.ERROR:
            error = parse_error(reply)
            raise RemoteError(error.code, error.message, correlation_id=message.id)
        return reply

    async def broadcast(
        self,
        payload: Any,
        capabilities: list[str] | None = None,
        exclude_agents: list[str] | None = None,
        priority: Priority = Priority.NORMAL,
    ) -> list[BroadcastResult]:
        """
        Send a broadcast copy to every matching peer.

        Targets come from the peer snapshot; agents need at least one of
        the given capabilities. A failed send is reported in its result and
        does not stop the others.

        Raises:
            RegistryUnavailable: The target set could not be resolved; nothing was sent
        """
        agents = await self._peers.agents()
        excluded = set(exclude_agents or [])
        excluded.add(self.agent_id)

        targets = [a for a in agents if a.id not in excluded]
        if capabilities:
            targets = [a for a in targets if a.has_any_capability(capabilities)]

        results: list[BroadcastResult] = []
        for agent in targets:
            try:
                message = await self.send(
                    agent.id,
                    payload,
                    type=MessageType.BROADCAST,
                    priority=priority,
                )
                results.append(BroadcastResult(agent_id=agent.id, message=message))
            except Exception as e:
                logger.warning(f"Broadcast to {agent.id} failed: {e!r}")
                results.append(BroadcastResult(agent_id=agent.id, error=e))

        logger.info(
            f"Broadcast from {self.agent_id} to {len(results)} agents "
            f"(capabilities: {capabilities}, failures: {sum(not r.ok for r in results)})"
        )
        return results

    async def _send_message(self, message: Message) -> None:
        await self._transport.send(message)
        await self._run_hooks(message, MessageDirection.OUTBOUND)

    def _track(self, message: Message, timeout: float) -> None:
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        future.add_done_callback(_consume_exception)
        timer = loop.call_later(timeout, self._expire, message.id)
        self._pending[message.id] = PendingRequest(
            message=message,
            future=future,
            timer=timer,
            timeout=timeout,
        )

    def _expire(self, message_id: str) -> None:
        entry = self._pending.pop(message_id, None)
        if entry is None:
            return
        if not entry.future.done():
            logger.warning(f"Request {message_id} ({entry.message.method}) timed out after {entry.timeout}s")
            entry.future.set_exception(DeliveryTimeout(message_id, entry.timeout))

    def _release(self, message_id: str) -> None:
        entry = self._pending.pop(message_id, None)
        if entry is None:
            return
        entry.timer.cancel()
        if not entry.future.done():
            entry.future.cancel()

    # =========================================================================
    # Inbound
    # =========================================================================

    async def _on_transport_event(self, event: TransportEvent) -> None:
        match event:
            case MessageReceived(message=message):
                await self.dispatch(message)
            case Connected(url=url, attempt=attempt):
                logger.info(f"Router {self.agent_id} connected to {url} (attempt {attempt})")
            case Disconnected(reason=reason, retry_in=retry_in):
                logger.info(
                    f"Router {self.agent_id} disconnected: {reason.reason} "
                    f"({self.pending_count} requests outstanding, retry in {retry_in})"
                )
            case FrameRejected(error=error):
                logger.warning(f"Router {self.agent_id} ignored a malformed frame: {error[:200]}")

    async def dispatch(self, message: Message) -> None:
        """Route one inbound message by type."""
        if message.to_agent != self.agent_id:
            logger.warning(f"Dropping {message.id}: addressed to {message.to_agent}, not {self.agent_id}")
            return

        if message.is_expired():
            logger.warning(f"Dropping expired message {message.id} from {message.from_agent}")
            return

        await self._run_hooks(message, MessageDirection.INBOUND)

        match message.type:
            case MessageType.REQUEST:
                task = asyncio.create_task(
                    self._handle_request(message),
                    name=f"request_{message.method}_{message.id}"
                )
                self._handler_tasks.add(task)
                task.add_done_callback(self._handler_tasks.discard)
            case MessageType.RESPONSE | MessageType.ERROR:
                self._resolve(message)
            case MessageType.NOTIFICATION:
                await self._handle_notification(message)
            case MessageType.BROADCAST:
                await self._handle_broadcast(message)

    def _lookup(self, method: str | None) -> MethodRegistration:
        registration = self._methods.get(method) if method else None
        if registration is None:
            raise UnknownMethod(method)
        return registration

    async def _handle_request(self, message: Message) -> None:
        try:
            registration = self._lookup(message.method)
            payload: Any = message.payload
            if registration.schema is not None:
                payload = validate_payload(registration.schema, message.payload, str(message.method))
            result = await registration.handler(message, payload)
            reply = create_response(message, to_payload(result))
        except UnknownMethod as e:
            logger.warning(f"Unknown method {e.method!r} requested by {message.from_agent}")
            reply = create_error(message, ErrorCode.UNKNOWN_METHOD.value, str(e))
        except UnknownPayload as e:
            logger.warning(f"Invalid {message.method} payload from {message.from_agent}: {e.detail}")
            reply = create_error(message, ErrorCode.INVALID_PAYLOAD.value, str(e))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Handler for {message.method} failed")
            reply = create_error(message, ErrorCode.HANDLER_FAILED.value, str(e) or type(e).__name__)

        try:
            await self._send_message(reply)
        except TransportClosed:
            logger.warning(f"Reply to {message.id} dropped: transport closed")

    def _resolve(self, reply: Message) -> None:
        key = reply.correlation_id or reply.id
        entry = self._pending.get(key)
        if entry is None or entry.future.done():
            logger.warning(
                f"Dropping unmatched {reply.type.value} {reply.id} from {reply.from_agent} "
                f"(correlation: {reply.correlation_id})"
            )
            return

        entry.message.status = MessageStatus.ACKNOWLEDGED
        entry.future.set_result(reply)

    async def _handle_notification(self, message: Message) -> None:
        try:
            notification = parse_notification(message)
        except UnknownPayload as e:
            logger.warning(f"Dropping notification {message.id} from {message.from_agent}: {e}")
            return

        listeners = self._notification_listeners.get(notification.type, [])
        if not listeners:
            logger.debug(f"No listeners for {notification.type.value}")
        for listener in list(listeners):
            try:
                await listener(notification)
            except Exception:
                logger.exception(f"Listener for {notification.type.value} failed")

    async def _handle_broadcast(self, message: Message) -> None:
        for listener in list(self._broadcast_listeners):
            try:
                await listener(message)
            except Exception:
                logger.exception(f"Broadcast listener failed on {message.id}")

    async def _run_hooks(self, message: Message, direction: MessageDirection) -> None:
        for hook in list(self._hooks):
            try:
                await hook(message, direction)
            except Exception:
                logger.exception(f"Message hook failed on {direction.value} {message.id}")

    # =========================================================================
    # Built-in methods
    # =========================================================================

    async def _handle_ping(self, message: Message, payload: Any) -> PingResult:
        return PingResult()

    async def _handle_get_capabilities(self, message: Message, payload: Any) -> CapabilitiesResult:
        return CapabilitiesResult(capabilities=list(self._local.capabilities))

    async def _handle_get_status(self, message: Message, payload: Any) -> StatusResult:
        return StatusResult(status=self._local.status)
