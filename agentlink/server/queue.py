"""
Outbound Queues

Per-agent outbound frame queue with a single writer task, so frames
routed to one agent from many senders are written one at a time and in
arrival order.

Design:
- Each connected agent gets a dedicated asyncio.Queue
- A reconnecting agent replaces its previous queue
- Backpressure: a full queue rejects the frame instead of blocking the
  sender's read loop
- A failed write stops the writer; the connection is being torn down
"""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

SendText = Callable[[str], Awaitable[None]]


class QueueFullError(Exception):
    """Raised when an agent's outbound queue is full (backpressure)."""
    def __init__(self, agent_id: str, queue_size: int):
        self.agent_id = agent_id
        self.queue_size = queue_size
        super().__init__(f"Queue full for {agent_id} (size={queue_size})")


class OutboundQueue:
    """
    Outbound frame queue for one agent connection.
    """

    def __init__(self, agent_id: str, send_fn: SendText, max_size: int = 100):
        """
        Initialize the queue.

        Args:
            agent_id: Agent the frames are delivered to
            send_fn: Writes one text frame to the agent's connection
            max_size: Max queue depth before backpressure
        """
        self.agent_id = agent_id
        self._send_fn = send_fn
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=max_size)
        self._writer_task: asyncio.Task | None = None
        self._closed = False
        self._max_size = max_size

    async def start(self) -> None:
        """Start the writer task."""
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(
                self._writer_loop(),
                name=f"outbound_{self.agent_id}"
            )

    async def stop(self) -> None:
        """Stop the writer task. Frames still queued are dropped."""
        self._closed = True
        if self._writer_task:
            self._writer_task.cancel()
            try:
                await self._writer_task
            except asyncio.CancelledError:
                pass
            self._writer_task = None
        if self._queue.qsize():
            logger.warning(f"Dropped {self._queue.qsize()} undelivered frames for {self.agent_id}")

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def qsize(self) -> int:
        return self._queue.qsize()

    def offer(self, frame: str) -> None:
        """
        Enqueue a frame without blocking.

        Raises:
            QueueFullError: If the queue is full
            RuntimeError: If the queue was stopped
        """
        if self._closed:
            raise RuntimeError(f"Queue closed for {self.agent_id}")
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            raise QueueFullError(self.agent_id, self._max_size)

    async def _writer_loop(self) -> None:
        while not self._closed:
            frame = await self._queue.get()
            try:
                await self._send_fn(frame)
            except Exception as e:
                logger.warning(f"Send failed for {self.agent_id}: {e}")
                self._closed = True
                break
            finally:
                self._queue.task_done()


class OutboundQueues:
    """
    Outbound queues of all connected agents, keyed by agent id.
    """

    def __init__(self, max_queue_size: int = 100):
        self._max_queue_size = max_queue_size
        self._queues: dict[str, OutboundQueue] = {}
        self._lock = asyncio.Lock()

    async def open(self, agent_id: str, send_fn: SendText) -> OutboundQueue:
        """Create the agent's queue, replacing one left by an earlier connection."""
        queue = OutboundQueue(agent_id, send_fn, self._max_queue_size)
        await queue.start()
        async with self._lock:
            previous = self._queues.get(agent_id)
            self._queues[agent_id] = queue
        if previous is not None:
            logger.info(f"Replacing previous connection queue for {agent_id}")
            await previous.stop()
        return queue

    async def close(self, agent_id: str, queue: OutboundQueue) -> None:
        """Stop queue and forget it, unless a newer connection replaced it."""
        async with self._lock:
            if self._queues.get(agent_id) is queue:
                del self._queues[agent_id]
        await queue.stop()

    def offer(self, agent_id: str, frame: str) -> bool:
        """
        Enqueue a frame for an agent.

        Returns:
            True if queued, False if the agent has no open queue

        Raises:
            QueueFullError: If the agent's queue is full
        """
        queue = self._queues.get(agent_id)
        if queue is None or queue.is_closed:
            return False
        queue.offer(frame)
        return True

    async def shutdown(self) -> None:
        """Stop all queues."""
        async with self._lock:
            queues = list(self._queues.values())
            self._queues.clear()
        for queue in queues:
            await queue.stop()

    def is_open(self, agent_id: str) -> bool:
        queue = self._queues.get(agent_id)
        return queue is not None and not queue.is_closed

    def agent_ids(self) -> list[str]:
        return [agent_id for agent_id, q in self._queues.items() if not q.is_closed]

    def queue_size(self, agent_id: str) -> int:
        queue = self._queues.get(agent_id)
        return queue.qsize if queue else 0

    def connection_count(self) -> int:
        return len(self.agent_ids())
