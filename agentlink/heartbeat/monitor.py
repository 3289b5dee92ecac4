"""
Heartbeat Monitor

Periodically refreshes the local agent's presence in the registry.

A failed heartbeat is logged and retried at the next tick. Failures are
counted but never change the local agent's status: the registry's
freshness window decides when others stop seeing us.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable

from agentlink.errors import RegistryUnavailable
from agentlink.registry.agent import AgentStatus

if TYPE_CHECKING:
    from agentlink.registry.client import AgentRegistryClient

logger = logging.getLogger(__name__)


class HeartbeatMonitor:
    def __init__(
        self,
        registry: "AgentRegistryClient",
        agent_id: str,
        status_provider: Callable[[], AgentStatus],
        interval_seconds: float = 30.0,
        on_unknown_agent: Callable[[], Awaitable[object]] | None = None,
    ):
        """
        Initialize the monitor.

        Args:
            registry: Registry client
            agent_id: Local agent id
            status_provider: Returns the status to report on each tick
            interval_seconds: Time between heartbeats
            on_unknown_agent: Called when the registry no longer knows the
                agent (HTTP 404), typically to register it again
        """
        self._registry = registry
        self._agent_id = agent_id
        self._status_provider = status_provider
        self._interval = interval_seconds
        self._on_unknown_agent = on_unknown_agent

        self._consecutive_failures = 0
        self._beats = 0
        self._task: asyncio.Task | None = None

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def beats(self) -> int:
        """Successful heartbeats since start."""
        return self._beats

    @property
    def is_running(self) -> bool:
        return self._task is not None

    async def start(self) -> None:
        """Start the heartbeat task."""
        if self._task is None:
            self._task = asyncio.create_task(
                self._heartbeat_loop(),
                name=f"heartbeat_{self._agent_id}"
            )
            logger.info(f"Heartbeat started for {self._agent_id} every {self._interval}s")

    async def stop(self) -> None:
        """Stop the heartbeat task."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info(f"Heartbeat stopped for {self._agent_id}")

    async def beat(self) -> bool:
        """Send one heartbeat. Returns False if the registry was unreachable."""
        status = self._status_provider()
        try:
            await self._registry.heartbeat(self._agent_id, status)
        except RegistryUnavailable as e:
            self._consecutive_failures += 1
            logger.warning(
                f"Heartbeat for {self._agent_id} failed "
                f"({self._consecutive_failures} in a row): {e.reason}"
            )
            if e.status_code == 404 and self._on_unknown_agent is not None:
                await self._reregister()
            return False

        if self._consecutive_failures:
            logger.info(f"Heartbeat for {self._agent_id} recovered after {self._consecutive_failures} failures")
        self._consecutive_failures = 0
        self._beats += 1
        return True

    async def _reregister(self) -> None:
        logger.info(f"Registry lost {self._agent_id}, registering again")
        try:
            await self._on_unknown_agent()
        except RegistryUnavailable as e:
            logger.warning(f"Re-registration of {self._agent_id} failed: {e.reason}")

    async def _heartbeat_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._interval)
                await self.beat()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in heartbeat loop: {e}")
