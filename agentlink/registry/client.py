"""
Agent Registry Client

HTTP client for the registry control plane. Every component that needs
the registry receives an AgentRegistryClient instance; there is no
process-wide client.

All operations raise RegistryUnavailable on any failure (network error,
timeout, unexpected status, malformed body). Callers treat that as
"no change": the client never keeps partial state.

Endpoints:
- POST /register     -> stored Agent (lastSeen set server-side)
- POST /unregister   {agentId}
- POST /heartbeat    {agentId, status, lastSeen}
- POST /status       {agentId, status}
- GET  /discover     [?capability=&agentId=] -> Agent[]
- GET  /agent/{id}   -> Agent | 404
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from agentlink.errors import RegistryUnavailable
from agentlink.protocol.message import utc_now
from agentlink.registry.agent import Agent, AgentStatus

logger = logging.getLogger(__name__)


class AgentRegistryClient:
    """
    Async client for the agent registry.

    Lifecycle is explicit: open() before use, close() when done, or use
    it as an async context manager.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Registry base URL (e.g., http://localhost:8000)
            timeout_seconds: Per-request timeout
            transport: Optional httpx transport (in-process apps, tests)
        """
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def is_open(self) -> bool:
        return self._client is not None

    async def open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            )
            logger.info(f"Registry client opened: {self._base_url}")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Registry client closed")

    async def __aenter__(self) -> "AgentRegistryClient":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # =========================================================================
    # Operations
    # =========================================================================

    async def register(self, agent: Agent) -> Agent:
        """
        Register (or re-register) an agent.

        Idempotent per agent id: re-registering updates the stored fields.
        """
        response = await self._request("register", "POST", "/register", json=agent.registration_body())
        stored = self._parse_agent("register", response)
        logger.info(f"Registered agent {stored.id} (capabilities: {stored.capabilities})")
        return stored

    async def unregister(self, agent_id: str) -> None:
        await self._request("unregister", "POST", "/unregister", json={"agentId": agent_id})
        logger.info(f"Unregistered agent {agent_id}")

    async def update_status(self, agent_id: str, status: AgentStatus) -> None:
        await self._request(
            "update_status",
            "POST",
            "/status",
            json={"agentId": agent_id, "status": status.value},
        )

    async def heartbeat(self, agent_id: str, status: AgentStatus) -> None:
        await self._request(
            "heartbeat",
            "POST",
            "/heartbeat",
            json={
                "agentId": agent_id,
                "status": status.value,
                "lastSeen": utc_now().isoformat(),
            },
        )

    async def discover(
        self,
        capability: str | None = None,
        exclude_agent_id: str | None = None,
    ) -> list[Agent]:
        """
        List fresh agents, optionally filtered by capability.

        Args:
            capability: Only agents advertising this capability
            exclude_agent_id: Requester id, left out of the result
        """
        params: dict[str, str] = {}
        if capability:
            params["capability"] = capability
        if exclude_agent_id:
            params["agentId"] = exclude_agent_id

        response = await self._request("discover", "GET", "/discover", params=params)
        body = self._json("discover", response)
        if not isinstance(body, list):
            raise RegistryUnavailable("discover", "expected a list of agents")

        try:
            return [Agent.model_validate(item) for item in body]
        except ValidationError as e:
            raise RegistryUnavailable("discover", f"malformed agent record: {e}") from e

    async def get_agent(self, agent_id: str) -> Agent | None:
        """Look up a single agent. Returns None if the registry does not know it."""
        response = await self._request(
            "get_agent",
            "GET",
            f"/agent/{agent_id}",
            allow_not_found=True,
        )
        if response.status_code == 404:
            return None
        return self._parse_agent("get_agent", response)

    # =========================================================================
    # Internals
    # =========================================================================

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        allow_not_found: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        if self._client is None:
            raise RegistryUnavailable(operation, "client is not open")

        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"Registry {operation} failed: {e!r}")
            raise RegistryUnavailable(operation, str(e) or type(e).__name__) from e

        if allow_not_found and response.status_code == 404:
            return response

        if response.is_error:
            logger.warning(f"Registry {operation} returned HTTP {response.status_code}")
            raise RegistryUnavailable(
                operation,
                f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    def _json(self, operation: str, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise RegistryUnavailable(operation, "response body is not JSON") from e

    def _parse_agent(self, operation: str, response: httpx.Response) -> Agent:
        try:
            return Agent.model_validate(self._json(operation, response))
        except ValidationError as e:
            raise RegistryUnavailable(operation, f"malformed agent record: {e}") from e
