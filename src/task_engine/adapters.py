# adapters.py
# External tool services.
#
# The engine sees a ToolAdapter: list a service's tools, invoke one. The
# HTTP adapter below talks to services exposing /api/tools and
# /api/call-tool, holding one httpx client per (service, principal) in a
# shared ConnectionRegistry.

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator, Protocol

import httpx
from pydantic import BaseModel, Field

from task_engine.errors import ExternalToolError

logger = logging.getLogger(__name__)


class ToolSpec(BaseModel):
    """A tool as advertised by its service."""

    name: str
    description: str = ""
    parameter_schema: dict[str, Any] = Field(default_factory=dict)

    @property
    def property_names(self) -> list[str]:
        properties = self.parameter_schema.get("properties")
        return list(properties) if isinstance(properties, dict) else []


class ToolAdapter(Protocol):
    async def list_tools(self, service: str, principal: str) -> list[ToolSpec]: ...

    async def invoke(self, service: str, tool: str, args: dict[str, Any], principal: str) -> Any: ...


def normalize_service(name: str | None, aliases: dict[str, str]) -> str | None:
    """Map a service alias (case-insensitive) to its canonical name."""
    if not name:
        return name
    lowered = name.strip().lower()
    for alias, canonical in aliases.items():
        if lowered in (alias.lower(), canonical.lower()):
            return canonical
    return name.strip()


# ---------------------------------------------------------------------------
# Connection registry
# ---------------------------------------------------------------------------


class ConnectionRegistry:
    """
    One httpx.AsyncClient per (service, principal), shared across tasks.

    acquire() holds a per-key lock while deciding whether to connect or
    reuse, so concurrent tasks never open duplicate clients for a key. A
    lock is dropped once its key has no client and nobody holds or waits
    on it.
    """

    def __init__(
        self,
        endpoints: dict[str, str],
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._endpoints = endpoints
        self._timeout_s = timeout_s
        self._transport = transport
        self._clients: dict[tuple[str, str], httpx.AsyncClient] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._lock_users: dict[tuple[str, str], int] = {}

    @contextlib.asynccontextmanager
    async def _guard(self, key: tuple[str, str]) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key] and key not in self._clients:
                del self._lock_users[key]
                del self._locks[key]

    def has_service(self, service: str) -> bool:
        return service in self._endpoints

    async def acquire(self, service: str, principal: str) -> httpx.AsyncClient:
        key = (service, principal)
        async with self._guard(key):
            client = self._clients.get(key)
            if client is not None and not client.is_closed:
                return client
            base_url = self._endpoints.get(service)
            if base_url is None:
                raise ExternalToolError(f"Not connected: service '{service}' is not configured.", service=service)
            logger.info("Opening connection to %s for %s", service, principal)
            client = httpx.AsyncClient(
                base_url=base_url,
                timeout=self._timeout_s,
                headers={"X-Principal-Id": principal},
                transport=self._transport,
            )
            self._clients[key] = client
            return client

    async def release(self, service: str, principal: str) -> None:
        key = (service, principal)
        async with self._guard(key):
            client = self._clients.pop(key, None)
            if client is not None:
                await client.aclose()

    async def close(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for key in [k for k, users in self._lock_users.items() if not users]:
            del self._lock_users[key]
            del self._locks[key]
        for client in clients:
            await client.aclose()

    def __len__(self) -> int:
        return len(self._clients)


# ---------------------------------------------------------------------------
# HTTP adapter
# ---------------------------------------------------------------------------


class HttpToolAdapter:
    """ToolAdapter for services exposing GET /api/tools and POST /api/call-tool."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        max_retries: int = 2,
        retry_delay_s: float = 1.0,
    ) -> None:
        self._registry = registry
        self._max_retries = max_retries
        self._retry_delay_s = retry_delay_s
        self._tool_cache: dict[tuple[str, str], list[ToolSpec]] = {}

    async def _request(self, service: str, principal: str, method: str, url: str, **kwargs: Any) -> dict:
        last_error: Exception | None = None
        for attempt in range(self._max_retries + 1):
            client = await self._registry.acquire(service, principal)
            try:
                response = await client.request(method, url, **kwargs)
                response.raise_for_status()
                data = response.json()
                return data if isinstance(data, dict) else {"result": data}
            except httpx.HTTPStatusError as exc:
                raise ExternalToolError(
                    f"{service} returned HTTP {exc.response.status_code}: {exc.response.text[:200]}",
                    service=service,
                ) from exc
            except httpx.TransportError as exc:
                last_error = exc
                if attempt < self._max_retries:
                    delay = self._retry_delay_s * (2**attempt)
                    logger.warning("Request to %s failed (%s); retrying in %.1fs", service, exc, delay)
                    await asyncio.sleep(delay)
            except ValueError as exc:
                raise ExternalToolError(f"{service} returned a non-JSON response.", service=service) from exc
        raise ExternalToolError(
            f"Connection failed to {service}: {last_error}", service=service
        ) from last_error

    async def list_tools(self, service: str, principal: str) -> list[ToolSpec]:
        key = (service, principal)
        if key in self._tool_cache:
            return self._tool_cache[key]

        data = await self._request(service, principal, "GET", "/api/tools")
        specs = [
            ToolSpec(
                name=item["name"],
                description=item.get("description", ""),
                parameter_schema=item.get("inputSchema") or item.get("parameters") or {},
            )
            for item in data.get("tools", [])
            if isinstance(item, dict) and item.get("name")
        ]
        self._tool_cache[key] = specs
        return specs

    async def invoke(self, service: str, tool: str, args: dict[str, Any], principal: str) -> Any:
        data = await self._request(
            service,
            principal,
            "POST",
            "/api/call-tool",
            json={"toolName": tool, "arguments": args},
        )
        if data.get("success") is False:
            raise ExternalToolError(
                data.get("error") or f"{tool} failed without an error message.",
                service=service,
                tool=tool,
            )
        return data.get("result", data)

    def forget(self, service: str, principal: str) -> None:
        """Drop cached tool lists, e.g. after a service reconnects."""
        self._tool_cache.pop((service, principal), None)
