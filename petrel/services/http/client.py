"""Shared HTTP client for liveliness probes.

One pooled httpx.AsyncClient lives for the whole application lifespan;
HTTP probes of update candidates borrow it instead of opening a client per
probe.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncGenerator

import httpx
import structlog

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = structlog.get_logger()


class HTTPClientManager:
    """Owns the shared httpx.AsyncClient.

    Usage:
        await http_client_manager.startup(timeout=5.0)
        response = await http_client_manager.client.get("http://10.0.0.2/")
        await http_client_manager.shutdown()
    """

    def __init__(self, *, max_connections: int = 50) -> None:
        self._max_connections = max_connections
        self._client: httpx.AsyncClient | None = None
        self._log = logger.bind(component="http_client")

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the shared HTTP client.

        Raises:
            RuntimeError: If client is not initialized (call startup first)
        """
        if self._client is None:
            raise RuntimeError("HTTP client not initialized. Call startup() first.")
        return self._client

    @property
    def is_started(self) -> bool:
        return self._client is not None

    async def startup(self, *, timeout: float = 5.0) -> None:
        """Create the pooled client. Probe targets answer plain HTTP."""
        if self._client is not None:
            self._log.warning("http_client.already_started")
            return

        self._client = httpx.AsyncClient(
            limits=httpx.Limits(max_connections=self._max_connections),
            timeout=httpx.Timeout(timeout),
            follow_redirects=False,
        )
        self._log.info("http_client.started", timeout=timeout)

    async def shutdown(self) -> None:
        if self._client is None:
            return
        await self._client.aclose()
        self._client = None
        self._log.info("http_client.shutdown")


# Global singleton instance
http_client_manager = HTTPClientManager()


@asynccontextmanager
async def lifespan_http_client(app: "FastAPI", *, timeout: float = 5.0) -> AsyncGenerator[None, None]:
    """Start the shared client for the duration of the app lifespan."""
    await http_client_manager.startup(timeout=timeout)
    try:
        yield
    finally:
        await http_client_manager.shutdown()


def get_http_client() -> httpx.AsyncClient:
    """Get the shared HTTP client.

    Raises:
        RuntimeError: If client not initialized
    """
    return http_client_manager.client
