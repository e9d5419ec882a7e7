"""Shared HTTP client service."""

from petrel.services.http.client import (
    HTTPClientManager,
    get_http_client,
    http_client_manager,
    lifespan_http_client,
)

__all__ = [
    "HTTPClientManager",
    "get_http_client",
    "http_client_manager",
    "lifespan_http_client",
]
