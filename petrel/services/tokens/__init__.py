"""Bearer token service."""

from petrel.services.tokens.service import TokenService

__all__ = ["TokenService"]
