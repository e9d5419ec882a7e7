"""FastAPI dependencies for Petrel API.

Provides dependency injection for:
- Database sessions
- Launcher
- Managers (Workload, Volume, Quota) and the token service
- Authentication and the admin check
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated

import structlog
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from petrel.config import get_settings
from petrel.db.session import get_session_dependency
from petrel.errors import ForbiddenError, UnauthorizedError
from petrel.launchers.base import Launcher
from petrel.launchers.solo5 import Solo5Launcher
from petrel.managers.quota import QuotaLedger
from petrel.managers.volume import VolumeManager
from petrel.managers.workload import WorkloadManager
from petrel.services.tokens import TokenService

logger = structlog.get_logger()


@lru_cache
def get_launcher() -> Launcher:
    """Get the process-wide launcher.

    Uses lru_cache so every request and the supervisor share the instances
    the launcher is tracking.
    """
    settings = get_settings()
    if settings.launcher.type == "solo5":
        return Solo5Launcher(settings.launcher.solo5)
    raise ValueError(f"Unsupported launcher type: {settings.launcher.type}")


async def get_workload_manager(
    session: Annotated[AsyncSession, Depends(get_session_dependency)],
    launcher: Annotated[Launcher, Depends(get_launcher)],
) -> WorkloadManager:
    return WorkloadManager(launcher=launcher, db_session=session)


async def get_volume_manager(
    session: Annotated[AsyncSession, Depends(get_session_dependency)],
) -> VolumeManager:
    return VolumeManager(db_session=session)


async def get_quota_ledger(
    session: Annotated[AsyncSession, Depends(get_session_dependency)],
) -> QuotaLedger:
    return QuotaLedger(db_session=session)


async def get_token_service(
    session: Annotated[AsyncSession, Depends(get_session_dependency)],
) -> TokenService:
    return TokenService(db_session=session)


async def authenticate(
    request: Request,
    tokens: Annotated[TokenService, Depends(get_token_service)],
) -> str:
    """Authenticate request and return the tenant (owner).

    Authentication flow:
    1. Bearer token provided -> validated via the token service (unknown
       or expired tokens are rejected even in anonymous mode)
    2. No token and allow_anonymous -> X-Owner header, or "default"
    3. Otherwise -> 401 Unauthorized

    Raises:
        UnauthorizedError: If authentication fails
    """
    security = get_settings().security
    auth_header = request.headers.get("Authorization")

    if auth_header and auth_header.startswith("Bearer "):
        owner = await tokens.validate(auth_header[7:])
        logger.debug("auth.success", source="token", owner=owner)
        return owner

    if security.allow_anonymous:
        return request.headers.get("X-Owner") or "default"

    raise UnauthorizedError("Authentication required")


async def require_admin(owner: Annotated[str, Depends(authenticate)]) -> str:
    """Only the configured admin owner may change quota policies.

    Raises:
        ForbiddenError: If the caller is not the admin owner
    """
    if owner != get_settings().security.admin_owner:
        raise ForbiddenError(
            "Admin privileges required",
            details={"owner": owner},
        )
    return owner


# Type aliases for cleaner dependency injection
LauncherDep = Annotated[Launcher, Depends(get_launcher)]
SessionDep = Annotated[AsyncSession, Depends(get_session_dependency)]
WorkloadManagerDep = Annotated[WorkloadManager, Depends(get_workload_manager)]
VolumeManagerDep = Annotated[VolumeManager, Depends(get_volume_manager)]
QuotaLedgerDep = Annotated[QuotaLedger, Depends(get_quota_ledger)]
TokenServiceDep = Annotated[TokenService, Depends(get_token_service)]
AuthDep = Annotated[str, Depends(authenticate)]
AdminDep = Annotated[str, Depends(require_admin)]
