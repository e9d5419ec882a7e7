"""Quota policy API endpoints."""

from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel, Field

from petrel.api.dependencies import AdminDep, AuthDep, QuotaLedgerDep
from petrel.api.v1.responses import Envelope, ok
from petrel.config import get_settings
from petrel.errors import ForbiddenError
from petrel.models.quota import QuotaPolicy, QuotaUsage

router = APIRouter()


class SetPolicyRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    max_workloads: int = Field(ge=0)
    max_memory: int = Field(ge=0, description="MB")
    max_storage: int = Field(ge=0, description="MB")
    allowed_cpuids: list[int] = Field(default_factory=list)
    allowed_bridges: list[str] = Field(default_factory=list)


def _policy_to_response(policy: QuotaPolicy, usage: QuotaUsage) -> dict:
    return {
        "tenant_id": policy.tenant_id,
        "policy": {
            "max_workloads": policy.max_workloads,
            "max_memory": policy.max_memory_mb,
            "max_storage": policy.max_storage_mb,
            "allowed_cpuids": list(policy.allowed_cpuids),
            "allowed_bridges": list(policy.allowed_bridges),
        },
        "usage": {
            "workloads": usage.workloads,
            "memory": usage.memory_mb,
            "storage": usage.storage_mb,
        },
    }


@router.post("", response_model=Envelope)
async def set_policy(
    request: SetPolicyRequest,
    ledger: QuotaLedgerDep,
    admin: AdminDep,
) -> Envelope:
    """Create or replace a tenant's policy (admin only).

    Running workloads are never evicted by a tighter policy.
    """
    policy = await ledger.set_policy(
        request.tenant_id,
        max_workloads=request.max_workloads,
        max_memory_mb=request.max_memory,
        max_storage_mb=request.max_storage,
        allowed_cpuids=request.allowed_cpuids,
        allowed_bridges=request.allowed_bridges,
    )
    usage = await ledger.usage(request.tenant_id)
    return ok(f"Policy for {request.tenant_id} updated", _policy_to_response(policy, usage))


@router.get("/{tenant_id}", response_model=Envelope)
async def get_policy(
    tenant_id: str,
    ledger: QuotaLedgerDep,
    owner: AuthDep,
) -> Envelope:
    """Policy and usage of a tenant (own tenant, or any tenant for the admin)."""
    if owner != tenant_id and owner != get_settings().security.admin_owner:
        raise ForbiddenError("Cannot read another tenant's policy", details={"tenant_id": tenant_id})
    policy = await ledger.get_policy(tenant_id)
    usage = await ledger.usage(tenant_id)
    return ok(f"Policy for {tenant_id}", _policy_to_response(policy, usage))
