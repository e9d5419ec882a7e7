"""QuotaLedger - per-tenant resource accounting.

Every read-modify-write of a tenant's usage runs under that tenant's lock,
so concurrent deploys for one tenant can never both squeeze under a limit.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from petrel.concurrency.locks import get_tenant_lock
from petrel.config import get_settings
from petrel.errors import QuotaExceededError
from petrel.models.quota import QuotaPolicy, QuotaUsage
from petrel.models.workload import WorkloadVersion
from petrel.utils.datetime import utcnow

logger = structlog.get_logger()


@dataclass(frozen=True)
class QuotaDelta:
    """Change in a tenant's consumption. Fields may be negative."""

    workloads: int = 0
    memory_mb: int = 0
    storage_mb: int = 0

    @classmethod
    def for_version(cls, version: WorkloadVersion, *, workloads: int = 1) -> "QuotaDelta":
        return cls(workloads=workloads, memory_mb=version.memory_mb, storage_mb=version.storage_mb)

    @classmethod
    def between(cls, old: WorkloadVersion, new: WorkloadVersion) -> "QuotaDelta":
        """Resources needed to go from ``old`` to ``new`` (same workload)."""
        return cls(
            workloads=0,
            memory_mb=new.memory_mb - old.memory_mb,
            storage_mb=new.storage_mb - old.storage_mb,
        )

    def positive(self) -> "QuotaDelta":
        """The growing part of this delta."""
        return QuotaDelta(
            workloads=max(self.workloads, 0),
            memory_mb=max(self.memory_mb, 0),
            storage_mb=max(self.storage_mb, 0),
        )

    def negative(self) -> "QuotaDelta":
        """The shrinking part of this delta, as amounts to release."""
        return QuotaDelta(
            workloads=max(-self.workloads, 0),
            memory_mb=max(-self.memory_mb, 0),
            storage_mb=max(-self.storage_mb, 0),
        )

    def is_zero(self) -> bool:
        return self.workloads == 0 and self.memory_mb == 0 and self.storage_mb == 0


class QuotaLedger:
    """Tracks consumed vs. allowed resources per tenant."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._log = logger.bind(manager="quota")
        self._settings = get_settings()

    def _default_policy(self, tenant: str) -> QuotaPolicy:
        default = self._settings.quota.default_policy
        return QuotaPolicy(
            tenant_id=tenant,
            max_workloads=default.max_workloads,
            max_memory_mb=default.max_memory,
            max_storage_mb=default.max_storage,
            allowed_cpuids=list(default.allowed_cpuids),
            allowed_bridges=list(default.allowed_bridges),
        )

    async def get_policy(self, tenant: str) -> QuotaPolicy:
        """Get the tenant's policy, falling back to the configured default."""
        result = await self._db.execute(
            select(QuotaPolicy)
            .where(QuotaPolicy.tenant_id == tenant)
            .execution_options(populate_existing=True)
        )
        policy = result.scalars().first()
        if policy is None:
            return self._default_policy(tenant)
        return policy

    async def set_policy(
        self,
        tenant: str,
        *,
        max_workloads: int,
        max_memory_mb: int,
        max_storage_mb: int,
        allowed_cpuids: Iterable[int],
        allowed_bridges: Iterable[str],
    ) -> QuotaPolicy:
        """Create or replace the tenant's policy.

        Tightening a policy never evicts running workloads; it only blocks
        future reservations.
        """
        lock = await get_tenant_lock(tenant)
        async with lock:
            result = await self._db.execute(
                select(QuotaPolicy).where(QuotaPolicy.tenant_id == tenant)
            )
            policy = result.scalars().first()
            if policy is None:
                policy = QuotaPolicy(tenant_id=tenant)
                self._db.add(policy)

            policy.max_workloads = max_workloads
            policy.max_memory_mb = max_memory_mb
            policy.max_storage_mb = max_storage_mb
            policy.allowed_cpuids = sorted(set(allowed_cpuids))
            policy.allowed_bridges = sorted(set(allowed_bridges))
            policy.updated_at = utcnow()

            await self._db.commit()
            await self._db.refresh(policy)

        self._log.info(
            "quota.policy.set",
            tenant=tenant,
            max_workloads=max_workloads,
            max_memory_mb=max_memory_mb,
            max_storage_mb=max_storage_mb,
        )
        return policy

    async def usage(self, tenant: str) -> QuotaUsage:
        """Current consumption of the tenant (zeros if nothing recorded)."""
        result = await self._db.execute(
            select(QuotaUsage)
            .where(QuotaUsage.tenant_id == tenant)
            .execution_options(populate_existing=True)
        )
        usage = result.scalars().first()
        if usage is None:
            return QuotaUsage(tenant_id=tenant)
        return usage

    async def _usage_for_update(self, tenant: str) -> QuotaUsage:
        usage = await self.usage(tenant)
        if usage not in self._db:
            self._db.add(usage)
        return usage

    def check_membership(
        self,
        policy: QuotaPolicy,
        *,
        cpuid: int | None = None,
        bridges: Iterable[str] = (),
    ) -> None:
        """Pure set membership of cpuid and bridges against ``policy``.

        Raises:
            QuotaExceededError: If the cpuid or a bridge is not allowed
        """
        if cpuid is not None and cpuid not in policy.allowed_cpuids:
            raise QuotaExceededError(
                message=f"CPU id {cpuid} is not allowed for tenant {policy.tenant_id}",
                details={
                    "resource": "cpuid",
                    "requested": cpuid,
                    "allowed": list(policy.allowed_cpuids),
                },
            )
        for bridge in sorted(set(bridges)):
            if bridge not in policy.allowed_bridges:
                raise QuotaExceededError(
                    message=f"Bridge {bridge!r} is not allowed for tenant {policy.tenant_id}",
                    details={
                        "resource": "bridge",
                        "requested": bridge,
                        "allowed": list(policy.allowed_bridges),
                    },
                )

    async def reserve(
        self,
        tenant: str,
        delta: QuotaDelta,
        *,
        cpuid: int | None = None,
        bridges: Iterable[str] = (),
    ) -> QuotaUsage:
        """Reserve ``delta`` (its positive part) for ``tenant``.

        Membership of ``cpuid`` and ``bridges`` is checked first, under the
        same tenant lock. Nothing is mutated when a check fails.

        Raises:
            QuotaExceededError: If membership fails or a total would exceed
                the policy
        """
        grow = delta.positive()
        lock = await get_tenant_lock(tenant)
        async with lock:
            policy = await self.get_policy(tenant)
            self.check_membership(policy, cpuid=cpuid, bridges=bridges)

            usage = await self.usage(tenant)
            checks = (
                ("workloads", policy.max_workloads, usage.workloads, grow.workloads),
                ("memory", policy.max_memory_mb, usage.memory_mb, grow.memory_mb),
                ("storage", policy.max_storage_mb, usage.storage_mb, grow.storage_mb),
            )
            for resource, limit, used, requested in checks:
                if requested and used + requested > limit:
                    self._log.info(
                        "quota.reserve.rejected",
                        tenant=tenant,
                        resource=resource,
                        limit=limit,
                        used=used,
                        requested=requested,
                    )
                    raise QuotaExceededError(
                        message=f"Quota exceeded for {resource}: {used} + {requested} > {limit}",
                        details={
                            "resource": resource,
                            "limit": limit,
                            "used": used,
                            "requested": requested,
                        },
                    )

            if grow.is_zero():
                return usage

            usage = await self._usage_for_update(tenant)
            usage.workloads += grow.workloads
            usage.memory_mb += grow.memory_mb
            usage.storage_mb += grow.storage_mb
            usage.updated_at = utcnow()
            await self._db.commit()

        self._log.info(
            "quota.reserve",
            tenant=tenant,
            workloads=grow.workloads,
            memory_mb=grow.memory_mb,
            storage_mb=grow.storage_mb,
        )
        return usage

    async def release(self, tenant: str, delta: QuotaDelta) -> QuotaUsage:
        """Give back ``delta`` (its positive part). Totals are clamped at zero."""
        shrink = delta.positive()
        lock = await get_tenant_lock(tenant)
        async with lock:
            usage = await self._usage_for_update(tenant)
            if shrink.is_zero():
                return usage

            usage.workloads = max(usage.workloads - shrink.workloads, 0)
            usage.memory_mb = max(usage.memory_mb - shrink.memory_mb, 0)
            usage.storage_mb = max(usage.storage_mb - shrink.storage_mb, 0)
            usage.updated_at = utcnow()
            await self._db.commit()

        self._log.info(
            "quota.release",
            tenant=tenant,
            workloads=shrink.workloads,
            memory_mb=shrink.memory_mb,
            storage_mb=shrink.storage_mb,
        )
        return usage
