"""Quota data models.

QuotaPolicy is the per-tenant ceiling; QuotaUsage is what the tenant's
registered workloads currently consume. Both are keyed by tenant id.
"""

from datetime import datetime

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel

from petrel.utils.datetime import utcnow


class QuotaPolicy(SQLModel, table=True):
    """Per-tenant resource policy."""

    __tablename__ = "quota_policies"

    tenant_id: str = Field(primary_key=True)

    max_workloads: int = Field(default=0)
    max_memory_mb: int = Field(default=0)
    max_storage_mb: int = Field(default=0)

    allowed_cpuids: list[int] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    allowed_bridges: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))

    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class QuotaUsage(SQLModel, table=True):
    """Per-tenant consumed resources."""

    __tablename__ = "quota_usage"

    tenant_id: str = Field(primary_key=True)

    workloads: int = Field(default=0)
    memory_mb: int = Field(default=0)
    storage_mb: int = Field(default=0)

    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
