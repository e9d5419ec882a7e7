"""WorkloadRegistry - authoritative record of deployed workloads.

Read helpers and bookkeeping shared by the workload and volume managers:
workload and update-job lookup, the volume attachment table, and image
reference counting. The registry never talks to the launcher.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

import structlog
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from petrel.errors import NotFoundError
from petrel.models.workload import (
    UpdateJob,
    VolumeAttachment,
    Workload,
    WorkloadStatus,
    WorkloadVersion,
)

logger = structlog.get_logger()


class WorkloadRegistry:
    """Registry queries and bookkeeping over the workload tables."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._log = logger.bind(manager="registry")

    # Workloads

    async def get(self, name: str, owner: str | None = None) -> Workload | None:
        """Fresh read of a workload (bypasses stale identity-map state)."""
        query = select(Workload).where(Workload.name == name)
        if owner is not None:
            query = query.where(Workload.owner == owner)
        result = await self._db.execute(query.execution_options(populate_existing=True))
        return result.scalars().first()

    async def require(self, name: str, owner: str) -> Workload:
        """Get a workload visible to ``owner``.

        Raises:
            NotFoundError: If the workload does not exist or is not visible
        """
        workload = await self.get(name, owner)
        if workload is None:
            raise NotFoundError(
                message=f"Workload not found: {name}",
                details={"workload": name},
            )
        return workload

    async def exists(self, name: str) -> bool:
        """Whether any tenant owns a workload called ``name``."""
        return await self.get(name) is not None

    async def list(self, owner: str | None = None) -> list[Workload]:
        query = select(Workload).order_by(Workload.name)
        if owner is not None:
            query = query.where(Workload.owner == owner)
        result = await self._db.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def list_running(self) -> list[Workload]:
        result = await self._db.execute(
            select(Workload)
            .where(Workload.status == WorkloadStatus.RUNNING)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    # Update jobs

    async def get_job(self, name: str) -> UpdateJob | None:
        result = await self._db.execute(
            select(UpdateJob)
            .where(UpdateJob.workload_name == name)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def open_job_names(self, names: Iterable[str]) -> set[str]:
        """Subset of ``names`` with an open update job."""
        names = list(names)
        if not names:
            return set()
        result = await self._db.execute(
            select(UpdateJob.workload_name).where(UpdateJob.workload_name.in_(names))
        )
        return set(result.scalars().all())

    async def list_jobs_created_before(self, cutoff: datetime) -> list[UpdateJob]:
        result = await self._db.execute(
            select(UpdateJob)
            .where(UpdateJob.created_at < cutoff)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    # Attachments

    async def sync_attachments(
        self,
        workload_name: str,
        versions: Iterable[WorkloadVersion | None],
    ) -> set[str]:
        """Make the attachment rows of ``workload_name`` match ``versions``.

        Returns:
            The attached volume names
        """
        wanted: set[str] = set()
        for version in versions:
            if version is not None:
                wanted |= version.volume_names()

        result = await self._db.execute(
            select(VolumeAttachment).where(VolumeAttachment.workload_name == workload_name)
        )
        existing = {row.volume_name: row for row in result.scalars().all()}

        for volume_name, row in existing.items():
            if volume_name not in wanted:
                await self._db.delete(row)
        for volume_name in wanted - existing.keys():
            self._db.add(VolumeAttachment(volume_name=volume_name, workload_name=workload_name))

        return wanted

    async def clear_attachments(self, workload_name: str) -> None:
        await self._db.execute(
            delete(VolumeAttachment).where(VolumeAttachment.workload_name == workload_name)
        )

    async def workloads_using_volume(self, volume_name: str) -> list[str]:
        """Names of workloads with any version referencing ``volume_name``."""
        result = await self._db.execute(
            select(VolumeAttachment.workload_name)
            .where(VolumeAttachment.volume_name == volume_name)
            .order_by(VolumeAttachment.workload_name)
        )
        return list(result.scalars().all())

    async def running_workloads_using_volume(self, volume_name: str) -> list[str]:
        """Names of running workloads whose running version uses ``volume_name``."""
        names = await self.workloads_using_volume(volume_name)
        running: list[str] = []
        for name in names:
            workload = await self.get(name)
            if (
                workload is not None
                and workload.status == WorkloadStatus.RUNNING
                and volume_name in workload.current_version().volume_names()
            ):
                running.append(name)
        return running

    # Images

    async def digest_in_use(self, digest: str) -> bool:
        """Whether a running, retained or candidate version references ``digest``."""
        result = await self._db.execute(select(Workload).where(Workload.digest == digest).limit(1))
        if result.scalars().first() is not None:
            return True

        # JSON null and SQL NULL both mean "no retained version"; filter in Python
        result = await self._db.execute(select(Workload))
        for workload in result.scalars().all():
            if workload.retained and workload.retained.get("digest") == digest:
                return True

        result = await self._db.execute(select(UpdateJob))
        for job in result.scalars().all():
            if job.candidate.get("digest") == digest or job.previous.get("digest") == digest:
                return True

        return False
