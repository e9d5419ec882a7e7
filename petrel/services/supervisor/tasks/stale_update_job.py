"""StaleUpdateJobTask - abandon update jobs nobody will finish."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from petrel.config import get_settings
from petrel.managers.registry import WorkloadRegistry
from petrel.managers.workload import WorkloadManager
from petrel.services.supervisor.base import SupervisorTask, TaskResult
from petrel.utils.datetime import utc_before

if TYPE_CHECKING:
    from petrel.launchers.base import Launcher

logger = structlog.get_logger()


class StaleUpdateJobTask(SupervisorTask):
    """Discard update jobs older than update.stale_job_seconds.

    Such jobs are left behind when the process handling the update died
    or the request was cancelled. The candidate is stopped, its quota
    reservation released and the job deleted.
    """

    def __init__(
        self,
        launcher: "Launcher",
        db_session: AsyncSession,
        *,
        manager: WorkloadManager | None = None,
    ) -> None:
        self._registry = WorkloadRegistry(db_session)
        self._manager = manager or WorkloadManager(launcher, db_session)
        self._max_age = get_settings().update.stale_job_seconds
        self._log = logger.bind(supervisor_task="stale_update_job")

    @property
    def name(self) -> str:
        return "stale_update_job"

    async def run(self) -> TaskResult:
        result = TaskResult(task_name=self.name)

        jobs = await self._registry.list_jobs_created_before(utc_before(self._max_age))
        stale = [(job.workload_name, job.id) for job in jobs]

        for workload_name, job_id in stale:
            try:
                if await self._manager.abandon_update(workload_name, job_id=job_id):
                    result.handled_count += 1
                else:
                    result.skipped_count += 1
            except Exception as e:
                self._log.exception(
                    "supervisor.stale_update_job.item_error",
                    workload=workload_name,
                    job_id=job_id,
                )
                result.add_error(f"job {job_id}: {e}")

        return result
