"""ExitedWorkloadTask - apply the fail behaviour of workloads that stopped."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from petrel.errors import PetrelError
from petrel.launchers.base import InstanceStatus
from petrel.managers.registry import WorkloadRegistry
from petrel.managers.workload import WorkloadManager
from petrel.services.supervisor.base import SupervisorTask, TaskResult

if TYPE_CHECKING:
    from petrel.launchers.base import Launcher

logger = structlog.get_logger()


class ExitedWorkloadTask(SupervisorTask):
    """Reconcile workloads recorded running whose instance is gone.

    Trigger condition:
        workload.status == running AND launcher reports exited / not found

    Action:
        - fail behaviour "restart": restart the running version
        - fail behaviour "quit": record the workload as exited

    The status read here is unlocked; the manager re-checks the instance
    under the workload lock before acting.
    """

    def __init__(
        self,
        launcher: "Launcher",
        db_session: AsyncSession,
        *,
        manager: WorkloadManager | None = None,
    ) -> None:
        self._launcher = launcher
        self._registry = WorkloadRegistry(db_session)
        self._manager = manager or WorkloadManager(launcher, db_session)
        self._log = logger.bind(supervisor_task="exited_workload")

    @property
    def name(self) -> str:
        return "exited_workload"

    async def run(self) -> TaskResult:
        result = TaskResult(task_name=self.name)

        workloads = await self._registry.list_running()
        candidates = [
            (w.name, w.owner, w.instance_name, w.fail_behaviour) for w in workloads
        ]

        for name, owner, instance_name, fail_behaviour in candidates:
            if instance_name is None:
                result.skipped_count += 1
                continue
            info = await self._launcher.status(instance_name)
            if info.status == InstanceStatus.RUNNING:
                result.skipped_count += 1
                continue

            self._log.info(
                "supervisor.exited_workload.found",
                workload=name,
                fail_behaviour=fail_behaviour.value,
                exit_code=info.exit_code,
            )
            try:
                if await self._manager.reconcile_exited(owner, name, instance_name):
                    result.handled_count += 1
                else:
                    result.skipped_count += 1
            except PetrelError as e:
                result.add_error(f"workload {name}: {e.message}")

        return result
