"""Supervisor scheduler - runs reconciliation tasks periodically."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import TYPE_CHECKING

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from petrel.db.session import get_async_session
from petrel.services.supervisor.base import SupervisorTask, TaskResult

if TYPE_CHECKING:
    from petrel.config import SupervisorConfig

logger = structlog.get_logger()

TaskFactory = Callable[[AsyncSession], list[SupervisorTask]]


class SupervisorScheduler:
    """Runs supervisor tasks serially, in order, on a fixed interval.

    Tasks come either as a fixed list, or from a factory called with a
    fresh database session at the start of every cycle.

    Usage:
        scheduler = SupervisorScheduler(settings.supervisor, task_factory=build_tasks)
        await scheduler.run_once()
        await scheduler.start()
        await scheduler.stop()
    """

    def __init__(
        self,
        config: "SupervisorConfig",
        *,
        tasks: list[SupervisorTask] | None = None,
        task_factory: TaskFactory | None = None,
    ) -> None:
        self._config = config
        self._tasks = tasks or []
        self._task_factory = task_factory
        self._log = logger.bind(service="supervisor")

        self._running = False
        self._loop_task: asyncio.Task | None = None

        # run_once and the background loop never overlap
        self._run_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_once(self) -> list[TaskResult]:
        """Execute one cycle (waits for a cycle already in progress)."""
        async with self._run_lock:
            if self._task_factory is None:
                return await self._run_tasks(self._tasks)
            async with get_async_session() as db_session:
                return await self._run_tasks(self._task_factory(db_session))

    async def _run_tasks(self, tasks: list[SupervisorTask]) -> list[TaskResult]:
        self._log.debug("supervisor.cycle.start", tasks=[t.name for t in tasks])
        results = [await self._run_task(task) for task in tasks]
        self._log.info(
            "supervisor.cycle.complete",
            total_handled=sum(r.handled_count for r in results),
            total_errors=sum(len(r.errors) for r in results),
        )
        return results

    async def _run_task(self, task: SupervisorTask) -> TaskResult:
        try:
            result = await task.run()
        except Exception as e:
            self._log.exception("supervisor.task.failed", task=task.name, error=str(e))
            result = TaskResult(task_name=task.name)
            result.add_error(f"Task failed: {e}")
            return result

        result.task_name = task.name
        for error in result.errors:
            self._log.warning("supervisor.task.item_error", task=task.name, error=error)
        if result.handled_count or result.errors:
            self._log.info(
                "supervisor.task.complete",
                task=task.name,
                handled=result.handled_count,
                skipped=result.skipped_count,
                errors=len(result.errors),
            )
        return result

    async def start(self) -> None:
        """Start the background loop."""
        if self._running:
            self._log.warning("supervisor.already_running")
            return

        self._running = True
        self._loop_task = asyncio.create_task(self._background_loop())
        self._log.info("supervisor.started", interval_seconds=self._config.interval_seconds)

    async def stop(self) -> None:
        """Stop the background loop."""
        if not self._running:
            return

        self._running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        self._log.info("supervisor.stopped")

    async def _background_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                self._log.exception("supervisor.cycle_error", error=str(e))

            try:
                await asyncio.sleep(self._config.interval_seconds)
            except asyncio.CancelledError:
                break
