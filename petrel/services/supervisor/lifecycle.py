"""Supervisor lifecycle management for FastAPI lifespan integration."""

from __future__ import annotations

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from petrel.api.dependencies import get_launcher
from petrel.config import get_settings
from petrel.services.supervisor.base import SupervisorTask
from petrel.services.supervisor.scheduler import SupervisorScheduler
from petrel.services.supervisor.tasks import (
    ExitedWorkloadTask,
    ExpiredTokenTask,
    StaleUpdateJobTask,
)

logger = structlog.get_logger()

_scheduler: SupervisorScheduler | None = None


def build_tasks(db_session: AsyncSession) -> list[SupervisorTask]:
    """Enabled tasks, in execution order, bound to ``db_session``."""
    config = get_settings().supervisor
    launcher = get_launcher()

    tasks: list[SupervisorTask] = []
    if config.exited_workload.enabled:
        tasks.append(ExitedWorkloadTask(launcher, db_session))
    if config.stale_update_job.enabled:
        tasks.append(StaleUpdateJobTask(launcher, db_session))
    if config.expired_token.enabled:
        tasks.append(ExpiredTokenTask(db_session))
    return tasks


async def init_supervisor() -> SupervisorScheduler:
    """Create the scheduler; start its loop when supervisor.enabled.

    Called during FastAPI lifespan startup, after database initialization.
    """
    global _scheduler

    config = get_settings().supervisor
    logger.info(
        "supervisor.init",
        enabled=config.enabled,
        interval_seconds=config.interval_seconds,
        run_on_startup=config.run_on_startup,
    )

    _scheduler = SupervisorScheduler(config, task_factory=build_tasks)
    if not config.enabled:
        return _scheduler

    if config.run_on_startup:
        try:
            await _scheduler.run_once()
        except Exception as e:
            # Startup continues; the loop retries next interval
            logger.exception("supervisor.run_on_startup.failed", error=str(e))

    await _scheduler.start()
    return _scheduler


async def shutdown_supervisor() -> None:
    """Stop the scheduler. Called during FastAPI lifespan shutdown."""
    global _scheduler

    if _scheduler is not None:
        await _scheduler.stop()
        _scheduler = None


def get_supervisor() -> SupervisorScheduler | None:
    return _scheduler
