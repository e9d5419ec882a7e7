"""Supervisor tasks."""

from petrel.services.supervisor.tasks.expired_token import ExpiredTokenTask
from petrel.services.supervisor.tasks.exited_workload import ExitedWorkloadTask
from petrel.services.supervisor.tasks.stale_update_job import StaleUpdateJobTask

__all__ = ["ExitedWorkloadTask", "ExpiredTokenTask", "StaleUpdateJobTask"]
