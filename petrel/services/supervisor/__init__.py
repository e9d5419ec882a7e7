"""Background supervisor.

Periodically reconciles recorded state with the launcher:
- ExitedWorkloadTask: applies fail behaviour to workloads that stopped
- StaleUpdateJobTask: abandons update jobs left behind
- ExpiredTokenTask: purges expired tokens
"""

from petrel.services.supervisor.base import SupervisorTask, TaskResult
from petrel.services.supervisor.scheduler import SupervisorScheduler
from petrel.services.supervisor.tasks import (
    ExitedWorkloadTask,
    ExpiredTokenTask,
    StaleUpdateJobTask,
)

__all__ = [
    "ExitedWorkloadTask",
    "ExpiredTokenTask",
    "StaleUpdateJobTask",
    "SupervisorScheduler",
    "SupervisorTask",
    "TaskResult",
]
