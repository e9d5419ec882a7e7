"""Supervisor task base classes and result structures."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class TaskResult:
    """Result of one supervisor task run.

    Attributes:
        task_name: Name of the task
        handled_count: Items acted on (restarted, marked, abandoned, purged)
        skipped_count: Items inspected but left alone
        errors: One message per item that failed
    """

    task_name: str = ""
    handled_count: int = 0
    skipped_count: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def add_error(self, error: str) -> None:
        self.errors.append(error)


class SupervisorTask(ABC):
    """One periodic reconciliation step.

    A failing item is recorded in TaskResult.errors and never aborts the
    rest of the run.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Task name (for logging)."""
        ...

    @abstractmethod
    async def run(self) -> TaskResult:
        """Inspect the fleet once and act on what needs attention."""
        ...
