"""Launcher base class - hypervisor abstraction.

Launcher is responsible ONLY for unikernel process lifecycle management.
It does NOT handle:
- Quota management
- Workload registry bookkeeping
- Retry of failed starts
- Health confirmation

A launcher instance is addressed by its instance name, which is
``<workload>@<revision>`` so that an update candidate can run next to the
version it replaces.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class InstanceStatus(str, Enum):
    """Instance status from launcher's perspective."""

    RUNNING = "running"
    EXITED = "exited"
    NOT_FOUND = "not_found"


@dataclass
class InstanceInfo:
    """Instance information from launcher."""

    instance_name: str
    status: InstanceStatus
    pid: int | None = None
    exit_code: int | None = None


@dataclass
class NetBinding:
    """A network device as handed to the launcher."""

    name: str
    bridge: str
    mac: str


@dataclass
class BlockBinding:
    """A block device as handed to the launcher."""

    name: str
    path: Path
    sector_size: int = 512


@dataclass
class LaunchSpec:
    """Everything needed to start one instance."""

    instance_name: str
    image_path: Path
    cpuid: int
    memory_mb: int
    arguments: list[str] = field(default_factory=list)
    nets: list[NetBinding] = field(default_factory=list)
    blocks: list[BlockBinding] = field(default_factory=list)


class LauncherError(Exception):
    """Launcher-level failure. Mapped to LaunchFailed by the managers."""

    def __init__(self, message: str, *, instance_name: str | None = None) -> None:
        self.instance_name = instance_name
        super().__init__(message)


class Launcher(ABC):
    """Abstract launcher interface for unikernel lifecycle management."""

    type: str = "unknown"

    @abstractmethod
    async def start(self, spec: LaunchSpec) -> InstanceInfo:
        """Start an instance and return once it is confirmed running.

        Raises:
            LauncherError: If the instance could not be started
        """
        ...

    @abstractmethod
    async def stop(self, instance_name: str) -> None:
        """Stop an instance. Stopping an unknown instance is a no-op.

        Raises:
            LauncherError: If a known instance could not be stopped
        """
        ...

    @abstractmethod
    async def status(self, instance_name: str) -> InstanceInfo:
        """Get instance status."""
        ...

    @abstractmethod
    def console(self, instance_name: str) -> AsyncIterator[str]:
        """Stream the instance's console output line by line.

        The iterator ends when the instance's output stream closes.
        """
        ...

    async def close(self) -> None:
        """Release launcher resources (called on shutdown)."""
        return None
