"""Launcher layer - hypervisor abstraction."""

from petrel.launchers.base import (
    BlockBinding,
    InstanceInfo,
    InstanceStatus,
    LaunchSpec,
    Launcher,
    LauncherError,
    NetBinding,
)
from petrel.launchers.solo5 import Solo5Launcher

__all__ = [
    "BlockBinding",
    "InstanceInfo",
    "InstanceStatus",
    "LaunchSpec",
    "Launcher",
    "LauncherError",
    "NetBinding",
    "Solo5Launcher",
]
