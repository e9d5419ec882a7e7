"""solo5 tender launcher."""

from petrel.launchers.solo5.launcher import Solo5Launcher

__all__ = ["Solo5Launcher"]
