"""Liveliness probes."""

from petrel.services.liveliness.checker import HealthChecker

__all__ = ["HealthChecker"]
