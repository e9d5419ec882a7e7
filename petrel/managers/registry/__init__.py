"""Workload registry."""

from petrel.managers.registry.registry import WorkloadRegistry

__all__ = ["WorkloadRegistry"]
