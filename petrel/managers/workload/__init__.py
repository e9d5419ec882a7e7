"""Workload manager."""

from petrel.managers.workload.workload import WorkloadListItem, WorkloadManager, random_mac

__all__ = ["WorkloadListItem", "WorkloadManager", "random_mac"]
