"""Concurrency utilities for Petrel."""

from petrel.concurrency.locks import (
    cleanup_volume_lock,
    cleanup_workload_lock,
    get_tenant_lock,
    get_volume_lock,
    get_workload_lock,
    volume_locks,
)

__all__ = [
    "cleanup_volume_lock",
    "cleanup_workload_lock",
    "get_tenant_lock",
    "get_volume_lock",
    "get_workload_lock",
    "volume_locks",
]
