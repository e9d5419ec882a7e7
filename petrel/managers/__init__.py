"""Business logic managers."""

from petrel.managers.quota import QuotaDelta, QuotaLedger
from petrel.managers.registry import WorkloadRegistry
from petrel.managers.volume import VolumeManager
from petrel.managers.workload import WorkloadManager

__all__ = [
    "QuotaDelta",
    "QuotaLedger",
    "VolumeManager",
    "WorkloadManager",
    "WorkloadRegistry",
]
