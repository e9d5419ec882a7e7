"""SQLModel data models."""

from petrel.models.quota import QuotaPolicy, QuotaUsage
from petrel.models.token import ApiToken
from petrel.models.volume import Volume
from petrel.models.workload import (
    BlockDevice,
    DnsProbe,
    FailBehaviour,
    HttpProbe,
    Liveliness,
    NetworkInterface,
    UpdateJob,
    VolumeAttachment,
    Workload,
    WorkloadStatus,
    WorkloadVersion,
)

__all__ = [
    "ApiToken",
    "BlockDevice",
    "DnsProbe",
    "FailBehaviour",
    "HttpProbe",
    "Liveliness",
    "NetworkInterface",
    "QuotaPolicy",
    "QuotaUsage",
    "UpdateJob",
    "Volume",
    "VolumeAttachment",
    "Workload",
    "WorkloadStatus",
    "WorkloadVersion",
]
