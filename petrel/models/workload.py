"""Workload data models.

A Workload is one deployed unikernel, identified by its name.
- The running version's fields live on the workload row
- At most one retained-for-rollback version is kept, as a snapshot slot
- UpdateJob couples the previous and the candidate version while an
  update is in flight (at most one per workload name)
- VolumeAttachment is the back-reference table used by volume deletion
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field as PydanticField
from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel

from petrel.utils.datetime import utcnow


class FailBehaviour(str, Enum):
    """What happens when a workload exits on its own."""

    QUIT = "quit"
    RESTART = "restart"


class WorkloadStatus(str, Enum):
    """Observed workload status."""

    RUNNING = "running"
    EXITED = "exited"  # Exited with fail behaviour "quit"
    FAILED = "failed"  # Relaunch after restart/stop failed


class NetworkInterface(BaseModel):
    """Logical network device bound to a host bridge."""

    name: str
    host_device: str
    mac: str


class BlockDevice(BaseModel):
    """Logical block device backed by a volume."""

    name: str
    host_device: str  # Volume name
    sector_size: int = 512


class HttpProbe(BaseModel):
    address: str


class DnsProbe(BaseModel):
    address: str
    name: str


class Liveliness(BaseModel):
    """Health probes used to confirm an update candidate."""

    http: Optional[HttpProbe] = None
    dns: Optional[DnsProbe] = None


class WorkloadVersion(BaseModel):
    """Everything that defines what gets launched for a workload."""

    revision: int = 1
    cpuid: int
    memory_mb: int
    storage_mb: int = 0
    fail_behaviour: FailBehaviour = FailBehaviour.QUIT
    arguments: list[str] = PydanticField(default_factory=list)
    network_interfaces: list[NetworkInterface] = PydanticField(default_factory=list)
    block_devices: list[BlockDevice] = PydanticField(default_factory=list)
    liveliness: Optional[Liveliness] = None
    digest: str
    instance_name: Optional[str] = None

    def volume_names(self) -> set[str]:
        return {device.host_device for device in self.block_devices}

    def bridges(self) -> set[str]:
        return {iface.host_device for iface in self.network_interfaces}


def instance_name_for(workload_name: str, revision: int) -> str:
    """Launcher identity of one version. '@' never occurs in workload names."""
    return f"{workload_name}@{revision}"


class Workload(SQLModel, table=True):
    """Workload - a deployed unikernel (running version on the row)."""

    __tablename__ = "workloads"

    name: str = Field(primary_key=True)
    owner: str = Field(index=True)

    status: WorkloadStatus = Field(default=WorkloadStatus.RUNNING, index=True)
    revision: int = Field(default=1)

    cpuid: int
    memory_mb: int
    storage_mb: int = Field(default=0)
    fail_behaviour: FailBehaviour = Field(default=FailBehaviour.QUIT)
    digest: str = Field(index=True)

    arguments: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    network_interfaces: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    block_devices: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    liveliness: Optional[dict[str, Any]] = Field(
        default=None,
        sa_column=Column(JSON, nullable=True, default=None),
    )

    # Launcher identity of the running instance
    instance_name: Optional[str] = Field(default=None)

    # Single rollback slot: a WorkloadVersion dump, or None
    retained: Optional[dict[str, Any]] = Field(
        default=None,
        sa_column=Column(JSON, nullable=True, default=None),
    )

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    started_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    def current_version(self) -> WorkloadVersion:
        """Snapshot of the running version."""
        return WorkloadVersion(
            revision=self.revision,
            cpuid=self.cpuid,
            memory_mb=self.memory_mb,
            storage_mb=self.storage_mb,
            fail_behaviour=self.fail_behaviour,
            arguments=list(self.arguments),
            network_interfaces=[NetworkInterface(**i) for i in self.network_interfaces],
            block_devices=[BlockDevice(**b) for b in self.block_devices],
            liveliness=Liveliness(**self.liveliness) if self.liveliness else None,
            digest=self.digest,
            instance_name=self.instance_name,
        )

    def apply_version(self, version: WorkloadVersion) -> None:
        """Make ``version`` the running version. JSON columns get new objects."""
        self.revision = version.revision
        self.cpuid = version.cpuid
        self.memory_mb = version.memory_mb
        self.storage_mb = version.storage_mb
        self.fail_behaviour = version.fail_behaviour
        self.arguments = list(version.arguments)
        self.network_interfaces = [i.model_dump() for i in version.network_interfaces]
        self.block_devices = [b.model_dump() for b in version.block_devices]
        self.liveliness = version.liveliness.model_dump() if version.liveliness else None
        self.digest = version.digest
        self.instance_name = version.instance_name
        self.updated_at = utcnow()

    @property
    def retained_version(self) -> Optional[WorkloadVersion]:
        if self.retained is None:
            return None
        return WorkloadVersion.model_validate(self.retained)

    @property
    def can_rollback(self) -> bool:
        return self.retained is not None


class UpdateJob(SQLModel, table=True):
    """In-flight update of one workload.

    The row is deleted when the job finishes, fails, or is invalidated.
    The unique workload_name allows at most one open job per workload.
    """

    __tablename__ = "update_jobs"

    id: str = Field(primary_key=True)
    workload_name: str = Field(index=True, unique=True)
    owner: str = Field(index=True)

    previous: dict[str, Any] = Field(sa_column=Column(JSON, nullable=False))
    candidate: dict[str, Any] = Field(sa_column=Column(JSON, nullable=False))

    # Quota reserved for the candidate while both versions exist
    reserved_memory_mb: int = Field(default=0)
    reserved_storage_mb: int = Field(default=0)

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime, index=True)

    @property
    def previous_version(self) -> WorkloadVersion:
        return WorkloadVersion.model_validate(self.previous)

    @property
    def candidate_version(self) -> WorkloadVersion:
        return WorkloadVersion.model_validate(self.candidate)


class VolumeAttachment(SQLModel, table=True):
    """Back-reference from a workload (any of its versions) to a volume."""

    __tablename__ = "volume_attachments"

    volume_name: str = Field(primary_key=True)
    workload_name: str = Field(primary_key=True, index=True)
