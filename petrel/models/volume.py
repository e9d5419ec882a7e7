"""Volume data model.

A Volume is a named block-storage unit that workloads attach as block
devices. Workloads hold name references only (see VolumeAttachment);
deleting a workload never deletes its volumes.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from petrel.utils.datetime import utcnow


class Volume(SQLModel, table=True):
    """Volume - persistent block storage."""

    __tablename__ = "volumes"

    name: str = Field(primary_key=True)
    owner: str = Field(index=True)

    # Declared size; advisory, a larger payload is stored as-is
    size_mb: int = Field(default=1)

    # Whether the last payload arrived zlib-compressed
    compressed: bool = Field(default=False)

    # sha256 of the stored (raw) content
    digest: Optional[str] = Field(default=None)
    stored_bytes: int = Field(default=0)

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
