"""VolumeManager - manages block volume lifecycle and content.

Volumes are global names (they are file names on disk) owned by one
tenant. Workloads reference volumes by name through the attachment table;
a volume can only be deleted once nothing references it.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from petrel.concurrency.locks import cleanup_volume_lock, get_volume_lock
from petrel.config import get_settings
from petrel.errors import (
    DuplicateNameError,
    NotFoundError,
    ValidationError,
    VolumeAttachedError,
)
from petrel.managers.registry import WorkloadRegistry
from petrel.models.volume import Volume
from petrel.storage.blocks import BlockStore
from petrel.utils.datetime import utcnow
from petrel.validators.names import validate_name

logger = structlog.get_logger()


class VolumeManager:
    """Manages volume metadata and content."""

    def __init__(self, db_session: AsyncSession, *, blocks: BlockStore | None = None) -> None:
        self._db = db_session
        self._settings = get_settings()
        self._blocks = blocks or BlockStore(
            self._settings.volumes.root_path,
            chunk_size=self._settings.volumes.chunk_size,
        )
        self._registry = WorkloadRegistry(db_session)
        self._log = logger.bind(manager="volume")

    @property
    def blocks(self) -> BlockStore:
        return self._blocks

    async def _fetch(self, name: str) -> Volume | None:
        result = await self._db.execute(
            select(Volume).where(Volume.name == name).execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def get(self, owner: str, name: str) -> Volume:
        """Get a volume by name.

        Raises:
            NotFoundError: If the volume does not exist or is not visible
        """
        volume = await self._fetch(name)
        if volume is None or volume.owner != owner:
            raise NotFoundError(
                message=f"Volume not found: {name}",
                details={"volume": name},
            )
        return volume

    async def get_many(self, owner: str, names: set[str]) -> dict[str, Volume]:
        """Get several volumes of ``owner`` (for attachment checks).

        Raises:
            NotFoundError: On the first missing or foreign volume
        """
        return {name: await self.get(owner, name) for name in sorted(names)}

    async def list(self, owner: str) -> list[Volume]:
        result = await self._db.execute(
            select(Volume).where(Volume.owner == owner).order_by(Volume.name)
        )
        return list(result.scalars().all())

    async def create(
        self,
        owner: str,
        name: str,
        size_mb: int,
        *,
        compressed: bool = False,
        payload: AsyncIterator[bytes] | None = None,
    ) -> Volume:
        """Create a volume, empty or with initial content.

        Args:
            owner: Owner identifier
            name: Volume name
            size_mb: Declared size (advisory when a payload is given)
            compressed: Payload is a zlib stream
            payload: Initial content; None creates a zero-filled image

        Raises:
            ValidationError: Bad name, size, or compressed payload
            DuplicateNameError: A volume with this name exists
        """
        validate_name(name, field_name="block_name")
        if isinstance(size_mb, bool) or not isinstance(size_mb, int) or size_mb < 1:
            raise ValidationError(
                message="block_size must be an integer >= 1",
                details={"field": "block_size", "value": size_mb},
            )

        lock = await get_volume_lock(name)
        async with lock:
            if await self._fetch(name) is not None:
                raise DuplicateNameError(
                    message=f"Volume already exists: {name}",
                    details={"volume": name},
                )

            self._log.info(
                "volume.create",
                volume=name,
                owner=owner,
                size_mb=size_mb,
                with_payload=payload is not None,
            )

            if payload is None:
                content = await self._blocks.create_empty(name, size_mb)
                compressed = False
            else:
                content = await self._blocks.write(name, payload, compressed=compressed)

            volume = Volume(
                name=name,
                owner=owner,
                size_mb=size_mb,
                compressed=compressed,
                digest=content.digest,
                stored_bytes=content.size,
            )
            self._db.add(volume)
            try:
                await self._db.commit()
            except Exception:
                await self._blocks.delete(name)
                raise
            await self._db.refresh(volume)

        return volume

    async def upload(
        self,
        owner: str,
        name: str,
        payload: AsyncIterator[bytes],
        *,
        compressed: bool = False,
    ) -> Volume:
        """Replace a volume's content.

        Raises:
            NotFoundError: Volume missing or not visible
            VolumeAttachedError: Volume backs a running workload
            ValidationError: Malformed compressed payload (old content kept)
        """
        lock = await get_volume_lock(name)
        async with lock:
            volume = await self.get(owner, name)

            running = await self._registry.running_workloads_using_volume(name)
            if running:
                raise VolumeAttachedError(
                    message=f"Volume {name} is in use by a running workload",
                    details={"volume": name, "workloads": running},
                )

            content = await self._blocks.write(name, payload, compressed=compressed)

            volume.compressed = compressed
            volume.digest = content.digest
            volume.stored_bytes = content.size
            volume.updated_at = utcnow()
            await self._db.commit()
            await self._db.refresh(volume)

        self._log.info("volume.upload", volume=name, size=content.size, compressed=compressed)
        return volume

    async def download(
        self,
        owner: str,
        name: str,
        compression_level: int = 0,
    ) -> tuple[Volume, AsyncIterator[bytes]]:
        """Open a volume's content as a chunk stream.

        Args:
            compression_level: 0 for raw content, 1-9 for zlib at that level

        Raises:
            ValidationError: compression_level out of range
            NotFoundError: Volume missing or not visible
        """
        if (
            isinstance(compression_level, bool)
            or not isinstance(compression_level, int)
            or not 0 <= compression_level <= 9
        ):
            raise ValidationError(
                message="compression_level must be an integer between 0 and 9",
                details={"field": "compression_level", "value": compression_level},
            )

        volume = await self.get(owner, name)
        if not self._blocks.exists(name):
            raise NotFoundError(
                message=f"Volume content not found: {name}",
                details={"volume": name},
            )

        self._log.info("volume.download", volume=name, compression_level=compression_level)
        return volume, self._blocks.read(name, compression_level)

    async def delete(self, owner: str, name: str) -> None:
        """Delete a volume and its content.

        Raises:
            NotFoundError: Volume missing or not visible
            VolumeAttachedError: Any workload version references the volume
        """
        lock = await get_volume_lock(name)
        async with lock:
            volume = await self.get(owner, name)

            workloads = await self._registry.workloads_using_volume(name)
            if workloads:
                raise VolumeAttachedError(
                    message=f"Volume {name} is attached to {', '.join(workloads)}",
                    details={"volume": name, "workloads": workloads},
                )

            self._log.info("volume.delete", volume=name, owner=owner)
            await self._db.delete(volume)
            await self._db.commit()
            await self._blocks.delete(name)

        await cleanup_volume_lock(name)
