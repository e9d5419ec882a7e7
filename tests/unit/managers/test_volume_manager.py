"""Unit tests for VolumeManager.

Tests volume CRUD, content streaming and the attachment guards.
"""

from __future__ import annotations

import zlib

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from petrel.errors import (
    DuplicateNameError,
    NotFoundError,
    ValidationError,
    VolumeAttachedError,
)
from petrel.managers.volume import VolumeManager
from petrel.managers.workload import WorkloadManager
from petrel.models.workload import VolumeAttachment, Workload
from petrel.storage.blocks import MIB
from tests.fakes import FakeLauncher


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


async def _collect(stream) -> bytes:
    return b"".join([chunk async for chunk in stream])


class TestVolumeManagerCreate:
    async def test_create_empty(self, volume_manager: VolumeManager):
        volume = await volume_manager.create("alice", "vol-1", 2)

        assert volume.name == "vol-1"
        assert volume.owner == "alice"
        assert volume.size_mb == 2
        assert volume.digest is None
        assert volume.stored_bytes == 2 * MIB
        assert volume_manager.blocks.path("vol-1").stat().st_size == 2 * MIB

    async def test_create_with_payload(self, volume_manager: VolumeManager):
        volume = await volume_manager.create(
            "alice", "vol-1", 1, payload=_chunks(b"hello ", b"world")
        )

        assert volume.stored_bytes == 11
        assert volume.digest is not None
        assert volume_manager.blocks.path("vol-1").read_bytes() == b"hello world"

    async def test_create_with_compressed_payload(self, volume_manager: VolumeManager):
        raw = b"block" * 1000
        packed = zlib.compress(raw)

        volume = await volume_manager.create(
            "alice",
            "vol-1",
            1,
            compressed=True,
            payload=_chunks(packed[:10], packed[10:]),
        )

        assert volume.compressed is True
        assert volume.stored_bytes == len(raw)
        assert volume_manager.blocks.path("vol-1").read_bytes() == raw

    @pytest.mark.parametrize("name", ["", "-vol", "vol/1", "a" * 64])
    async def test_invalid_name(self, volume_manager: VolumeManager, name: str):
        with pytest.raises(ValidationError):
            await volume_manager.create("alice", name, 1)

    @pytest.mark.parametrize("size", [0, -1, True])
    async def test_invalid_size(self, volume_manager: VolumeManager, size):
        with pytest.raises(ValidationError):
            await volume_manager.create("alice", "vol-1", size)

    async def test_duplicate_name_across_tenants(self, volume_manager: VolumeManager):
        await volume_manager.create("alice", "vol-1", 1)

        with pytest.raises(DuplicateNameError):
            await volume_manager.create("bob", "vol-1", 1)

    async def test_bad_compressed_payload_leaves_nothing(self, volume_manager: VolumeManager):
        with pytest.raises(ValidationError):
            await volume_manager.create(
                "alice", "vol-1", 1, compressed=True, payload=_chunks(b"not zlib")
            )

        assert await volume_manager.list("alice") == []
        assert not volume_manager.blocks.exists("vol-1")


class TestVolumeManagerQueries:
    async def test_get_foreign_volume_is_not_found(self, volume_manager: VolumeManager):
        await volume_manager.create("alice", "vol-1", 1)

        with pytest.raises(NotFoundError):
            await volume_manager.get("bob", "vol-1")

    async def test_list_is_owner_scoped_and_sorted(self, volume_manager: VolumeManager):
        await volume_manager.create("alice", "vol-b", 1)
        await volume_manager.create("alice", "vol-a", 1)
        await volume_manager.create("bob", "vol-c", 1)

        volumes = await volume_manager.list("alice")

        assert [v.name for v in volumes] == ["vol-a", "vol-b"]


class TestVolumeManagerUploadDownload:
    async def test_upload_replaces_content(self, volume_manager: VolumeManager):
        await volume_manager.create("alice", "vol-1", 1, payload=_chunks(b"old"))

        volume = await volume_manager.upload("alice", "vol-1", _chunks(b"new content"))

        assert volume.stored_bytes == 11
        _, stream = await volume_manager.download("alice", "vol-1")
        assert await _collect(stream) == b"new content"

    async def test_failed_upload_keeps_old_content(self, volume_manager: VolumeManager):
        await volume_manager.create("alice", "vol-1", 1, payload=_chunks(b"keep me"))

        with pytest.raises(ValidationError):
            await volume_manager.upload(
                "alice", "vol-1", _chunks(zlib.compress(b"xyz")[:-3]), compressed=True
            )

        _, stream = await volume_manager.download("alice", "vol-1")
        assert await _collect(stream) == b"keep me"

    async def test_download_compressed(self, volume_manager: VolumeManager):
        raw = b"sector" * 5000
        await volume_manager.create("alice", "vol-1", 1, payload=_chunks(raw))

        _, stream = await volume_manager.download("alice", "vol-1", compression_level=9)

        assert zlib.decompress(await _collect(stream)) == raw

    @pytest.mark.parametrize("level", [-1, 10, True])
    async def test_download_bad_level(self, volume_manager: VolumeManager, level):
        await volume_manager.create("alice", "vol-1", 1)

        with pytest.raises(ValidationError):
            await volume_manager.download("alice", "vol-1", compression_level=level)

    async def test_download_missing(self, volume_manager: VolumeManager):
        with pytest.raises(NotFoundError):
            await volume_manager.download("alice", "nope")


class TestVolumeManagerAttachmentGuards:
    async def test_delete_unattached(self, volume_manager: VolumeManager):
        await volume_manager.create("alice", "vol-1", 1)

        await volume_manager.delete("alice", "vol-1")

        assert await volume_manager.list("alice") == []
        assert not volume_manager.blocks.exists("vol-1")

    async def test_delete_blocked_by_attachment_row(
        self,
        volume_manager: VolumeManager,
        db_session: AsyncSession,
    ):
        await volume_manager.create("alice", "vol-1", 1)
        db_session.add(VolumeAttachment(volume_name="vol-1", workload_name="web-1"))
        await db_session.commit()

        with pytest.raises(VolumeAttachedError) as exc_info:
            await volume_manager.delete("alice", "vol-1")

        assert exc_info.value.details["workloads"] == ["web-1"]
        assert volume_manager.blocks.exists("vol-1")

    async def test_delete_blocked_then_allowed_after_destroy(
        self,
        volume_manager: VolumeManager,
        workload_manager: WorkloadManager,
    ):
        await volume_manager.create("alice", "vol-1", 1)
        await workload_manager.deploy(
            "alice",
            "web-1",
            {"cpuid": 0, "memory": 64, "block_devices": [{"name": "storage", "host_device": "vol-1"}]},
            b"unikernel",
        )

        with pytest.raises(VolumeAttachedError):
            await volume_manager.delete("alice", "vol-1")

        await workload_manager.destroy("alice", "web-1")
        await volume_manager.delete("alice", "vol-1")

        assert await volume_manager.list("alice") == []

    async def test_upload_blocked_while_running(
        self,
        volume_manager: VolumeManager,
        workload_manager: WorkloadManager,
        fake_launcher: FakeLauncher,
        db_session: AsyncSession,
    ):
        await volume_manager.create("alice", "vol-1", 1)
        await workload_manager.deploy(
            "alice",
            "web-1",
            {"cpuid": 0, "memory": 64, "block_devices": [{"name": "storage", "host_device": "vol-1"}]},
            b"unikernel",
        )

        with pytest.raises(VolumeAttachedError):
            await volume_manager.upload("alice", "vol-1", _chunks(b"data"))

        # An exited workload no longer holds the volume open
        fake_launcher.exit_instance("web-1@1")
        assert await workload_manager.reconcile_exited("alice", "web-1", "web-1@1")
        volume = await volume_manager.upload("alice", "vol-1", _chunks(b"data"))
        assert volume.stored_bytes == 4
        workload = await db_session.get(Workload, "web-1")
        assert workload.block_devices[0]["host_device"] == "vol-1"
