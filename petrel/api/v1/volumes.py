"""Volumes API endpoints.

Create and upload take multipart forms; download streams the content
(optionally zlib-compressed) as an attachment.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime

from fastapi import APIRouter, File, Form, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from petrel.api.dependencies import AuthDep, VolumeManagerDep
from petrel.api.v1.responses import Envelope, ok
from petrel.config import get_settings
from petrel.models.volume import Volume

router = APIRouter()


class VolumeResponse(BaseModel):
    name: str
    size: int
    compressed: bool
    digest: str | None
    stored_bytes: int
    created_at: datetime
    updated_at: datetime


class DownloadVolumeRequest(BaseModel):
    block_name: str
    compression_level: int = Field(default=0, description="0 = raw, 1-9 = zlib level")


class DeleteVolumeRequest(BaseModel):
    block_name: str


def _volume_to_response(volume: Volume) -> dict:
    return VolumeResponse(
        name=volume.name,
        size=volume.size_mb,
        compressed=volume.compressed,
        digest=volume.digest,
        stored_bytes=volume.stored_bytes,
        created_at=volume.created_at,
        updated_at=volume.updated_at,
    ).model_dump(mode="json")


async def _upload_chunks(upload: UploadFile) -> AsyncIterator[bytes]:
    chunk_size = get_settings().volumes.chunk_size
    while True:
        chunk = await upload.read(chunk_size)
        if not chunk:
            return
        yield chunk


@router.get("", response_model=Envelope)
async def list_volumes(volume_mgr: VolumeManagerDep, owner: AuthDep) -> Envelope:
    volumes = await volume_mgr.list(owner)
    return ok(f"{len(volumes)} volumes", {"items": [_volume_to_response(v) for v in volumes]})


@router.post("/create", response_model=Envelope, status_code=201)
async def create_volume(
    volume_mgr: VolumeManagerDep,
    owner: AuthDep,
    block_name: str = Form(...),
    block_size: int = Form(...),
    block_compressed: bool = Form(False),
    data: UploadFile | None = File(None),
) -> Envelope:
    """Create a volume, zero-filled or from the uploaded ``data``."""
    volume = await volume_mgr.create(
        owner,
        block_name,
        block_size,
        compressed=block_compressed,
        payload=_upload_chunks(data) if data is not None else None,
    )
    return ok(f"Volume {block_name} created", _volume_to_response(volume), status=201)


@router.post("/upload", response_model=Envelope)
async def upload_volume(
    volume_mgr: VolumeManagerDep,
    owner: AuthDep,
    block_name: str = Form(...),
    block_compressed: bool = Form(False),
    data: UploadFile = File(...),
) -> Envelope:
    """Replace a volume's content. Refused while a running workload uses it."""
    volume = await volume_mgr.upload(
        owner,
        block_name,
        _upload_chunks(data),
        compressed=block_compressed,
    )
    return ok(f"Volume {block_name} uploaded", _volume_to_response(volume))


@router.post("/download")
async def download_volume(
    request: DownloadVolumeRequest,
    volume_mgr: VolumeManagerDep,
    owner: AuthDep,
) -> StreamingResponse:
    volume, chunks = await volume_mgr.download(owner, request.block_name, request.compression_level)
    suffix = ".img.zz" if request.compression_level > 0 else ".img"
    return StreamingResponse(
        chunks,
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{volume.name}{suffix}"'},
    )


@router.post("/delete", response_model=Envelope)
async def delete_volume(
    request: DeleteVolumeRequest,
    volume_mgr: VolumeManagerDep,
    owner: AuthDep,
) -> Envelope:
    """Delete a volume. Refused while any workload references it."""
    await volume_mgr.delete(owner, request.block_name)
    return ok(f"Volume {request.block_name} deleted")
