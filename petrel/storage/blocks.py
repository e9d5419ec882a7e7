"""File-backed block store for volumes.

Each volume is one file ``<root>/<name>.img``. Writes always land in a
temporary file in the same directory and are renamed into place, so an
interrupted or malformed upload leaves the previous content intact.

Compression uses zlib streams in both directions:
- compressed uploads are inflated while being written
- downloads at level 1-9 are deflated while being read
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import tempfile
import zlib
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

import structlog

from petrel.errors import NotFoundError, ValidationError

logger = structlog.get_logger()

MIB = 1024 * 1024


@dataclass
class StoredContent:
    """Result of writing a volume's content."""

    digest: str | None  # None for never-written (zero-filled) content
    size: int


class BlockStore:
    """Reads and writes raw volume images on the local filesystem."""

    def __init__(self, root_path: str | Path, chunk_size: int = 64 * 1024) -> None:
        self._root = Path(root_path)
        self._chunk_size = chunk_size
        self._log = logger.bind(component="block_store")

    def path(self, name: str) -> Path:
        return self._root / f"{name}.img"

    def exists(self, name: str) -> bool:
        return self.path(name).exists()

    def _tempfile(self) -> tuple[BinaryIO, str]:
        self._root.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._root, prefix=".write-")
        return os.fdopen(fd, "wb"), tmp_name

    async def create_empty(self, name: str, size_mb: int) -> StoredContent:
        """Create a zero-filled (sparse) image of ``size_mb`` MiB."""

        def _create() -> StoredContent:
            f, tmp_name = self._tempfile()
            try:
                with f:
                    f.truncate(size_mb * MIB)
                os.replace(tmp_name, self.path(name))
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
            return StoredContent(digest=None, size=size_mb * MIB)

        content = await asyncio.to_thread(_create)
        self._log.info("volume.content.created", volume=name, size_mb=size_mb)
        return content

    async def write(
        self,
        name: str,
        chunks: AsyncIterator[bytes],
        *,
        compressed: bool = False,
    ) -> StoredContent:
        """Replace the content of ``name`` with the bytes from ``chunks``.

        Raises:
            ValidationError: If ``compressed`` is set and the payload is not
                a complete zlib stream
        """
        f, tmp_name = await asyncio.to_thread(self._tempfile)
        digest = hashlib.sha256()
        size = 0
        inflater = zlib.decompressobj() if compressed else None

        try:
            try:
                with f:
                    async for chunk in chunks:
                        data = inflater.decompress(chunk) if inflater else chunk
                        if data:
                            digest.update(data)
                            size += len(data)
                            await asyncio.to_thread(f.write, data)
                    if inflater is not None:
                        tail = inflater.flush()
                        if not inflater.eof:
                            raise ValidationError(
                                message="Compressed payload is truncated",
                                details={"volume": name, "reason": "truncated_stream"},
                            )
                        if tail:
                            digest.update(tail)
                            size += len(tail)
                            await asyncio.to_thread(f.write, tail)
            except zlib.error as e:
                raise ValidationError(
                    message="Payload is not valid zlib data",
                    details={"volume": name, "reason": str(e)},
                ) from e
            await asyncio.to_thread(os.replace, tmp_name, self.path(name))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        self._log.info(
            "volume.content.written",
            volume=name,
            size=size,
            compressed=compressed,
        )
        return StoredContent(digest=digest.hexdigest(), size=size)

    async def read(self, name: str, compression_level: int = 0) -> AsyncIterator[bytes]:
        """Stream the content of ``name``, deflated when ``compression_level`` > 0.

        Raises:
            NotFoundError: If the volume has no content on disk
        """
        path = self.path(name)
        if not path.exists():
            raise NotFoundError(
                message=f"Volume content not found: {name}",
                details={"volume": name},
            )

        deflater = zlib.compressobj(compression_level) if compression_level > 0 else None
        f = await asyncio.to_thread(open, path, "rb")
        try:
            while True:
                chunk = await asyncio.to_thread(f.read, self._chunk_size)
                if not chunk:
                    break
                if deflater is None:
                    yield chunk
                    continue
                out = deflater.compress(chunk)
                if out:
                    yield out
            if deflater is not None:
                yield deflater.flush()
        finally:
            f.close()

    async def delete(self, name: str) -> None:
        """Remove the content of ``name`` (idempotent)."""
        await asyncio.to_thread(self.path(name).unlink, missing_ok=True)
        self._log.info("volume.content.deleted", volume=name)
