"""Content-addressed unikernel image store.

Images are stored under ``<root>/<sha256>.img``. Running, candidate and
retained versions reference images by digest; the workload manager deletes
an image once no version references it.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import tempfile
from pathlib import Path

import structlog

logger = structlog.get_logger()


class ImageStore:
    """Stores unikernel binaries by sha256 digest."""

    def __init__(self, root_path: str | Path) -> None:
        self._root = Path(root_path)
        self._log = logger.bind(component="image_store")

    @property
    def root(self) -> Path:
        return self._root

    def path(self, digest: str) -> Path:
        """Location of the image with ``digest``."""
        return self._root / f"{digest}.img"

    def exists(self, digest: str) -> bool:
        return self.path(digest).exists()

    @staticmethod
    def digest_of(data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    async def put(self, data: bytes) -> str:
        """Store ``data`` and return its digest. Storing twice is a no-op."""
        return await asyncio.to_thread(self._put_sync, data)

    def _put_sync(self, data: bytes) -> str:
        digest = self.digest_of(data)
        target = self.path(digest)
        if target.exists():
            return digest

        self._root.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._root, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.chmod(tmp_name, 0o644)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        self._log.info("image.stored", digest=digest, size=len(data))
        return digest

    async def delete(self, digest: str) -> None:
        """Remove an image (idempotent)."""
        await asyncio.to_thread(self.path(digest).unlink, missing_ok=True)
        self._log.info("image.deleted", digest=digest)
