"""Local storage backends for images and volumes."""

from petrel.storage.blocks import BlockStore, StoredContent
from petrel.storage.images import ImageStore

__all__ = ["BlockStore", "ImageStore", "StoredContent"]
