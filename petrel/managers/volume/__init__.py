"""Volume manager."""

from petrel.managers.volume.volume import VolumeManager

__all__ = ["VolumeManager"]
