"""Storage backends."""

from checkpoint_migrator.checkpoint.backends.base import BaseStorageBackend
from checkpoint_migrator.checkpoint.backends.zfs import ZfsBackend

__all__ = ["BaseStorageBackend", "ZfsBackend"]
