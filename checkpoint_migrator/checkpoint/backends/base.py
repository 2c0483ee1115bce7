"""
Base Storage Backend
~~~~~~~~~~~~~~~~~~~~

Abstract base class for the snapshot substrate underneath the
checkpoint store.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping

from checkpoint_migrator.checkpoint.models import Checkpoint, StorageUnit

__all__ = ["BaseStorageBackend", "CheckpointMetadata"]

CheckpointMetadata = Mapping[str, str]


class BaseStorageBackend(ABC):
    """
    Abstract base class for storage backends.

    A backend is responsible for:
    1. Discovering the current set of storage units (list_units)
    2. Capturing, completing, listing and destroying checkpoints
    3. Rolling a unit back to one of its checkpoints
    4. Discarding units that postdate a checkpoint

    Backends offer no multi-unit transaction; the store compensates.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Short backend identifier, e.g. ``zfs``."""
        ...

    @abstractmethod
    def list_units(self) -> list[StorageUnit]:
        """
        Walk the storage hierarchy and return every unit, parents first.

        Raises:
            StorageBackendError: If the hierarchy cannot be read.
        """
        ...

    @abstractmethod
    def capture(
        self,
        unit: StorageUnit,
        name: str,
        label: str,
        created_at: int,
        metadata: CheckpointMetadata,
    ) -> Checkpoint:
        """
        Capture one unit. The returned checkpoint is not yet complete.

        Raises:
            StorageBackendError: If the capture fails.
        """
        ...

    @abstractmethod
    def mark_complete(self, checkpoint: Checkpoint) -> Checkpoint:
        """Flag a captured checkpoint as complete and return the new value."""
        ...

    @abstractmethod
    def list_checkpoints(self) -> list[Checkpoint]:
        """
        Return every checkpoint on the substrate.

        Checkpoints without structured metadata are returned with an
        empty label so the store can exclude them.
        """
        ...

    @abstractmethod
    def rollback(self, checkpoint: Checkpoint) -> None:
        """Roll the checkpoint's unit back to it. Destructive."""
        ...

    @abstractmethod
    def destroy(self, checkpoint: Checkpoint) -> None:
        """Remove a checkpoint."""
        ...

    @abstractmethod
    def discard_unit(self, unit: StorageUnit) -> None:
        """Remove a unit (and its subtree) that did not exist at checkpoint time."""
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"
