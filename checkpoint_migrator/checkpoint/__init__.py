"""Checkpoint models, storage backends and the group-level store."""

from checkpoint_migrator.checkpoint.models import (
    Checkpoint,
    CheckpointGroup,
    GroupRef,
    RollbackReport,
    StorageUnit,
)
from checkpoint_migrator.checkpoint.store import CheckpointStore

__all__ = [
    "StorageUnit",
    "Checkpoint",
    "GroupRef",
    "CheckpointGroup",
    "RollbackReport",
    "CheckpointStore",
]
