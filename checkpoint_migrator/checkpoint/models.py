"""
Checkpoint Data Models
~~~~~~~~~~~~~~~~~~~~~~

Storage units, immutable checkpoints, and the groups that bind them
together under a shared ``label`` + ``created_at`` key.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

__all__ = [
    "StorageUnit",
    "Checkpoint",
    "GroupRef",
    "CheckpointGroup",
    "RollbackReport",
]


@dataclass(frozen=True, order=True)
class StorageUnit:
    """
    An independently snapshottable unit of persistent state.

    Attributes:
        path: Hierarchical ``/``-separated identifier, e.g. ``rpool/ROOT/ubuntu``.
        created_at: Creation time in ns since the epoch, when the backend knows it.
    """

    path: str
    created_at: int | None = field(default=None, compare=False)

    @property
    def parent(self) -> str | None:
        """Path of the containing unit, or None at the root."""
        head, sep, _ = self.path.rpartition("/")
        return head if sep else None

    @property
    def depth(self) -> int:
        return self.path.count("/")

    def contains(self, other: StorageUnit) -> bool:
        """Return True if ``other`` lies strictly inside this unit's subtree."""
        return other.path.startswith(self.path + "/")

    def __str__(self) -> str:
        return self.path


@dataclass(frozen=True)
class Checkpoint:
    """
    Immutable point-in-time capture of one StorageUnit.

    ``complete`` is only True once the capture call has returned
    success; a complete checkpoint is never mutated, only destroyed.

    Attributes:
        unit: The captured unit.
        name: Substrate display name, e.g. ``before-upgrade-to-25.04-20250101-120000``.
        label: Migration-attempt tag shared by every member of the group.
        created_at: Group timestamp in ns; identical across a group.
        complete: Whether the capture finished successfully.
        phase: Migration phase at capture time, if recorded.
        run_id: Migration attempt identifier, if recorded.
        expected_units: Number of units known when the group was created.
    """

    unit: StorageUnit
    name: str
    label: str
    created_at: int
    complete: bool = False
    phase: str | None = None
    run_id: str | None = None
    expected_units: int = 0

    @property
    def group_ref(self) -> GroupRef:
        return GroupRef(label=self.label, created_at=self.created_at)

    def completed(self) -> Checkpoint:
        """Return the complete copy of a freshly captured checkpoint."""
        return replace(self, complete=True)


@dataclass(frozen=True, order=True)
class GroupRef:
    """Key of a CheckpointGroup: the shared ``label`` + ``created_at`` pair."""

    label: str
    created_at: int

    @property
    def created_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.created_at / 1_000_000_000, tz=UTC)

    def to_dict(self) -> dict[str, Any]:
        return {"label": self.label, "created_at": self.created_at}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GroupRef:
        return cls(label=str(data["label"]), created_at=int(data["created_at"]))

    def __str__(self) -> str:
        return f"{self.label}@{self.created_datetime:%Y-%m-%d %H:%M:%S}"


@dataclass
class CheckpointGroup:
    """
    All checkpoints sharing the same ``label`` + ``created_at``.

    A group is consistent only if every unit known at creation time has
    exactly one complete checkpoint in it.
    """

    ref: GroupRef
    checkpoints: list[Checkpoint] = field(default_factory=list)

    @property
    def label(self) -> str:
        return self.ref.label

    @property
    def created_at(self) -> int:
        return self.ref.created_at

    @property
    def units(self) -> list[StorageUnit]:
        return [cp.unit for cp in self.checkpoints]

    @property
    def phase(self) -> str | None:
        phases = {cp.phase for cp in self.checkpoints if cp.phase}
        return phases.pop() if len(phases) == 1 else None

    @property
    def run_id(self) -> str | None:
        runs = {cp.run_id for cp in self.checkpoints if cp.run_id}
        return runs.pop() if len(runs) == 1 else None

    @property
    def consistent(self) -> bool:
        if not self.checkpoints:
            return False
        paths = [cp.unit.path for cp in self.checkpoints]
        if len(paths) != len(set(paths)):
            return False
        expected = {cp.expected_units for cp in self.checkpoints}
        if expected != {len(paths)}:
            return False
        return all(cp.complete for cp in self.checkpoints)

    def __len__(self) -> int:
        return len(self.checkpoints)


@dataclass
class RollbackReport:
    """Per-unit account of a group rollback."""

    group: GroupRef
    rolled_back: list[str] = field(default_factory=list)
    discarded: list[str] = field(default_factory=list)
    failed: str | None = None
    not_attempted: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.failed is None and self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "group": self.group.to_dict(),
            "rolled_back": list(self.rolled_back),
            "discarded": list(self.discarded),
            "failed": self.failed,
            "not_attempted": list(self.not_attempted),
            "error": self.error,
        }
