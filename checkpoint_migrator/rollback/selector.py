"""
Rollback Selector
~~~~~~~~~~~~~~~~~

Orders consistent checkpoint groups and resolves an operator's choice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from checkpoint_migrator.checkpoint.models import CheckpointGroup, GroupRef
from checkpoint_migrator.checkpoint.store import CheckpointStore
from checkpoint_migrator.exceptions import PreconditionFailure

__all__ = ["RollbackSelector", "SelectionCriterion"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SelectionCriterion:
    """
    Which group to roll back to.

    With neither field set, the newest consistent group is chosen.

    Attributes:
        index: Position in the candidate list, 0 being the newest.
        group: Exact group reference.
    """

    index: int | None = None
    group: GroupRef | None = None

    def describe(self) -> str:
        if self.group is not None:
            return f"group {self.group}"
        if self.index is not None:
            return f"candidate #{self.index}"
        return "newest candidate"


class RollbackSelector:
    """Offers only consistent groups; never skips an inconsistent choice silently."""

    def __init__(self, store: CheckpointStore) -> None:
        self._store = store

    def candidates(self) -> list[CheckpointGroup]:
        """Return consistent groups, newest first by ``created_at``."""
        groups = [g for g in self._store.list() if g.consistent]
        groups.sort(key=lambda g: (g.created_at, g.label), reverse=True)
        return groups

    def select(self, criterion: SelectionCriterion | None = None) -> CheckpointGroup:
        """
        Resolve ``criterion`` to a single consistent group.

        Raises:
            PreconditionFailure: If there are no candidates, the index is
                out of range, or the named group is unknown or inconsistent.
        """
        criterion = criterion or SelectionCriterion()
        candidates = self.candidates()

        if criterion.group is not None:
            for group in candidates:
                if group.ref == criterion.group:
                    return group
            inconsistent = [
                g for g in self._store.list() if g.ref == criterion.group
            ]
            if inconsistent:
                raise PreconditionFailure(
                    f"Checkpoint group {criterion.group} is inconsistent",
                    failures=[
                        f"group {criterion.group} has {len(inconsistent[0])} "
                        "checkpoint(s) but is partial or incomplete"
                    ],
                    how_to_fix=(
                        "1. Choose another group: checkpoint-migrator candidates\n"
                        "2. Destroy the partial group once it is no longer needed"
                    ),
                )
            raise PreconditionFailure(
                f"Checkpoint group {criterion.group} not found",
                failures=[f"no recognized group matches {criterion.group}"],
            )

        if not candidates:
            raise PreconditionFailure(
                "No rollback candidates",
                failures=["no consistent checkpoint group exists"],
                how_to_fix=(
                    "1. List snapshots on the pool: zfs list -t snapshot\n"
                    "2. Check checkpoints.recognized_prefixes in the config"
                ),
            )

        index = criterion.index or 0
        if index < 0 or index >= len(candidates):
            raise PreconditionFailure(
                f"Invalid candidate index {index}",
                failures=[f"index must be between 0 and {len(candidates) - 1}"],
            )
        selected = candidates[index]
        logger.info("Selected %s for rollback (%s)", selected.ref, criterion.describe())
        return selected
