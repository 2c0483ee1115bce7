"""
Checkpoint Store
~~~~~~~~~~~~~~~~

Creates, lists, rolls back, and destroys checkpoint groups across
every storage unit the backend discovers. Multi-unit atomicity is
achieved by compensation: a failed group is destroyed, never kept.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from datetime import UTC, datetime

from checkpoint_migrator.checkpoint.backends.base import BaseStorageBackend
from checkpoint_migrator.checkpoint.models import (
    Checkpoint,
    CheckpointGroup,
    GroupRef,
    RollbackReport,
    StorageUnit,
)
from checkpoint_migrator.exceptions import (
    CheckpointFailure,
    CheckpointInUseError,
    RollbackFailure,
    StorageBackendError,
)

__all__ = ["CheckpointStore", "DEFAULT_RECOGNIZED_PREFIXES"]

logger = logging.getLogger(__name__)

DEFAULT_RECOGNIZED_PREFIXES: tuple[str, ...] = (
    "pre-upgrade-",
    "before-upgrade-to-",
    "before-dracut-migration",
)


class CheckpointStore:
    """
    Group-level checkpoint operations over a storage backend.

    The store has no notion of migration phases; ``phase`` and
    ``run_id`` are opaque tags written alongside each checkpoint.
    """

    def __init__(
        self,
        backend: BaseStorageBackend,
        recognized_prefixes: Iterable[str] = DEFAULT_RECOGNIZED_PREFIXES,
        clock: Callable[[], int] = time.time_ns,
    ) -> None:
        self._backend = backend
        self._prefixes = tuple(recognized_prefixes)
        self._clock = clock

    @property
    def backend(self) -> BaseStorageBackend:
        return self._backend

    def is_recognized(self, label: str) -> bool:
        """Return True if ``label`` belongs to a recognized checkpoint family."""
        return any(label.startswith(prefix) for prefix in self._prefixes)

    # ── Create ─────────────────────────────────────────────────────

    def create(
        self,
        label: str,
        *,
        phase: str | None = None,
        run_id: str | None = None,
    ) -> CheckpointGroup:
        """
        Capture every storage unit under one ``label`` + timestamp.

        Either every unit is captured and marked complete, or every
        capture made so far is destroyed and CheckpointFailure raised.

        Raises:
            CheckpointFailure: If enumeration or any capture fails.
        """
        try:
            units = self._backend.list_units()
            existing = self._backend.list_checkpoints()
        except StorageBackendError as exc:
            raise CheckpointFailure(
                f"Cannot enumerate storage units for '{label}': {exc}",
                details={"label": label},
            ) from exc

        if not units:
            raise CheckpointFailure(
                f"No storage units found to checkpoint for '{label}'",
                details={"label": label},
            )

        created_at = self._next_timestamp(existing)
        name = self._display_name(label, created_at, existing)
        metadata = {"units": str(len(units))}
        if phase:
            metadata["phase"] = str(phase)
        if run_id:
            metadata["run"] = run_id

        captured: list[Checkpoint] = []
        current: StorageUnit | None = None
        try:
            for unit in units:
                current = unit
                checkpoint = self._backend.capture(
                    unit, name, label, created_at, metadata
                )
                captured.append(checkpoint)
                captured[-1] = self._backend.mark_complete(checkpoint)
        except StorageBackendError as exc:
            leftovers = self._compensate(captured, label, created_at)
            logger.error(
                "Checkpoint '%s' failed on %s after %d/%d units: %s",
                label,
                current,
                len(captured),
                len(units),
                exc,
            )
            raise CheckpointFailure(
                f"Checkpoint '{label}' failed on {current}: {exc}",
                details={
                    "label": label,
                    "created_at": created_at,
                    "failed_unit": str(current),
                    "captured": len(captured),
                    "total": len(units),
                    "leftover": leftovers,
                },
            ) from exc

        group = CheckpointGroup(
            ref=GroupRef(label=label, created_at=created_at), checkpoints=captured
        )
        logger.info("Created checkpoint group %s across %d units", group.ref, len(group))
        return group

    def _next_timestamp(self, existing: list[Checkpoint]) -> int:
        newest = max((cp.created_at for cp in existing), default=0)
        return max(self._clock(), newest + 1)

    @staticmethod
    def _display_name(label: str, created_at: int, existing: list[Checkpoint]) -> str:
        stamp = datetime.fromtimestamp(created_at / 1_000_000_000, tz=UTC)
        name = f"{label}-{stamp:%Y%m%d-%H%M%S}"
        taken = {cp.name for cp in existing}
        if name in taken:
            name = f"{name}-{created_at % 1_000_000_000:09d}"
        return name

    def _compensate(
        self, captured: list[Checkpoint], label: str, created_at: int
    ) -> list[str]:
        """Destroy partial captures in reverse order; return what survived."""
        leftovers: list[str] = []
        for checkpoint in reversed(captured):
            self._destroy_partial(checkpoint, leftovers)
        attempted = {(cp.unit.path, cp.name) for cp in captured}
        # A capture that timed out may still have landed on the pool.
        try:
            stragglers = [
                cp
                for cp in self._backend.list_checkpoints()
                if cp.label == label
                and cp.created_at == created_at
                and (cp.unit.path, cp.name) not in attempted
            ]
        except StorageBackendError as exc:
            logger.error("Could not re-list checkpoints for '%s': %s", label, exc)
            return leftovers
        for checkpoint in stragglers:
            self._destroy_partial(checkpoint, leftovers)
        return leftovers

    def _destroy_partial(self, checkpoint: Checkpoint, leftovers: list[str]) -> None:
        try:
            self._backend.destroy(checkpoint)
        except StorageBackendError as exc:
            logger.error(
                "Could not remove partial checkpoint %s@%s: %s",
                checkpoint.unit,
                checkpoint.name,
                exc,
            )
            leftovers.append(f"{checkpoint.unit}@{checkpoint.name}")

    # ── List ───────────────────────────────────────────────────────

    def list(self) -> list[CheckpointGroup]:
        """
        Return recognized checkpoint groups, newest first.

        Groups are keyed on structured ``label`` + ``created_at``
        metadata. Checkpoints without metadata or with an unrecognized
        label are left out. Inconsistent groups are included and
        flagged through ``CheckpointGroup.consistent``.
        """
        return self._group(self._backend.list_checkpoints(), recognized_only=True)

    def get(self, ref: GroupRef) -> CheckpointGroup | None:
        """Look up any labelled group, recognized or not."""
        for group in self._group(self._backend.list_checkpoints(), recognized_only=False):
            if group.ref == ref:
                return group
        return None

    def _group(
        self, checkpoints: list[Checkpoint], recognized_only: bool
    ) -> list[CheckpointGroup]:
        groups: dict[GroupRef, CheckpointGroup] = {}
        for checkpoint in checkpoints:
            if not checkpoint.label:
                continue
            if recognized_only and not self.is_recognized(checkpoint.label):
                continue
            ref = checkpoint.group_ref
            groups.setdefault(ref, CheckpointGroup(ref=ref)).checkpoints.append(
                checkpoint
            )
        for group in groups.values():
            group.checkpoints.sort(key=lambda cp: cp.unit.path)
        return sorted(
            groups.values(), key=lambda g: (g.created_at, g.label), reverse=True
        )

    # ── Rollback ───────────────────────────────────────────────────

    def rollback_group(self, group: CheckpointGroup) -> RollbackReport:
        """
        Roll every unit in ``group`` back to its checkpoint.

        The rollback surface is the containment tree under each
        checkpointed unit: units inside it that were created after the
        group are discarded first, deepest first. Any individual
        failure aborts the rest.

        Raises:
            RollbackFailure: With a report of exactly which units were
                rolled back before the failure.
        """
        report = RollbackReport(group=group.ref)
        members = sorted(group.checkpoints, key=lambda cp: cp.unit.path)
        member_paths = {cp.unit.path for cp in members}

        try:
            current = self._backend.list_units()
        except StorageBackendError as exc:
            report.error = str(exc)
            report.not_attempted = sorted(member_paths)
            raise RollbackFailure(
                f"Cannot enumerate storage units: {exc}", report=report
            ) from exc

        current_paths = {u.path for u in current}
        missing = sorted(member_paths - current_paths)
        contained = [
            unit
            for unit in current
            if unit.path not in member_paths
            and any(cp.unit.contains(unit) for cp in members)
        ]
        uncovered = [
            unit.path
            for unit in contained
            if unit.created_at is None or unit.created_at <= group.created_at
        ]
        if missing or uncovered:
            report.error = (
                f"missing units: {missing}; contained units without checkpoint: {uncovered}"
            )
            report.not_attempted = sorted(member_paths)
            raise RollbackFailure(
                f"Group {group.ref} cannot be rolled back safely", report=report
            )

        # destroy -r on the top-most new unit covers its descendants
        contained_paths = {u.path for u in contained}
        discards = sorted(
            (u for u in contained if u.parent not in contained_paths),
            key=lambda u: u.depth,
            reverse=True,
        )
        work: list[tuple[str, StorageUnit, Checkpoint | None]] = [
            ("discard", unit, None) for unit in discards
        ]
        work += [("rollback", cp.unit, cp) for cp in members]

        for index, (op, unit, checkpoint) in enumerate(work):
            try:
                if checkpoint is None:
                    self._backend.discard_unit(unit)
                    report.discarded.append(unit.path)
                else:
                    self._backend.rollback(checkpoint)
                    report.rolled_back.append(unit.path)
            except StorageBackendError as exc:
                report.failed = unit.path
                report.error = str(exc)
                report.not_attempted = [u.path for _, u, _ in work[index + 1 :]]
                logger.error(
                    "Rollback of %s aborted at %s (%s): %s",
                    group.ref,
                    unit,
                    op,
                    exc,
                )
                raise RollbackFailure(
                    f"Rollback of {group.ref} failed at {unit}", report=report
                ) from exc
            logger.info("Rolled back %s (%s)", unit, op)

        return report

    # ── Destroy ────────────────────────────────────────────────────

    def destroy(
        self,
        group: CheckpointGroup,
        *,
        protected: GroupRef | None = None,
        force: bool = False,
    ) -> None:
        """
        Remove every checkpoint in a group.

        Raises:
            CheckpointInUseError: If ``group`` is the protected reference
                and ``force`` is not set.
            CheckpointFailure: If some checkpoints could not be removed.
        """
        if protected is not None and group.ref == protected and not force:
            raise CheckpointInUseError(
                f"Group {group.ref} is the migration's last checkpoint; use force to destroy",
                details={"group": group.ref.to_dict()},
            )
        failures: list[str] = []
        for checkpoint in group.checkpoints:
            try:
                self._backend.destroy(checkpoint)
            except StorageBackendError as exc:
                logger.error("Could not destroy %s@%s: %s", checkpoint.unit, checkpoint.name, exc)
                failures.append(f"{checkpoint.unit}@{checkpoint.name}")
        if failures:
            raise CheckpointFailure(
                f"{len(failures)} checkpoint(s) of {group.ref} could not be destroyed",
                details={"group": group.ref.to_dict(), "leftover": failures},
            )
        logger.info("Destroyed checkpoint group %s", group.ref)
