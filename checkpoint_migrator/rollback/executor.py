"""
Rollback Executor
~~~~~~~~~~~~~~~~~

Guarded rollback of a whole checkpoint group. Every step is a hard
precondition for the next: persist a pending marker, capture a safety
group, roll back, rebuild init images and resync boot configuration
for the restored tree, verify facts, and only then move the migration
state.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from checkpoint_migrator.checkpoint.models import CheckpointGroup, GroupRef
from checkpoint_migrator.checkpoint.store import CheckpointStore
from checkpoint_migrator.collaborators.base import BootConfigurator, InitImageSystem
from checkpoint_migrator.core.facts import INIT_GENERATOR_A, FactCollector
from checkpoint_migrator.core.phase import ErrorKind, Outcome, Phase
from checkpoint_migrator.core.results import RollbackResult
from checkpoint_migrator.core.state import (
    MigrationState,
    PendingOperation,
    StateStore,
    TransitionRecord,
)
from checkpoint_migrator.exceptions import (
    CheckpointFailure,
    RollbackFailure,
    StorageBackendError,
)

__all__ = ["RollbackExecutor"]

logger = logging.getLogger(__name__)


def restored_phase(group: CheckpointGroup) -> Phase:
    """Phase recorded on ``group``, or ROLLED_BACK when it is unknown."""
    try:
        return Phase(group.phase) if group.phase else Phase.ROLLED_BACK
    except ValueError:
        return Phase.ROLLED_BACK


class RollbackExecutor:
    """
    Runs a rollback that is safe to re-invoke after a crash.

    A RollbackFailure is recorded and returned as a FAILURE result. It is
    never retried here; the pending marker stays in place so the
    migration cannot continue over a mixed tree.

    Args:
        store: Checkpoint store holding the target group.
        collector: Fact source for post-rollback verification.
        state_store: Durable state persistence.
        expected_release: Release expected in a given phase, None if unknown.
        target_release: Release the migration moves to.
        init_images: Optional init-image system used to rebuild images
            for the restored tree.
        boot_configurator: Optional boot configuration sync after rollback.
        safety_label: Label of the group captured just before rolling back.
        rebuild_init_images: Whether to rebuild init images afterwards.
        sync_boot_config: Whether to sync boot configuration afterwards.
    """

    def __init__(
        self,
        store: CheckpointStore,
        collector: FactCollector,
        state_store: StateStore,
        expected_release: Callable[[Phase], str | None],
        target_release: str,
        init_images: InitImageSystem | None = None,
        boot_configurator: BootConfigurator | None = None,
        safety_label: str = "before-rollback",
        sync_boot_config: bool = True,
        rebuild_init_images: bool = True,
    ) -> None:
        self._store = store
        self._collector = collector
        self._state_store = state_store
        self._expected_release = expected_release
        self._target = target_release
        self._init_images = init_images
        self._boot = boot_configurator
        self._safety_label = safety_label
        self._sync_boot_config = sync_boot_config
        self._rebuild_init_images = rebuild_init_images

    def execute(self, group: CheckpointGroup, state: MigrationState) -> RollbackResult:
        """
        Roll the whole storage tree back to ``group`` and update ``state``.

        Must not be interrupted once it starts; cancellation is only
        supported before this call.
        """
        previous = state.current_phase
        restored = restored_phase(group)
        state.pending = PendingOperation(
            operation="rollback",
            from_phase=previous,
            to_phase=restored,
            checkpoint=group.ref,
        )
        self._state_store.save(state)
        logger.warning("Rolling back to %s (restores %s)", group.ref, restored)

        try:
            safety = self._store.create(
                self._safety_label, phase=previous.value, run_id=state.run_id
            )
        except CheckpointFailure as exc:
            state.pending = None
            return self._fail(
                state,
                previous,
                restored,
                group,
                ErrorKind.CHECKPOINT_FAILURE,
                f"Safety checkpoint failed, nothing was rolled back: {exc}",
            )

        try:
            report = self._store.rollback_group(group)
        except RollbackFailure as exc:
            touched = exc.report is not None and (
                exc.report.rolled_back or exc.report.discarded
            )
            if not touched:
                state.pending = None
            result = self._fail(
                state,
                previous,
                restored,
                group,
                ErrorKind.ROLLBACK_FAILURE,
                exc.what_happened,
            )
            result.safety_group = self._surviving(safety.ref)
            result.report = exc.report
            return result

        failures: list[str] = []
        if self._rebuild_init_images and self._init_images is not None:
            # /boot is not part of the group; its images may come from a later phase.
            if self._collector.collect().has_tool(INIT_GENERATOR_A):
                rebuilt = self._init_images.rebuild_current()
                if not rebuilt.success:
                    failures.append(
                        f"init image rebuild failed: {rebuilt.error or rebuilt.detail}"
                    )
        if self._sync_boot_config and self._boot is not None:
            synced = self._boot.sync()
            if not synced.success:
                failures.append(f"boot config sync failed: {synced.error or synced.detail}")

        facts = self._collector.collect()
        expected = self._expected_release(restored)
        if expected is None:
            if facts.release == self._target:
                failures.append(f"release is still {facts.release} after rollback")
        elif facts.release != expected:
            failures.append(
                f"release is {facts.release or 'unknown'} after rollback, expected {expected}"
            )

        outcome = Outcome.UNVERIFIED if failures else Outcome.SUCCESS
        state.current_phase = restored
        state.last_checkpoint_group = group.ref
        state.record(
            TransitionRecord(
                kind="rollback",
                from_phase=previous,
                to_phase=restored,
                outcome=outcome,
                run_id=state.run_id,
                detail="; ".join(failures) or f"rolled back to {group.ref}",
                error_kind=ErrorKind.POSTCONDITION_FAILURE if failures else None,
                facts=facts.to_dict(),
                checkpoint=group.ref,
                boot_id=facts.boot_id,
            )
        )
        state.start_new_attempt()
        state.pending = None
        self._state_store.save(state)

        if failures:
            logger.error("Rollback to %s unverified: %s", group.ref, "; ".join(failures))
            message = f"Rolled back to {group.ref}, but verification failed"
        else:
            logger.info("Rolled back to %s; phase is now %s", group.ref, restored)
            message = f"Rolled back to {group.ref}; safety checkpoint {safety.ref} was superseded"
        return RollbackResult(
            outcome=outcome,
            message=message,
            error_kind=ErrorKind.POSTCONDITION_FAILURE if failures else None,
            group=group.ref,
            report=report,
            phase=restored,
            failures=failures,
        )

    def _fail(
        self,
        state: MigrationState,
        previous: Phase,
        restored: Phase,
        group: CheckpointGroup,
        error_kind: ErrorKind,
        detail: str,
    ) -> RollbackResult:
        logger.error("Rollback to %s failed: %s", group.ref, detail)
        state.record(
            TransitionRecord(
                kind="rollback",
                from_phase=previous,
                to_phase=restored,
                outcome=Outcome.FAILURE,
                run_id=state.run_id,
                detail=detail,
                error_kind=error_kind,
                checkpoint=group.ref,
            )
        )
        self._state_store.save(state)
        return RollbackResult(
            outcome=Outcome.FAILURE,
            message=detail.splitlines()[0] if detail else "Rollback failed",
            error_kind=error_kind,
            group=group.ref,
            phase=previous,
            failures=[detail],
        )

    def _surviving(self, ref: GroupRef) -> GroupRef | None:
        """``ref`` if its group is still whole on the pool, else None."""
        try:
            group = self._store.get(ref)
        except StorageBackendError as exc:
            logger.error("Cannot look up safety checkpoint %s: %s", ref, exc)
            return None
        if group is None or not group.consistent:
            logger.warning("Safety checkpoint %s was partly consumed by the rollback", ref)
            return None
        return ref
