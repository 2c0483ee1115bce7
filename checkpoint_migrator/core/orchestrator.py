"""
Orchestrator: Main Migration Class
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

The primary entry point for checkpoint-migrator. Assembles the fact
collector, phase detector, state machine, checkpoint store, rollback
path and audit log, and exposes ``status``, ``step`` and ``rollback``.

Execution is strictly sequential. The only suspension points are phase
boundaries: each call loads the persisted state, does at most one
transition's worth of work, and persists the result before returning.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from checkpoint_migrator.checkpoint.backends.base import BaseStorageBackend
from checkpoint_migrator.checkpoint.backends.zfs import ZfsBackend
from checkpoint_migrator.checkpoint.models import CheckpointGroup, GroupRef
from checkpoint_migrator.checkpoint.store import CheckpointStore
from checkpoint_migrator.collaborators.base import (
    BootConfigurator,
    InitImageSystem,
    PackageSystem,
)
from checkpoint_migrator.collaborators.commands import (
    CommandBootConfigurator,
    CommandInitImageSystem,
    CommandPackageSystem,
)
from checkpoint_migrator.config.defaults import DEFAULT_CONFIG
from checkpoint_migrator.config.loader import load_config, load_config_from_dict
from checkpoint_migrator.config.schema import MigratorConfig
from checkpoint_migrator.core.detector import PhaseDetector
from checkpoint_migrator.core.facts import FactCollector, SystemFacts
from checkpoint_migrator.core.machine import MigrationStateMachine
from checkpoint_migrator.core.phase import ActionKind, ErrorKind, Outcome
from checkpoint_migrator.core.results import (
    ActionOutcome,
    ConfirmationRequest,
    RequiredAction,
    RollbackResult,
    StepPlan,
    StepResult,
    Transition,
)
from checkpoint_migrator.core.state import (
    MigrationState,
    PendingOperation,
    StateStore,
    TransitionRecord,
)
from checkpoint_migrator.exceptions import (
    CheckpointFailure,
    PreconditionFailure,
)
from checkpoint_migrator.observability.audit_log import AuditFilter, AuditLog
from checkpoint_migrator.observability.exporters.jsonl_exporter import JsonlFileExporter
from checkpoint_migrator.observability.exporters.stdout_exporter import StdoutExporter
from checkpoint_migrator.rollback.executor import RollbackExecutor
from checkpoint_migrator.rollback.selector import RollbackSelector, SelectionCriterion
from checkpoint_migrator.runner import CommandRunner

__all__ = ["Orchestrator", "ConfirmCallback"]

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[ConfirmationRequest], bool]


def _default_confirm(request: ConfirmationRequest) -> bool:
    """Default callback that auto-approves (for non-interactive use)."""
    logger.warning(
        "Auto-approving %s: %s (no confirm callback configured)",
        request.operation,
        request.summary,
    )
    return True


class Orchestrator:
    """
    Checkpointed, resumable migration driver.

    Collaborators and the storage backend default to the command-running
    implementations built from ``config``; tests inject their own.
    """

    def __init__(
        self,
        config: MigratorConfig | None = None,
        *,
        backend: BaseStorageBackend | None = None,
        package_system: PackageSystem | None = None,
        init_images: InitImageSystem | None = None,
        boot_configurator: BootConfigurator | None = None,
        collector: FactCollector | None = None,
        state_store: StateStore | None = None,
        runner: CommandRunner | None = None,
        clock: Callable[[], int] = time.time_ns,
    ) -> None:
        self._config = config or MigratorConfig()
        cfg = self._config
        releases = cfg.releases

        # ── Collaborators ─────────────────────────────────────────
        self._runner = runner or CommandRunner(
            dry_run=cfg.dry_run, timeout=cfg.commands.timeout
        )
        self._package_system = package_system or CommandPackageSystem(
            self._runner,
            check_release=cfg.commands.check_release,
            upgrade_packages=cfg.commands.upgrade_packages,
            release_upgrade=cfg.commands.release_upgrade,
        )
        self._init_images = init_images or CommandInitImageSystem(
            self._runner,
            regenerate_command=cfg.commands.regenerate_init_image,
            install_command=cfg.commands.install_init_generator,
            rebuild_command=cfg.commands.rebuild_init_images,
            generators=(cfg.tools.init_generator_a, cfg.tools.init_generator_b),
        )
        self._boot = boot_configurator or CommandBootConfigurator(
            self._runner, cfg.commands.sync_boot_config
        )

        # ── Subsystems ────────────────────────────────────────────
        self._backend = backend or ZfsBackend(
            pool=cfg.storage.pool,
            namespace=cfg.storage.namespace,
            include_root=cfg.storage.include_root,
            runner=self._runner,
        )
        self._store = CheckpointStore(
            self._backend,
            recognized_prefixes=cfg.checkpoints.recognized_prefixes,
            clock=clock,
        )
        self._collector = collector or FactCollector(
            pool=cfg.storage.pool,
            tools=cfg.tools.model_dump(),
            os_release_path=cfg.preflight.os_release_path,
            disk_path=cfg.preflight.disk_path,
            boot_id_path=cfg.preflight.boot_id_path,
            runner=self._runner,
            package_system=self._package_system,
            init_images=self._init_images,
        )
        self._detector = PhaseDetector(
            releases.source, releases.interim, releases.target
        )
        self._machine = MigrationStateMachine(
            releases.source,
            releases.interim,
            releases.target,
            min_kernel=cfg.kernel.min_version,
            min_free_gb=cfg.preflight.min_free_gb,
            labels=cfg.checkpoints.labels,
        )
        self._state_store = state_store or StateStore(cfg.state.path)
        self._selector = RollbackSelector(self._store)
        self._executor = RollbackExecutor(
            self._store,
            self._collector,
            self._state_store,
            expected_release=self._machine.expected_release,
            target_release=releases.target,
            init_images=self._init_images,
            boot_configurator=self._boot,
            safety_label=cfg.checkpoints.safety_label,
            sync_boot_config=cfg.rollback.sync_boot_config,
            rebuild_init_images=cfg.rollback.rebuild_init_images,
        )
        self._audit_log = AuditLog(
            max_entries=cfg.observability.audit_log_max_entries
        )
        self._published = 0

        self._setup_exporters()

    # ── Properties ─────────────────────────────────────────────────

    @property
    def version(self) -> str:
        """Return the checkpoint-migrator version string."""
        from checkpoint_migrator import __version__

        return __version__

    @property
    def config(self) -> MigratorConfig:
        return self._config

    @property
    def store(self) -> CheckpointStore:
        return self._store

    @property
    def machine(self) -> MigrationStateMachine:
        return self._machine

    # ── Class Methods (constructors) ──────────────────────────────

    @classmethod
    def from_config(cls, path: str, **kwargs: Any) -> Orchestrator:
        """Create an Orchestrator from a YAML config file."""
        return cls(config=load_config(path), **kwargs)

    @classmethod
    def default(cls, **kwargs: Any) -> Orchestrator:
        """Create an Orchestrator for the reference 24.04 -> 25.10 deployment."""
        return cls(config=load_config_from_dict(DEFAULT_CONFIG), **kwargs)

    # ── Setup ─────────────────────────────────────────────────────

    def _setup_exporters(self) -> None:
        """Configure audit log exporters from config."""
        obs = self._config.observability
        for exporter_name in obs.exporters:
            if exporter_name == "stdout":
                self._audit_log.add_exporter(StdoutExporter())
            elif exporter_name == "jsonl":
                self._audit_log.add_exporter(JsonlFileExporter(obs.jsonl_path))

    def add_exporter(self, exporter: Any) -> None:
        """Add an exporter that receives every new history record."""
        self._audit_log.add_exporter(exporter)

    def get_audit_log(self, filters: AuditFilter | None = None) -> list[TransitionRecord]:
        """Query records written during this process's lifetime."""
        return self._audit_log.query(filters)

    # ── Primary API: Status & Facts ───────────────────────────────

    def status(self) -> MigrationState:
        """Return the persisted migration state without changing it."""
        return self._state_store.load_or_create()

    def facts(self) -> SystemFacts:
        return self._collector.collect()

    def candidates(self) -> list[CheckpointGroup]:
        """Consistent checkpoint groups, newest first."""
        return self._selector.candidates()

    # ── Primary API: Step ─────────────────────────────────────────

    def step(self) -> StepPlan:
        """
        Plan (and where possible perform) the next transition.

        Checkpoints and verifications are performed here and come back
        as a resolved plan. An external action comes back unresolved:
        the caller runs ``required_action`` and reports through
        ``plan.complete(outcome)``. Cancelling is only safe before the
        action starts, via ``plan.cancel()``; interrupting checkpoint
        creation is not supported.
        """
        state = self._load_state()
        facts = self._collector.collect()

        if state.pending is not None and state.pending.is_rollback:
            return StepPlan(
                phase=state.current_phase,
                result=self._block_on_pending_rollback(state, facts),
            )

        self._reconcile(state, facts)
        transition = self._machine.advance(state, facts)

        if transition.terminal:
            self._save(state)
            return StepPlan(
                phase=state.current_phase,
                result=StepResult(
                    outcome=Outcome.SUCCESS,
                    phase=state.current_phase,
                    message="Migration complete",
                    action=transition.action,
                ),
            )

        if transition.blocked:
            result = self._machine.record_blocked(state, transition, facts)
            self._save(state)
            return StepPlan(
                phase=state.current_phase,
                next_phase=transition.to_phase,
                required_action=transition.action,
                result=result,
            )

        action = transition.action
        if action.kind is ActionKind.CREATE_CHECKPOINT:
            outcome = self._create_checkpoint(state, action)
            result = self._machine.commit(state, transition, outcome, facts)
            self._save(state)
            return StepPlan(
                phase=state.current_phase,
                next_phase=transition.to_phase,
                required_action=action,
                result=result,
            )

        if not action.kind.is_external():
            result = self._machine.commit(
                state, transition, ActionOutcome.ok(detail=action.description), facts
            )
            self._save(state)
            return StepPlan(
                phase=state.current_phase,
                next_phase=transition.to_phase,
                required_action=action,
                result=result,
            )

        marker = PendingOperation(
            operation="action",
            from_phase=transition.from_phase,
            to_phase=transition.to_phase,
            action=action.kind.value,
            checkpoint=state.last_checkpoint_group,
            boot_id=facts.boot_id,
        )
        state.pending = marker
        self._save(state)
        logger.info("Awaiting %s (%s)", action.kind, action.description)
        return StepPlan(
            phase=state.current_phase,
            next_phase=transition.to_phase,
            required_action=action,
            on_complete=lambda outcome: self._complete(marker, transition, outcome),
            on_cancel=lambda: self._cancel(marker, transition),
        )

    def _reload_for(
        self, marker: PendingOperation, transition: Transition
    ) -> tuple[MigrationState, StepResult | None]:
        """
        Re-read state for a plan's completion.

        Returns a FAILURE result instead when the plan's pending marker
        is no longer the persisted one, e.g. because a rollback or a
        newer step ran in between.
        """
        state = self._load_state()
        if state.pending is not None and state.pending.id == marker.id:
            return state, None
        found = state.pending.id if state.pending is not None else "none"
        detail = (
            f"plan for {transition.action.kind} (marker {marker.id}) no longer matches "
            f"the recorded migration (pending marker: {found})"
        )
        logger.error("Refusing stale step plan: %s", detail)
        return state, StepResult(
            outcome=Outcome.FAILURE,
            phase=state.current_phase,
            message="Stale step plan; run step again",
            error_kind=ErrorKind.PRECONDITION_FAILURE,
            action=transition.action,
            failures=[detail],
        )

    def _complete(
        self, marker: PendingOperation, transition: Transition, outcome: ActionOutcome
    ) -> StepResult:
        state, stale = self._reload_for(marker, transition)
        if stale is not None:
            return stale
        facts = self._collector.collect()
        result = self._machine.commit(state, transition, outcome, facts)
        self._save(state)
        return result

    def _cancel(self, marker: PendingOperation, transition: Transition) -> StepResult:
        state, stale = self._reload_for(marker, transition)
        if stale is not None:
            return stale
        state.pending = None
        self._save(state)
        logger.info("Cancelled %s before it started", transition.action.kind)
        return StepResult(
            outcome=Outcome.CANCELLED,
            phase=state.current_phase,
            message="Cancelled before the action started",
            error_kind=ErrorKind.CANCELLED,
            action=transition.action,
        )

    def _create_checkpoint(
        self, state: MigrationState, action: RequiredAction
    ) -> ActionOutcome:
        try:
            group = self._store.create(
                action.label or "", phase=state.current_phase.value, run_id=state.run_id
            )
        except CheckpointFailure as exc:
            return ActionOutcome.failed(str(exc), detail=f"checkpoint {action.label}")
        return ActionOutcome.ok(
            detail=f"checkpoint {group.ref} across {len(group)} units",
            checkpoint=group.ref,
        )

    def _reconcile(self, state: MigrationState, facts: SystemFacts) -> None:
        """Settle an interrupted action and raise the phase to what facts prove."""
        detected = self._detector.detect(facts, state)
        pending = state.pending
        # Boot in which the detected phase was reached, as far as we know.
        reached_in = facts.boot_id
        if pending is not None:
            state.pending = None
            reached = pending.to_phase is not None and detected.rank >= pending.to_phase.rank
            state.record(
                TransitionRecord(
                    kind="reconcile" if reached else "interrupted",
                    from_phase=pending.from_phase,
                    to_phase=pending.to_phase,
                    outcome=Outcome.SUCCESS if reached else Outcome.FAILURE,
                    run_id=state.run_id,
                    detail=(
                        f"{pending.action} completed before the process stopped"
                        if reached
                        else f"{pending.action} was interrupted; re-planning"
                    ),
                    error_kind=None if reached else ErrorKind.ACTION_FAILURE,
                    facts=facts.to_dict(),
                    boot_id=pending.boot_id,
                )
            )
            if reached:
                reached_in = pending.boot_id
            logger.warning(
                "Found pending %s from %s: %s",
                pending.action,
                pending.from_phase,
                "completed" if reached else "interrupted",
            )

        if detected is not state.current_phase:
            state.record(
                TransitionRecord(
                    kind="reconcile",
                    from_phase=state.current_phase,
                    to_phase=detected,
                    outcome=Outcome.SUCCESS,
                    run_id=state.run_id,
                    detail=f"facts show the system already reached {detected}",
                    facts=facts.to_dict(),
                    boot_id=reached_in,
                )
            )
            logger.info("Phase raised %s -> %s from facts", state.current_phase, detected)
            state.current_phase = detected

    def _block_on_pending_rollback(
        self, state: MigrationState, facts: SystemFacts
    ) -> StepResult:
        pending = state.pending
        target = pending.checkpoint if pending is not None else None
        detail = f"an interrupted rollback to {target} must be finished first"
        state.record(
            TransitionRecord(
                kind="precondition",
                from_phase=state.current_phase,
                to_phase=None,
                outcome=Outcome.FAILURE,
                run_id=state.run_id,
                detail=detail,
                error_kind=ErrorKind.PRECONDITION_FAILURE,
                facts=facts.to_dict(),
                checkpoint=target,
            )
        )
        self._save(state)
        logger.error("Step refused: %s", detail)
        return StepResult(
            outcome=Outcome.FAILURE,
            phase=state.current_phase,
            message="Re-run rollback to finish the interrupted rollback",
            error_kind=ErrorKind.PRECONDITION_FAILURE,
            failures=[detail],
        )

    # ── Primary API: Dispatch ─────────────────────────────────────

    def dispatch(self, action: RequiredAction) -> ActionOutcome:
        """Route an external action to its collaborator. Never raises."""
        try:
            if action.kind is ActionKind.UPGRADE_PACKAGES:
                return self._package_system.upgrade(None)
            if action.kind is ActionKind.RELEASE_UPGRADE:
                return self._package_system.upgrade(action.target)
            if action.kind is ActionKind.REGENERATE_INIT_IMAGE:
                return self._init_images.regenerate(action.kernel)
            if action.kind is ActionKind.SYNC_BOOT_CONFIG:
                return self._boot.sync()
        except Exception as exc:
            logger.error("Collaborator for %s raised: %s", action.kind, exc)
            return ActionOutcome.failed(f"{type(exc).__name__}: {exc}")
        if action.kind in (ActionKind.VERIFY, ActionKind.NONE):
            return ActionOutcome.ok(detail=action.description)
        return ActionOutcome.failed(f"{action.kind} is not dispatched to a collaborator")

    def run_step(self, confirm: ConfirmCallback | None = None) -> StepResult:
        """
        Run one step end to end: plan, confirm, dispatch, complete.

        ``confirm`` is asked before an external action starts; declining
        returns CANCELLED with phase and history unchanged.
        """
        plan = self.step()
        if plan.result is not None:
            return plan.result

        action = plan.required_action
        request = ConfirmationRequest(
            operation="step",
            summary=action.description if action else "",
            action=action,
        )
        if not self._ask(confirm, request):
            return plan.cancel()
        return plan.complete(self.dispatch(action))

    # ── Primary API: Rollback ─────────────────────────────────────

    def rollback(
        self,
        criterion: SelectionCriterion | None = None,
        confirm: ConfirmCallback | None = None,
    ) -> RollbackResult:
        """
        Roll every storage unit back to one consistent checkpoint group.

        With no criterion, an interrupted rollback is resumed against its
        recorded group; otherwise the newest candidate is chosen. Once
        confirmed, the rollback must not be interrupted.
        """
        state = self._load_state()
        if criterion is None and state.pending is not None and state.pending.is_rollback:
            if state.pending.checkpoint is not None:
                criterion = SelectionCriterion(group=state.pending.checkpoint)
                logger.warning("Resuming interrupted rollback to %s", state.pending.checkpoint)

        try:
            group = self._selector.select(criterion)
        except PreconditionFailure as exc:
            state.record(
                TransitionRecord(
                    kind="precondition",
                    from_phase=state.current_phase,
                    to_phase=None,
                    outcome=Outcome.FAILURE,
                    run_id=state.run_id,
                    detail="; ".join(exc.failures) or str(exc.args[0]),
                    error_kind=ErrorKind.PRECONDITION_FAILURE,
                )
            )
            self._save(state)
            return RollbackResult(
                outcome=Outcome.FAILURE,
                message=str(exc.args[0]),
                error_kind=ErrorKind.PRECONDITION_FAILURE,
                phase=state.current_phase,
                failures=exc.failures,
            )

        request = ConfirmationRequest(
            operation="rollback",
            summary=f"Roll back {len(group)} storage unit(s) to {group.ref}",
            group=group.ref,
        )
        if not self._ask(confirm, request):
            return RollbackResult(
                outcome=Outcome.CANCELLED,
                message="Rollback cancelled",
                error_kind=ErrorKind.CANCELLED,
                group=group.ref,
                phase=state.current_phase,
            )

        pending = state.pending
        if pending is not None and not pending.is_rollback:
            # Any plan still holding this marker can no longer commit.
            state.record(
                TransitionRecord(
                    kind="interrupted",
                    from_phase=pending.from_phase,
                    to_phase=pending.to_phase,
                    outcome=Outcome.FAILURE,
                    run_id=state.run_id,
                    detail=f"{pending.action} was superseded by a rollback to {group.ref}",
                    error_kind=ErrorKind.ACTION_FAILURE,
                    boot_id=pending.boot_id,
                )
            )
            logger.warning("Pending %s superseded by rollback", pending.action)

        result = self._executor.execute(group, state)
        self._publish(state)
        return result

    # ── Primary API: Destroy ──────────────────────────────────────

    def destroy(self, criterion: SelectionCriterion, force: bool = False) -> GroupRef:
        """
        Destroy a checkpoint group.

        An index selects among consistent candidates; a group reference
        may name any labelled group, including partial ones.

        Raises:
            PreconditionFailure: If the group cannot be found.
            CheckpointInUseError: If it is the migration's last checkpoint
                and ``force`` is not set.
        """
        if criterion.group is not None:
            group = self._store.get(criterion.group)
            if group is None:
                raise PreconditionFailure(
                    f"Checkpoint group {criterion.group} not found",
                    failures=[f"no group matches {criterion.group}"],
                )
        else:
            group = self._selector.select(criterion)
        state = self._state_store.load()
        protected = state.last_checkpoint_group if state is not None else None
        self._store.destroy(group, protected=protected, force=force)
        return group.ref

    # ── Internals ─────────────────────────────────────────────────

    @staticmethod
    def _ask(confirm: ConfirmCallback | None, request: ConfirmationRequest) -> bool:
        callback = confirm or _default_confirm
        try:
            return bool(callback(request))
        except Exception as exc:
            logger.error("Confirm callback failed, treating as declined: %s", exc)
            return False

    def _load_state(self) -> MigrationState:
        state = self._state_store.load_or_create()
        self._published = len(state.history)
        return state

    def _save(self, state: MigrationState) -> None:
        self._state_store.save(state)
        self._publish(state)

    def _publish(self, state: MigrationState) -> None:
        for entry in state.history[self._published :]:
            self._audit_log.write(entry)
        self._published = len(state.history)

    def __repr__(self) -> str:
        return (
            f"Orchestrator(releases={self._config.releases.source}->"
            f"{self._config.releases.interim}->{self._config.releases.target}, "
            f"backend={self._backend.name}, state={self._state_store.path})"
        )
