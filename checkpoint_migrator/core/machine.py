"""
Migration State Machine
~~~~~~~~~~~~~~~~~~~~~~~

Table-driven phase graph. Each row names its preconditions, the
checkpoint it needs, the action it requests, and the postconditions
that must hold before the phase advances. The machine performs no I/O:
``advance`` describes work, ``commit`` records what happened.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from checkpoint_migrator.core.facts import (
    BOOT_SYNC_HELPER,
    INIT_GENERATOR_B,
    KernelVersion,
    SystemFacts,
)
from checkpoint_migrator.core.phase import (
    ActionKind,
    ErrorKind,
    Outcome,
    Phase,
    PoolHealth,
)
from checkpoint_migrator.core.results import (
    ActionOutcome,
    RequiredAction,
    StepResult,
    Transition,
)
from checkpoint_migrator.core.state import MigrationState, TransitionRecord

__all__ = ["MigrationStateMachine", "PhaseSpec", "Predicate", "DEFAULT_LABELS"]

logger = logging.getLogger(__name__)

# A predicate returns None when satisfied, or a failure message.
Predicate = Callable[[SystemFacts], "str | None"]

DEFAULT_LABELS: dict[str, str] = {
    "preflight": "pre-upgrade-{target}",
    "release_upgrade": "before-upgrade-to-{release}",
    "init_migration": "before-dracut-migration",
}


# ── Predicates ───────────────────────────────────────────────────


def release_is(expected: str) -> Predicate:
    def check(facts: SystemFacts) -> str | None:
        if facts.release != expected:
            return f"release is {facts.release or 'unknown'}, expected {expected}"
        return None

    return check


def pool_healthy(facts: SystemFacts) -> str | None:
    if facts.pool_health is not PoolHealth.HEALTHY:
        return f"storage pool is {facts.pool_health.value}, expected HEALTHY"
    return None


def pool_usable(facts: SystemFacts) -> str | None:
    if facts.pool_health in (PoolHealth.FAULTED, PoolHealth.ABSENT):
        return f"storage pool is {facts.pool_health.value}"
    return None


def kernel_at_least(minimum: KernelVersion) -> Predicate:
    def check(facts: SystemFacts) -> str | None:
        version = facts.kernel_version
        if version is None:
            return "kernel version unknown"
        if version < minimum:
            return f"kernel {version} is older than required {minimum}"
        return None

    return check


def free_space_at_least(gigabytes: float) -> Predicate:
    def check(facts: SystemFacts) -> str | None:
        if facts.free_space_gb is None:
            return "free disk space unknown"
        if facts.free_space_gb < gigabytes:
            return f"only {facts.free_space_gb:.1f} GB free, need {gigabytes:.0f} GB"
        return None

    return check


def tool_present(role: str) -> Predicate:
    def check(facts: SystemFacts) -> str | None:
        if not facts.has_tool(role):
            return f"{role} is not installed"
        return None

    return check


def target_available(release: str) -> Predicate:
    def check(facts: SystemFacts) -> str | None:
        if facts.available_target != release:
            offered = facts.available_target or "nothing"
            return f"package system offers {offered}, expected {release}"
        return None

    return check


# ── Table ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PhaseSpec:
    """One row of the transition table."""

    phase: Phase
    next_phase: Phase
    action: ActionKind
    description: str
    preconditions: tuple[Predicate, ...] = ()
    checkpoint_label: str | None = None
    postconditions: tuple[Predicate, ...] = ()
    target: str | None = None
    # The phase must have been reached in an earlier boot than the current one.
    requires_reboot: bool = False


class MigrationStateMachine:
    """
    Central authority over legal transitions.

    The two release upgrades are separate phases (REBOOTED_STEP1 and
    REBOOTED_STEP2); there is no general N-step chain.
    """

    def __init__(
        self,
        source: str,
        interim: str,
        target: str,
        min_kernel: str = "6.14",
        min_free_gb: float = 10.0,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        minimum = KernelVersion.parse(min_kernel)
        if minimum is None:
            raise ValueError(f"Invalid minimum kernel version: {min_kernel!r}")
        self._source = source
        self._interim = interim
        self._target = target
        self._min_kernel = minimum
        self._min_free_gb = min_free_gb
        self._labels = {**DEFAULT_LABELS, **(labels or {})}
        self._table = self._build_table()

    def _label(self, key: str, release: str | None = None) -> str:
        return self._labels[key].format(
            source=self._source,
            interim=self._interim,
            target=self._target,
            release=release or self._target,
        )

    def _build_table(self) -> dict[Phase, PhaseSpec]:
        on_source = release_is(self._source)
        preflight = (
            on_source,
            pool_healthy,
            kernel_at_least(self._min_kernel),
            free_space_at_least(self._min_free_gb),
        )
        rows = [
            PhaseSpec(
                Phase.NOT_STARTED,
                Phase.PREFLIGHT_VERIFIED,
                ActionKind.VERIFY,
                "Verify preflight conditions",
                preconditions=preflight,
                postconditions=preflight,
            ),
            PhaseSpec(
                Phase.ROLLED_BACK,
                Phase.PREFLIGHT_VERIFIED,
                ActionKind.VERIFY,
                "Re-verify preflight after rollback",
                preconditions=preflight,
                postconditions=preflight,
            ),
            PhaseSpec(
                Phase.PREFLIGHT_VERIFIED,
                Phase.CHECKPOINTED,
                ActionKind.VERIFY,
                "Checkpoint the system before any change",
                preconditions=(on_source, pool_healthy),
                checkpoint_label=self._label("preflight"),
                postconditions=(on_source,),
            ),
            PhaseSpec(
                Phase.CHECKPOINTED,
                Phase.PACKAGES_UPGRADED,
                ActionKind.UPGRADE_PACKAGES,
                f"Upgrade packages on {self._source}",
                preconditions=(on_source, pool_healthy),
                postconditions=(on_source,),
            ),
            PhaseSpec(
                Phase.PACKAGES_UPGRADED,
                Phase.REBOOTED_STEP1,
                ActionKind.RELEASE_UPGRADE,
                f"Release upgrade {self._source} -> {self._interim}",
                preconditions=(
                    on_source,
                    kernel_at_least(self._min_kernel),
                    pool_healthy,
                    target_available(self._interim),
                ),
                checkpoint_label=self._label("release_upgrade", self._interim),
                postconditions=(release_is(self._interim),),
                target=self._interim,
            ),
            PhaseSpec(
                Phase.REBOOTED_STEP1,
                Phase.REBOOTED_STEP2,
                ActionKind.RELEASE_UPGRADE,
                f"Release upgrade {self._interim} -> {self._target}",
                preconditions=(
                    release_is(self._interim),
                    pool_healthy,
                    target_available(self._target),
                ),
                checkpoint_label=self._label("release_upgrade", self._target),
                postconditions=(release_is(self._target),),
                target=self._target,
                requires_reboot=True,
            ),
            PhaseSpec(
                Phase.REBOOTED_STEP2,
                Phase.INIT_SYSTEM_MIGRATED,
                ActionKind.REGENERATE_INIT_IMAGE,
                "Migrate init-image generation and regenerate images",
                preconditions=(release_is(self._target), pool_healthy),
                checkpoint_label=self._label("init_migration"),
                postconditions=(tool_present(INIT_GENERATOR_B),),
                requires_reboot=True,
            ),
            PhaseSpec(
                Phase.INIT_SYSTEM_MIGRATED,
                Phase.BOOT_CONFIG_SYNCED,
                ActionKind.SYNC_BOOT_CONFIG,
                "Sync boot configuration to all boot devices",
                preconditions=(tool_present(BOOT_SYNC_HELPER),),
                postconditions=(tool_present(BOOT_SYNC_HELPER),),
            ),
            PhaseSpec(
                Phase.BOOT_CONFIG_SYNCED,
                Phase.VALIDATED,
                ActionKind.VERIFY,
                "Validate the upgraded system",
                postconditions=(
                    release_is(self._target),
                    pool_usable,
                    tool_present(INIT_GENERATOR_B),
                    kernel_at_least(self._min_kernel),
                ),
            ),
            PhaseSpec(
                Phase.VALIDATED,
                Phase.COMPLETE,
                ActionKind.VERIFY,
                "Mark the migration complete",
            ),
        ]
        return {row.phase: row for row in rows}

    # ── Queries ────────────────────────────────────────────────────

    def expected_release(self, phase: Phase) -> str | None:
        """Release identifier the system runs while in ``phase``."""
        if phase is Phase.ROLLED_BACK:
            return None
        if phase.rank < Phase.REBOOTED_STEP1.rank:
            return self._source
        if phase is Phase.REBOOTED_STEP1:
            return self._interim
        return self._target

    # ── Advance ────────────────────────────────────────────────────

    def advance(self, state: MigrationState, facts: SystemFacts) -> Transition:
        """
        Describe the next legal transition from ``state.current_phase``.

        A required checkpoint is always requested (CREATE_CHECKPOINT)
        before the transition's own action is returned.
        """
        phase = state.current_phase
        spec = self._table.get(phase)
        if spec is None:
            return Transition(
                phase,
                None,
                RequiredAction(ActionKind.NONE, description="Migration complete"),
            )

        action = self._action_for(spec, facts)
        failures = tuple(msg for check in spec.preconditions if (msg := check(facts)))
        if spec.requires_reboot and (msg := self._reboot_pending(state, facts)):
            failures += (msg,)
        if failures:
            return Transition(phase, spec.next_phase, action, blocked_by=failures)

        if spec.checkpoint_label and not state.has_checkpoint(spec.checkpoint_label):
            return Transition(
                phase,
                spec.next_phase,
                RequiredAction(
                    ActionKind.CREATE_CHECKPOINT,
                    label=spec.checkpoint_label,
                    description=f"Checkpoint '{spec.checkpoint_label}' before: {spec.description}",
                ),
            )
        return Transition(phase, spec.next_phase, action)

    @staticmethod
    def _reboot_pending(state: MigrationState, facts: SystemFacts) -> str | None:
        """Return a failure if the current phase was reached in this boot."""
        phase = state.current_phase
        for entry in reversed(state.history):
            if (
                entry.to_phase is phase
                and entry.outcome is Outcome.SUCCESS
                and entry.kind in ("transition", "reconcile", "rollback")
            ):
                if entry.boot_id is None:
                    return None
                if facts.boot_id is None:
                    return "boot identifier unknown; cannot confirm the reboot"
                if entry.boot_id == facts.boot_id:
                    return f"reboot required: the system reached {phase} in the running boot"
                return None
        return None

    @staticmethod
    def _action_for(spec: PhaseSpec, facts: SystemFacts) -> RequiredAction:
        if spec.action is ActionKind.REGENERATE_INIT_IMAGE:
            return RequiredAction(
                spec.action, kernel=facts.kernel, description=spec.description
            )
        return RequiredAction(spec.action, target=spec.target, description=spec.description)

    # ── Commit ─────────────────────────────────────────────────────

    def record_blocked(
        self, state: MigrationState, transition: Transition, facts: SystemFacts
    ) -> StepResult:
        """Record a precondition failure. The phase does not change."""
        failures = list(transition.blocked_by)
        state.record(
            TransitionRecord(
                kind="precondition",
                from_phase=transition.from_phase,
                to_phase=transition.to_phase,
                outcome=Outcome.FAILURE,
                run_id=state.run_id,
                detail="; ".join(failures),
                error_kind=ErrorKind.PRECONDITION_FAILURE,
                facts=facts.to_dict(),
            )
        )
        logger.warning(
            "Transition %s -> %s blocked: %s",
            transition.from_phase,
            transition.to_phase,
            "; ".join(failures),
        )
        return StepResult(
            outcome=Outcome.FAILURE,
            phase=transition.from_phase,
            message=f"Preconditions for {transition.to_phase} not met",
            error_kind=ErrorKind.PRECONDITION_FAILURE,
            action=transition.action,
            failures=failures,
        )

    def commit(
        self,
        state: MigrationState,
        transition: Transition,
        outcome: ActionOutcome,
        facts: SystemFacts,
    ) -> StepResult:
        """
        Record the outcome of ``transition`` and advance if verified.

        A failed action never advances. A successful action whose
        postconditions do not hold is UNVERIFIED and does not advance.
        """
        if transition.action.kind is ActionKind.CREATE_CHECKPOINT:
            return self.commit_checkpoint(state, transition, outcome, facts)

        state.pending = None
        if state.current_phase is not transition.from_phase:
            return self._stale(state, transition, facts)

        to_phase = transition.to_phase
        if to_phase is None:
            return StepResult(Outcome.SUCCESS, state.current_phase, "Migration complete")

        if not outcome.success:
            state.record(
                TransitionRecord(
                    kind="transition",
                    from_phase=transition.from_phase,
                    to_phase=to_phase,
                    outcome=Outcome.FAILURE,
                    run_id=state.run_id,
                    detail=outcome.detail or f"{transition.action.kind} failed",
                    error_kind=ErrorKind.ACTION_FAILURE,
                    facts=facts.to_dict(),
                    collaborator_error=outcome.error,
                )
            )
            logger.error(
                "Action %s failed: %s", transition.action.kind, outcome.error or outcome.detail
            )
            return StepResult(
                outcome=Outcome.FAILURE,
                phase=transition.from_phase,
                message=outcome.error or outcome.detail or "Action failed",
                error_kind=ErrorKind.ACTION_FAILURE,
                action=transition.action,
            )

        spec = self._table[transition.from_phase]
        failures = [msg for check in spec.postconditions if (msg := check(facts))]
        if failures:
            state.record(
                TransitionRecord(
                    kind="transition",
                    from_phase=transition.from_phase,
                    to_phase=to_phase,
                    outcome=Outcome.UNVERIFIED,
                    run_id=state.run_id,
                    detail="; ".join(failures),
                    error_kind=ErrorKind.POSTCONDITION_FAILURE,
                    facts=facts.to_dict(),
                )
            )
            logger.error(
                "%s reported success but postconditions fail: %s",
                transition.action.kind,
                "; ".join(failures),
            )
            return StepResult(
                outcome=Outcome.UNVERIFIED,
                phase=transition.from_phase,
                message=f"{spec.description} could not be verified; rollback recommended",
                error_kind=ErrorKind.POSTCONDITION_FAILURE,
                action=transition.action,
                failures=failures,
                rollback_recommended=True,
            )

        state.current_phase = to_phase
        state.record(
            TransitionRecord(
                kind="transition",
                from_phase=transition.from_phase,
                to_phase=to_phase,
                outcome=Outcome.SUCCESS,
                run_id=state.run_id,
                detail=outcome.detail or spec.description,
                facts=facts.to_dict(),
                boot_id=facts.boot_id,
            )
        )
        logger.info("Advanced %s -> %s", transition.from_phase, to_phase)
        return StepResult(
            outcome=Outcome.SUCCESS,
            phase=to_phase,
            message=spec.description,
            action=transition.action,
        )

    def commit_checkpoint(
        self,
        state: MigrationState,
        transition: Transition,
        outcome: ActionOutcome,
        facts: SystemFacts,
    ) -> StepResult:
        """Record a checkpoint attempt; the phase never changes here."""
        label = transition.action.label
        if outcome.success and outcome.checkpoint is not None:
            state.last_checkpoint_group = outcome.checkpoint
            state.record(
                TransitionRecord(
                    kind="checkpoint",
                    from_phase=transition.from_phase,
                    to_phase=transition.to_phase,
                    outcome=Outcome.SUCCESS,
                    run_id=state.run_id,
                    detail=outcome.detail or f"checkpoint {label}",
                    facts=facts.to_dict(),
                    checkpoint=outcome.checkpoint,
                )
            )
            return StepResult(
                outcome=Outcome.SUCCESS,
                phase=transition.from_phase,
                message=f"Checkpoint {outcome.checkpoint} created",
                action=transition.action,
                checkpoint=outcome.checkpoint,
            )

        state.record(
            TransitionRecord(
                kind="checkpoint",
                from_phase=transition.from_phase,
                to_phase=transition.to_phase,
                outcome=Outcome.FAILURE,
                run_id=state.run_id,
                detail=outcome.detail or f"checkpoint {label} failed",
                error_kind=ErrorKind.CHECKPOINT_FAILURE,
                facts=facts.to_dict(),
                collaborator_error=outcome.error,
            )
        )
        return StepResult(
            outcome=Outcome.FAILURE,
            phase=transition.from_phase,
            message=outcome.error or f"Checkpoint {label} failed",
            error_kind=ErrorKind.CHECKPOINT_FAILURE,
            action=transition.action,
        )

    def _stale(
        self, state: MigrationState, transition: Transition, facts: SystemFacts
    ) -> StepResult:
        detail = (
            f"state is at {state.current_phase}, transition was planned from "
            f"{transition.from_phase}"
        )
        state.record(
            TransitionRecord(
                kind="precondition",
                from_phase=state.current_phase,
                to_phase=transition.to_phase,
                outcome=Outcome.FAILURE,
                run_id=state.run_id,
                detail=detail,
                error_kind=ErrorKind.PRECONDITION_FAILURE,
                facts=facts.to_dict(),
            )
        )
        return StepResult(
            outcome=Outcome.FAILURE,
            phase=state.current_phase,
            message="Stale step plan",
            error_kind=ErrorKind.PRECONDITION_FAILURE,
            action=transition.action,
            failures=[detail],
        )
