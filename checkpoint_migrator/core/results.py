"""
Actions, Transitions & Typed Results
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

Dataclasses that flow between the state machine, the orchestrator,
and front ends: what a transition requires (RequiredAction), what a
collaborator reported (ActionOutcome), and what the caller gets back
(StepResult, RollbackResult, StepPlan).
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from checkpoint_migrator.checkpoint.models import GroupRef, RollbackReport
from checkpoint_migrator.core.phase import ActionKind, ErrorKind, Outcome, Phase

__all__ = [
    "RequiredAction",
    "Transition",
    "ActionOutcome",
    "StepResult",
    "RollbackResult",
    "StepPlan",
    "ConfirmationRequest",
]


@dataclass(frozen=True)
class RequiredAction:
    """
    Description of the work a transition needs. Never performed by the
    state machine itself.

    Attributes:
        kind: What sort of work is required.
        label: Checkpoint label, for CREATE_CHECKPOINT.
        target: Release identifier, for RELEASE_UPGRADE.
        kernel: Kernel version, for REGENERATE_INIT_IMAGE.
        description: Human-readable summary.
    """

    kind: ActionKind
    label: str | None = None
    target: str | None = None
    kernel: str | None = None
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "label": self.label,
            "target": self.target,
            "kernel": self.kernel,
            "description": self.description,
        }


@dataclass(frozen=True)
class Transition:
    """
    The state machine's answer to ``advance``.

    ``to_phase`` is None for a terminal phase. A non-empty ``blocked_by``
    means preconditions failed and ``action`` must not be performed.
    """

    from_phase: Phase
    to_phase: Phase | None
    action: RequiredAction
    blocked_by: tuple[str, ...] = ()

    @property
    def blocked(self) -> bool:
        return bool(self.blocked_by)

    @property
    def terminal(self) -> bool:
        return self.to_phase is None


@dataclass
class ActionOutcome:
    """What a collaborator reported after performing an action."""

    success: bool
    detail: str = ""
    error: str | None = None
    checkpoint: GroupRef | None = None

    @classmethod
    def ok(cls, detail: str = "", checkpoint: GroupRef | None = None) -> ActionOutcome:
        return cls(success=True, detail=detail, checkpoint=checkpoint)

    @classmethod
    def failed(cls, error: str, detail: str = "") -> ActionOutcome:
        return cls(success=False, detail=detail, error=error)


@dataclass
class StepResult:
    """
    Typed result of a step. Distinguishes success, unverified success,
    failure and cancellation; ``outcome.is_done()`` is only true for
    verified success.
    """

    outcome: Outcome
    phase: Phase
    message: str = ""
    error_kind: ErrorKind | None = None
    action: RequiredAction | None = None
    failures: list[str] = field(default_factory=list)
    checkpoint: GroupRef | None = None
    rollback_recommended: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome.is_done()


@dataclass
class RollbackResult:
    """Typed result of a guarded rollback."""

    outcome: Outcome
    message: str = ""
    error_kind: ErrorKind | None = None
    group: GroupRef | None = None
    safety_group: GroupRef | None = None
    report: RollbackReport | None = None
    phase: Phase | None = None
    failures: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome.is_done()


@dataclass
class ConfirmationRequest:
    """Handed to a front end's confirm callback before destructive work."""

    operation: str
    summary: str
    action: RequiredAction | None = None
    group: GroupRef | None = None


@dataclass
class StepPlan:
    """
    What ``Orchestrator.step()`` hands back.

    If ``result`` is set the step already resolved (nothing to run).
    Otherwise the caller performs ``required_action`` and reports back
    through ``complete(outcome)``, or calls ``cancel()`` before starting it.
    """

    phase: Phase
    next_phase: Phase | None = None
    required_action: RequiredAction | None = None
    result: StepResult | None = None
    on_complete: Callable[[ActionOutcome], StepResult] | None = field(
        default=None, repr=False
    )
    on_cancel: Callable[[], StepResult] | None = field(default=None, repr=False)

    @property
    def resolved(self) -> bool:
        return self.result is not None

    def complete(self, outcome: ActionOutcome) -> StepResult:
        """Report the action's outcome; returns the committed result."""
        if self.on_complete is None:
            raise RuntimeError("This step plan has nothing to complete")
        result = self.on_complete(outcome)
        self.on_complete = None
        self.on_cancel = None
        self.result = result
        return result

    def cancel(self) -> StepResult:
        """Abandon the action before it starts. Phase and history are untouched."""
        if self.on_cancel is None:
            raise RuntimeError("This step plan has nothing to cancel")
        result = self.on_cancel()
        self.on_complete = None
        self.on_cancel = None
        self.result = result
        return result
