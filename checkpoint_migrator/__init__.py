"""
checkpoint-migrator: checkpointed, resumable release migrations.

Drives a reboot-spanning release upgrade on a single node one phase at
a time, checkpointing every storage unit before each risky step and
rolling the whole tree back to a consistent group on request:

- Explicit, persisted migration phase with fact-based reconciliation
- Multi-unit checkpoint groups keyed on structured metadata
- Guarded, verifiable, re-invocable rollback
- Full audit trail of every transition

Quick Start::

    from checkpoint_migrator import Orchestrator

    orchestrator = Orchestrator.from_config("/etc/checkpoint-migrator.yaml")

    plan = orchestrator.step()
    if not plan.resolved:
        outcome = orchestrator.dispatch(plan.required_action)
        result = plan.complete(outcome)

    orchestrator.rollback()
"""

from checkpoint_migrator.checkpoint.models import (
    Checkpoint,
    CheckpointGroup,
    GroupRef,
    RollbackReport,
    StorageUnit,
)
from checkpoint_migrator.core.orchestrator import Orchestrator
from checkpoint_migrator.core.phase import ActionKind, ErrorKind, Outcome, Phase, PoolHealth
from checkpoint_migrator.core.results import (
    ActionOutcome,
    ConfirmationRequest,
    RequiredAction,
    RollbackResult,
    StepPlan,
    StepResult,
)
from checkpoint_migrator.core.state import MigrationState
from checkpoint_migrator.rollback.selector import SelectionCriterion

__version__ = "0.1.0"

__all__ = [
    "Orchestrator",
    "Phase",
    "Outcome",
    "ErrorKind",
    "ActionKind",
    "PoolHealth",
    "MigrationState",
    "StepPlan",
    "StepResult",
    "RollbackResult",
    "RequiredAction",
    "ActionOutcome",
    "ConfirmationRequest",
    "SelectionCriterion",
    "StorageUnit",
    "Checkpoint",
    "CheckpointGroup",
    "GroupRef",
    "RollbackReport",
    "__version__",
]
