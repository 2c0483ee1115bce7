"""
Phase, Outcome & Health Enums
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

Core enums that define the migration phase graph, the possible outcomes
of a step or rollback, and the storage pool health classification.
"""

from enum import StrEnum

__all__ = ["Phase", "Outcome", "ErrorKind", "PoolHealth", "ActionKind"]


class Phase(StrEnum):
    """
    Position in the migration state machine.

    Forward phases are listed in order. ROLLED_BACK sits outside the
    forward chain; it re-enters at PREFLIGHT_VERIFIED.
    """

    NOT_STARTED = "NOT_STARTED"
    PREFLIGHT_VERIFIED = "PREFLIGHT_VERIFIED"
    CHECKPOINTED = "CHECKPOINTED"
    PACKAGES_UPGRADED = "PACKAGES_UPGRADED"
    REBOOTED_STEP1 = "REBOOTED_STEP1"
    REBOOTED_STEP2 = "REBOOTED_STEP2"
    INIT_SYSTEM_MIGRATED = "INIT_SYSTEM_MIGRATED"
    BOOT_CONFIG_SYNCED = "BOOT_CONFIG_SYNCED"
    VALIDATED = "VALIDATED"
    COMPLETE = "COMPLETE"
    ROLLED_BACK = "ROLLED_BACK"

    @property
    def rank(self) -> int:
        """Position in the forward chain; ROLLED_BACK ranks lowest."""
        if self is Phase.ROLLED_BACK:
            return -1
        return _FORWARD.index(self)

    def is_terminal(self) -> bool:
        """Return True if no forward transition leaves this phase."""
        return self is Phase.COMPLETE

    @classmethod
    def forward(cls) -> list["Phase"]:
        """Return the forward phases in order."""
        return list(_FORWARD)


_FORWARD = [p for p in Phase if p is not Phase.ROLLED_BACK]


class Outcome(StrEnum):
    """
    Typed result of a step, commit, or rollback.

    - SUCCESS: the operation completed and was verified.
    - UNVERIFIED: the operation reported success but facts disagree.
    - FAILURE: the operation did not complete.
    - CANCELLED: the operator declined before anything changed.
    """

    SUCCESS = "success"
    UNVERIFIED = "unverified"
    FAILURE = "failure"
    CANCELLED = "cancelled"

    def is_done(self) -> bool:
        """Only SUCCESS counts as done; UNVERIFIED never does."""
        return self is Outcome.SUCCESS


class ErrorKind(StrEnum):
    """Failure taxonomy recorded on results and history entries."""

    PRECONDITION_FAILURE = "precondition_failure"
    CHECKPOINT_FAILURE = "checkpoint_failure"
    ACTION_FAILURE = "action_failure"
    POSTCONDITION_FAILURE = "postcondition_failure"
    ROLLBACK_FAILURE = "rollback_failure"
    CANCELLED = "cancelled"


class PoolHealth(StrEnum):
    """Health of the storage pool backing the checkpointed units."""

    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    FAULTED = "FAULTED"
    ABSENT = "ABSENT"

    @classmethod
    def from_zpool(cls, value: str | None) -> "PoolHealth":
        """Map a ``zpool list -o health`` value onto a PoolHealth."""
        if not value:
            return cls.ABSENT
        value = value.strip().upper()
        if value == "ONLINE":
            return cls.HEALTHY
        if value == "DEGRADED":
            return cls.DEGRADED
        return cls.FAULTED


class ActionKind(StrEnum):
    """Kind of work a transition requires before it can be committed."""

    CREATE_CHECKPOINT = "CREATE_CHECKPOINT"
    UPGRADE_PACKAGES = "UPGRADE_PACKAGES"
    RELEASE_UPGRADE = "RELEASE_UPGRADE"
    REGENERATE_INIT_IMAGE = "REGENERATE_INIT_IMAGE"
    SYNC_BOOT_CONFIG = "SYNC_BOOT_CONFIG"
    VERIFY = "VERIFY"
    NONE = "NONE"

    def is_external(self) -> bool:
        """Return True if a collaborator must perform this action."""
        return self in (
            ActionKind.UPGRADE_PACKAGES,
            ActionKind.RELEASE_UPGRADE,
            ActionKind.REGENERATE_INIT_IMAGE,
            ActionKind.SYNC_BOOT_CONFIG,
        )
