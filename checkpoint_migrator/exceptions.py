"""
Checkpoint Migrator Custom Exceptions
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

All custom exception classes for checkpoint-migrator, organized by domain.
Every distinct failure mode has its own exception type.

**Structured Error Messages**

Operator-facing failures (preconditions and rollbacks) carry two
structured fields rendered by ``__str__``:
- ``what_happened``: Clear plain-English description
- ``how_to_fix``: Concrete, actionable steps
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from checkpoint_migrator.checkpoint.models import RollbackReport

__all__ = [
    # Base
    "MigratorError",
    # Config
    "ConfigError",
    "ConfigFileNotFoundError",
    "ConfigValidationError",
    # State
    "StateError",
    "StateSchemaError",
    "StateCorruptError",
    # Orchestration
    "PreconditionFailure",
    # Checkpoints
    "CheckpointError",
    "CheckpointFailure",
    "CheckpointInUseError",
    "StorageBackendError",
    # Rollback
    "RollbackFailure",
]


# ── Formatting Helper ────────────────────────────────────────────────────────

_SEPARATOR = "─" * 52


def _format_structured_error(title: str, what_happened: str, how_to_fix: str) -> str:
    """Build a structured, multi-line error message."""
    lines = [
        f"  {title}",
        f"  {_SEPARATOR}",
        "  What happened:",
        *[f"    {line}" for line in what_happened.strip().splitlines()],
        "",
        "  How to fix:",
        *[f"    {line}" for line in how_to_fix.strip().splitlines()],
    ]
    return "\n".join(lines)


# ── Base Exception ───────────────────────────────────────────────────────────


class MigratorError(Exception):
    """Base exception for all checkpoint-migrator errors."""

    def __init__(self, message: str = "", details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


# ── Config Exceptions ────────────────────────────────────────────────────────


class ConfigError(MigratorError):
    """Base exception for configuration-related errors."""


class ConfigFileNotFoundError(ConfigError):
    """Raised when a configuration file cannot be found at the specified path."""


class ConfigValidationError(ConfigError):
    """Raised when configuration values fail validation."""


# ── State Exceptions ─────────────────────────────────────────────────────────


class StateError(MigratorError):
    """Base exception for persisted migration state errors."""


class StateSchemaError(StateError):
    """Raised when a state file has a foreign schema tag or an unsupported version."""


class StateCorruptError(StateError):
    """Raised when a state file exists but cannot be decoded."""


# ── Orchestration Exceptions ─────────────────────────────────────────────────


class PreconditionFailure(MigratorError):
    """
    Raised when an entry condition is unmet. Nothing has been changed.

    Structured fields:
    - ``what_happened``: the failing conditions
    - ``how_to_fix``: actionable remediation steps
    """

    def __init__(
        self,
        message: str = "Precondition failed",
        failures: list[str] | None = None,
        details: dict | None = None,
        how_to_fix: str = "",
    ) -> None:
        self.failures = list(failures or [])
        self.what_happened = "\n".join(self.failures) or message
        self.how_to_fix = how_to_fix or (
            "1. Inspect the collected facts: checkpoint-migrator facts\n"
            "2. Resolve the conditions listed above\n"
            "3. Re-run: checkpoint-migrator step"
        )
        super().__init__(message, details)

    def __str__(self) -> str:
        return _format_structured_error(
            title=f"PreconditionFailure: {self.args[0]}",
            what_happened=self.what_happened,
            how_to_fix=self.how_to_fix,
        )


# ── Checkpoint Exceptions ────────────────────────────────────────────────────


class CheckpointError(MigratorError):
    """Base exception for checkpoint store errors."""


class CheckpointFailure(CheckpointError):
    """Raised when a checkpoint group could not be captured completely."""


class CheckpointInUseError(CheckpointError):
    """Raised when destroying a group still referenced by the migration state."""


class StorageBackendError(CheckpointError):
    """Raised when the storage substrate rejects a command."""

    def __init__(
        self,
        message: str = "",
        command: list[str] | None = None,
        stderr: str = "",
        details: dict | None = None,
    ) -> None:
        self.command = list(command or [])
        self.stderr = stderr
        super().__init__(message, details)


# ── Rollback Exceptions ──────────────────────────────────────────────────────


class RollbackFailure(MigratorError):
    """
    Raised when a rollback stops partway. The tree may be mixed.

    Never retried automatically. The attached report names the units
    that were rolled back, the unit that failed, and the untouched rest.
    """

    def __init__(
        self,
        message: str = "Rollback failed",
        report: RollbackReport | None = None,
        details: dict | None = None,
    ) -> None:
        self.report = report
        super().__init__(message, details)

    @property
    def what_happened(self) -> str:
        if self.report is None:
            return str(self.args[0])
        lines = [str(self.args[0])]
        lines.append(f"Rolled back: {', '.join(self.report.rolled_back) or 'none'}")
        if self.report.failed:
            lines.append(f"Failed:      {self.report.failed}")
        if self.report.not_attempted:
            lines.append(f"Untouched:   {', '.join(self.report.not_attempted)}")
        return "\n".join(lines)

    @property
    def how_to_fix(self) -> str:
        return (
            "1. Do NOT re-run the migration; the storage tree may be mixed\n"
            "2. Inspect each unit listed above with: zfs list -t snapshot\n"
            "3. Roll the remaining units back by hand, or re-run rollback\n"
            "   once the failing unit is repaired"
        )

    def __str__(self) -> str:
        return _format_structured_error(
            title="RollbackFailure",
            what_happened=self.what_happened,
            how_to_fix=self.how_to_fix,
        )
