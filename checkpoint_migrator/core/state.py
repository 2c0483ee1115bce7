"""
Migration State
~~~~~~~~~~~~~~~

The persisted MigrationState record and its durable, atomically
written JSON store. The record is schema-tagged and versioned so that
older files can be upgraded in place and newer ones refused.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from checkpoint_migrator.checkpoint.models import GroupRef
from checkpoint_migrator.core.phase import ErrorKind, Outcome, Phase
from checkpoint_migrator.exceptions import StateCorruptError, StateSchemaError

__all__ = [
    "MigrationState",
    "TransitionRecord",
    "PendingOperation",
    "StateStore",
    "SCHEMA_TAG",
    "SCHEMA_VERSION",
]

logger = logging.getLogger(__name__)

SCHEMA_TAG = "checkpoint-migrator/state"
SCHEMA_VERSION = 2


def _now() -> datetime:
    return datetime.now(UTC)


def _new_run_id() -> str:
    return uuid.uuid4().hex


@dataclass
class TransitionRecord:
    """
    One entry in MigrationState.history.

    ``kind`` is one of ``transition``, ``checkpoint``, ``reconcile``,
    ``interrupted``, ``precondition`` or ``rollback``.
    """

    kind: str
    from_phase: Phase
    to_phase: Phase | None
    outcome: Outcome
    run_id: str
    detail: str = ""
    error_kind: ErrorKind | None = None
    facts: dict[str, Any] = field(default_factory=dict)
    checkpoint: GroupRef | None = None
    collaborator_error: str | None = None
    boot_id: str | None = None
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-safe dictionary."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "run_id": self.run_id,
            "kind": self.kind,
            "from_phase": self.from_phase.value,
            "to_phase": self.to_phase.value if self.to_phase else None,
            "outcome": self.outcome.value,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "detail": self.detail,
            "facts": self.facts,
            "checkpoint": self.checkpoint.to_dict() if self.checkpoint else None,
            "collaborator_error": self.collaborator_error,
            "boot_id": self.boot_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransitionRecord:
        return cls(
            kind=data["kind"],
            from_phase=Phase(data["from_phase"]),
            to_phase=Phase(data["to_phase"]) if data.get("to_phase") else None,
            outcome=Outcome(data["outcome"]),
            run_id=data.get("run_id", ""),
            detail=data.get("detail", ""),
            error_kind=ErrorKind(data["error_kind"]) if data.get("error_kind") else None,
            facts=data.get("facts") or {},
            checkpoint=GroupRef.from_dict(data["checkpoint"]) if data.get("checkpoint") else None,
            collaborator_error=data.get("collaborator_error"),
            boot_id=data.get("boot_id"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass
class PendingOperation:
    """
    Marker written before an external action or a rollback begins.

    Its presence on the next invocation means the process stopped
    before the operation was committed. ``id`` ties a step plan to the
    marker it wrote; a plan whose marker is gone may not commit.
    """

    operation: str
    from_phase: Phase
    to_phase: Phase | None = None
    action: str | None = None
    checkpoint: GroupRef | None = None
    boot_id: str | None = None
    id: str = field(default_factory=_new_run_id)
    started_at: datetime = field(default_factory=_now)

    @property
    def is_rollback(self) -> bool:
        return self.operation == "rollback"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "operation": self.operation,
            "from_phase": self.from_phase.value,
            "to_phase": self.to_phase.value if self.to_phase else None,
            "action": self.action,
            "checkpoint": self.checkpoint.to_dict() if self.checkpoint else None,
            "boot_id": self.boot_id,
            "started_at": self.started_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingOperation:
        return cls(
            operation=data["operation"],
            from_phase=Phase(data["from_phase"]),
            to_phase=Phase(data["to_phase"]) if data.get("to_phase") else None,
            action=data.get("action"),
            checkpoint=GroupRef.from_dict(data["checkpoint"]) if data.get("checkpoint") else None,
            boot_id=data.get("boot_id"),
            id=data.get("id") or _new_run_id(),
            started_at=datetime.fromisoformat(data["started_at"]),
        )


@dataclass
class MigrationState:
    """
    Process-wide record of where the migration stands.

    Created on first run, updated at every transition boundary, and
    never deleted automatically.
    """

    run_id: str = field(default_factory=_new_run_id)
    current_phase: Phase = Phase.NOT_STARTED
    last_checkpoint_group: GroupRef | None = None
    history: list[TransitionRecord] = field(default_factory=list)
    pending: PendingOperation | None = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def record(self, entry: TransitionRecord) -> TransitionRecord:
        self.history.append(entry)
        self.updated_at = entry.timestamp
        return entry

    def attempt_history(self) -> list[TransitionRecord]:
        """History entries belonging to the current attempt."""
        return [h for h in self.history if h.run_id == self.run_id]

    def has_checkpoint(self, label: str) -> bool:
        """Return True if this attempt already holds a checkpoint with ``label``."""
        return any(
            h.kind == "checkpoint"
            and h.outcome is Outcome.SUCCESS
            and h.checkpoint is not None
            and h.checkpoint.label == label
            for h in self.attempt_history()
        )

    def start_new_attempt(self) -> None:
        self.run_id = _new_run_id()

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema": SCHEMA_TAG,
            "version": SCHEMA_VERSION,
            "run_id": self.run_id,
            "current_phase": self.current_phase.value,
            "last_checkpoint_group": (
                self.last_checkpoint_group.to_dict() if self.last_checkpoint_group else None
            ),
            "pending": self.pending.to_dict() if self.pending else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "history": [h.to_dict() for h in self.history],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationState:
        last = data.get("last_checkpoint_group")
        pending = data.get("pending")
        return cls(
            run_id=data["run_id"],
            current_phase=Phase(data["current_phase"]),
            last_checkpoint_group=GroupRef.from_dict(last) if last else None,
            history=[TransitionRecord.from_dict(h) for h in data.get("history", [])],
            pending=PendingOperation.from_dict(pending) if pending else None,
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


def _upgrade_v1(data: dict[str, Any]) -> dict[str, Any]:
    # v1 had no pending marker and kept the attempt id under "attempt".
    data = dict(data)
    data.setdefault("pending", None)
    if "run_id" not in data:
        data["run_id"] = data.pop("attempt", None) or _new_run_id()
    for entry in data.get("history", []):
        entry.setdefault("run_id", data["run_id"])
    return data


_UPGRADES: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {
    1: _upgrade_v1,
}


class StateStore:
    """
    Durable JSON persistence for MigrationState.

    Writes go to a temporary file in the same directory, are fsynced,
    then renamed over the target, so readers never see a partial record.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def load(self) -> MigrationState | None:
        """
        Read the persisted state, or None when no state exists yet.

        Raises:
            StateCorruptError: If the file cannot be decoded.
            StateSchemaError: If the schema tag or version is unsupported.
        """
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StateCorruptError(f"Cannot read state file {self._path}: {exc}") from exc

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StateCorruptError(f"State file {self._path} is not valid JSON: {exc}") from exc

        data = self._migrate(data)
        try:
            return MigrationState.from_dict(data)
        except (KeyError, ValueError, TypeError) as exc:
            raise StateCorruptError(f"State file {self._path} is malformed: {exc}") from exc

    def load_or_create(self) -> MigrationState:
        state = self.load()
        if state is None:
            state = MigrationState()
            logger.info("Starting new migration record %s", state.run_id)
        return state

    def _migrate(self, data: Any) -> dict[str, Any]:
        if not isinstance(data, dict) or data.get("schema") != SCHEMA_TAG:
            raise StateSchemaError(
                f"{self._path} is not a {SCHEMA_TAG} record",
                details={"schema": data.get("schema") if isinstance(data, dict) else None},
            )
        version = data.get("version")
        if not isinstance(version, int) or version > SCHEMA_VERSION or version < 1:
            raise StateSchemaError(
                f"Unsupported state version {version!r} (this release reads up to {SCHEMA_VERSION})",
                details={"version": version},
            )
        while version < SCHEMA_VERSION:
            logger.info("Upgrading state file %s from v%d", self._path, version)
            data = _UPGRADES[version](data)
            version += 1
            data["version"] = version
        return data

    def save(self, state: MigrationState) -> None:
        """Atomically replace the state file with ``state``."""
        state.updated_at = _now()
        payload = json.dumps(state.to_dict(), indent=2, default=str)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._path.parent), prefix=f".{self._path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self._path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        self._fsync_dir()
        logger.debug("Saved migration state (%s) to %s", state.current_phase, self._path)

    def _fsync_dir(self) -> None:
        try:
            dir_fd = os.open(self._path.parent, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(dir_fd)
        except OSError:
            pass
        finally:
            os.close(dir_fd)
