"""
ZFS Storage Backend
~~~~~~~~~~~~~~~~~~~

Checkpoints ZFS datasets as snapshots. Grouping metadata is stored as
ZFS user properties on each snapshot rather than encoded in its name.
"""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence

from checkpoint_migrator.checkpoint.backends.base import (
    BaseStorageBackend,
    CheckpointMetadata,
)
from checkpoint_migrator.checkpoint.models import Checkpoint, StorageUnit
from checkpoint_migrator.exceptions import StorageBackendError
from checkpoint_migrator.runner import CommandRunner

__all__ = ["ZfsBackend"]

logger = logging.getLogger(__name__)

_UNSET = "-"

# Property suffixes under the configured namespace, e.g. "ckmig:label".
_PROPS = ("label", "created", "complete", "units", "phase", "run")


class ZfsBackend(BaseStorageBackend):
    """
    Storage backend over the ``zfs`` command line.

    Every dataset below ``pool`` is a storage unit. The pool's root
    dataset is skipped unless ``include_root`` is set.
    """

    def __init__(
        self,
        pool: str = "rpool",
        namespace: str = "ckmig",
        include_root: bool = False,
        runner: CommandRunner | None = None,
        zfs_bin: str = "zfs",
    ) -> None:
        self._pool = pool
        self._ns = namespace
        self._include_root = include_root
        self._runner = runner or CommandRunner()
        self._zfs = zfs_bin

    @property
    def name(self) -> str:
        return "zfs"

    def _prop(self, key: str) -> str:
        return f"{self._ns}:{key}"

    def _run(self, args: Sequence[str], mutates: bool = False) -> str:
        argv = [self._zfs, *args]
        try:
            result = self._runner.run(argv, mutates=mutates)
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or "").strip()
            raise StorageBackendError(
                f"zfs {args[0]} failed: {stderr or f'exit {exc.returncode}'}",
                command=argv,
                stderr=stderr,
            ) from exc
        except subprocess.SubprocessError as exc:
            # TimeoutExpired and friends: the command may have half-run.
            raise StorageBackendError(
                f"zfs {args[0]} did not finish: {exc}", command=argv
            ) from exc
        except OSError as exc:
            raise StorageBackendError(
                f"Cannot run {self._zfs}: {exc}", command=argv
            ) from exc
        return result.stdout

    # ── Units ──────────────────────────────────────────────────────

    def list_units(self) -> list[StorageUnit]:
        out = self._run(
            [
                "list", "-H", "-p", "-r",
                "-t", "filesystem,volume",
                "-o", "name,creation",
                self._pool,
            ]
        )
        units: list[StorageUnit] = []
        for line in out.splitlines():
            if not line.strip():
                continue
            fields = line.split("\t")
            path = fields[0]
            if path == self._pool and not self._include_root:
                continue
            created = None
            if len(fields) > 1 and fields[1].isdigit():
                created = int(fields[1]) * 1_000_000_000
            units.append(StorageUnit(path=path, created_at=created))
        units.sort(key=lambda u: u.path)
        return units

    def discard_unit(self, unit: StorageUnit) -> None:
        logger.warning("Destroying dataset created after checkpoint: %s", unit.path)
        self._run(["destroy", "-r", unit.path], mutates=True)

    # ── Checkpoints ────────────────────────────────────────────────

    def capture(
        self,
        unit: StorageUnit,
        name: str,
        label: str,
        created_at: int,
        metadata: CheckpointMetadata,
    ) -> Checkpoint:
        args = ["snapshot"]
        props = {"label": label, "created": str(created_at), **metadata}
        for key, value in props.items():
            args += ["-o", f"{self._prop(key)}={value}"]
        args.append(f"{unit.path}@{name}")
        self._run(args, mutates=True)
        return Checkpoint(
            unit=unit,
            name=name,
            label=label,
            created_at=created_at,
            complete=False,
            phase=metadata.get("phase") or None,
            run_id=metadata.get("run") or None,
            expected_units=int(metadata.get("units", "0")),
        )

    def mark_complete(self, checkpoint: Checkpoint) -> Checkpoint:
        self._run(
            [
                "set",
                f"{self._prop('complete')}=true",
                f"{checkpoint.unit.path}@{checkpoint.name}",
            ],
            mutates=True,
        )
        return checkpoint.completed()

    def list_checkpoints(self) -> list[Checkpoint]:
        columns = ",".join(["name", *(self._prop(p) for p in _PROPS)])
        out = self._run(
            ["list", "-H", "-p", "-r", "-t", "snapshot", "-o", columns, self._pool]
        )
        checkpoints: list[Checkpoint] = []
        for line in out.splitlines():
            if not line.strip():
                continue
            checkpoint = self._parse_snapshot_line(line)
            if checkpoint is not None:
                checkpoints.append(checkpoint)
        return checkpoints

    def _parse_snapshot_line(self, line: str) -> Checkpoint | None:
        fields = line.split("\t")
        full = fields[0]
        if "@" not in full:
            return None
        path, _, name = full.partition("@")
        values = dict(zip(_PROPS, fields[1:], strict=False))

        def _value(key: str) -> str:
            v = values.get(key, _UNSET)
            return "" if v == _UNSET else v

        label = _value("label")
        created = _value("created")
        if not label or not created.isdigit():
            # No structured metadata: orphaned or foreign snapshot.
            label, created = "", "0"
        units = _value("units")
        return Checkpoint(
            unit=StorageUnit(path=path),
            name=name,
            label=label,
            created_at=int(created),
            complete=_value("complete") == "true",
            phase=_value("phase") or None,
            run_id=_value("run") or None,
            expected_units=int(units) if units.isdigit() else 0,
        )

    def rollback(self, checkpoint: Checkpoint) -> None:
        # -r discards any snapshots newer than the target on this dataset.
        self._run(
            ["rollback", "-r", f"{checkpoint.unit.path}@{checkpoint.name}"],
            mutates=True,
        )

    def destroy(self, checkpoint: Checkpoint) -> None:
        self._run(
            ["destroy", f"{checkpoint.unit.path}@{checkpoint.name}"], mutates=True
        )
