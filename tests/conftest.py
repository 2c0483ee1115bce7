"""Shared fixtures for checkpoint-migrator tests."""

from __future__ import annotations

import itertools
from dataclasses import replace

import pytest

from checkpoint_migrator.checkpoint.backends.base import BaseStorageBackend
from checkpoint_migrator.checkpoint.models import Checkpoint, StorageUnit
from checkpoint_migrator.checkpoint.store import CheckpointStore
from checkpoint_migrator.collaborators.base import (
    BootConfigurator,
    InitImageSystem,
    PackageSystem,
)
from checkpoint_migrator.config.loader import load_config_from_dict
from checkpoint_migrator.core.facts import (
    BOOT_SYNC_HELPER,
    INIT_GENERATOR_A,
    INIT_GENERATOR_B,
    SystemFacts,
)
from checkpoint_migrator.core.orchestrator import Orchestrator
from checkpoint_migrator.core.phase import PoolHealth
from checkpoint_migrator.core.results import ActionOutcome
from checkpoint_migrator.core.state import StateStore
from checkpoint_migrator.exceptions import StorageBackendError

ROOT_UNIT = "rpool/ROOT/ubuntu"
DEFAULT_UNITS = ["rpool/ROOT", ROOT_UNIT, "rpool/home", "rpool/home/root"]
START_NS = 1_750_000_000_000_000_000


class FakeSystem:
    """Mutable stand-in for the node: what facts report and what rollbacks restore."""

    def __init__(self) -> None:
        self.release = "24.04"
        self.kernel = "6.14.0-24-generic"
        self.pool_health = PoolHealth.HEALTHY
        self.free_space_gb = 50.0
        self.tools = {
            INIT_GENERATOR_A: True,
            INIT_GENERATOR_B: False,
            BOOT_SYNC_HELPER: True,
        }
        self.offers = {"24.04": "25.04", "25.04": "25.10"}
        self.boots = 1

    @property
    def boot_id(self) -> str:
        return f"boot-{self.boots}"

    def reboot(self) -> None:
        self.boots += 1

    def capture_state(self) -> dict:
        return {"release": self.release, "tools": dict(self.tools)}

    def restore_state(self, saved: dict) -> None:
        self.release = saved["release"]
        self.tools = dict(saved["tools"])


class FakeCollector:
    """FactCollector stand-in reading from a FakeSystem."""

    def __init__(self, system: FakeSystem) -> None:
        self.system = system
        self.calls = 0

    def collect(self) -> SystemFacts:
        self.calls += 1
        return SystemFacts(
            release=self.system.release,
            kernel=self.system.kernel,
            pool_health=self.system.pool_health,
            tools=dict(self.system.tools),
            available_target=self.system.offers.get(self.system.release),
            free_space_gb=self.system.free_space_gb,
            boot_id=self.system.boot_id,
        )


class FakeBackend(BaseStorageBackend):
    """
    In-memory storage backend with failure injection.

    Rolling back the root unit restores the attached FakeSystem, and
    like ``zfs rollback -r`` it drops newer checkpoints of that unit.
    """

    def __init__(
        self,
        units: list[str] | None = None,
        system: FakeSystem | None = None,
        root_unit: str = ROOT_UNIT,
    ) -> None:
        self.units: dict[str, StorageUnit] = {
            path: StorageUnit(path, created_at=1) for path in (DEFAULT_UNITS if units is None else units)
        }
        self.system = system
        self.root_unit = root_unit
        self.checkpoints: list[Checkpoint] = []
        self.saved: dict[tuple[str, str], dict] = {}
        self.fail_capture_on: set[str] = set()
        self.fail_rollback_on: set[str] = set()
        self.fail_destroy_on: set[str] = set()
        self.fail_list = False
        self.calls: list[tuple[str, str]] = []

    @property
    def name(self) -> str:
        return "fake"

    def add_unit(self, path: str, created_at: int | None) -> StorageUnit:
        unit = StorageUnit(path, created_at=created_at)
        self.units[path] = unit
        return unit

    def list_units(self) -> list[StorageUnit]:
        if self.fail_list:
            raise StorageBackendError("pool unavailable")
        return sorted(self.units.values())

    def capture(self, unit, name, label, created_at, metadata):
        self.calls.append(("capture", unit.path))
        if unit.path in self.fail_capture_on:
            raise StorageBackendError(f"cannot snapshot {unit.path}")
        checkpoint = Checkpoint(
            unit=unit,
            name=name,
            label=label,
            created_at=created_at,
            phase=metadata.get("phase"),
            run_id=metadata.get("run"),
            expected_units=int(metadata.get("units", 0)),
        )
        self.checkpoints.append(checkpoint)
        if self.system is not None and unit.path == self.root_unit:
            self.saved[(unit.path, name)] = self.system.capture_state()
        return checkpoint

    def mark_complete(self, checkpoint: Checkpoint) -> Checkpoint:
        completed = checkpoint.completed()
        self.checkpoints[self.checkpoints.index(checkpoint)] = completed
        return completed

    def list_checkpoints(self) -> list[Checkpoint]:
        if self.fail_list:
            raise StorageBackendError("pool unavailable")
        return list(self.checkpoints)

    def rollback(self, checkpoint: Checkpoint) -> None:
        self.calls.append(("rollback", checkpoint.unit.path))
        if checkpoint.unit.path in self.fail_rollback_on:
            raise StorageBackendError(f"cannot roll back {checkpoint.unit.path}")
        self.checkpoints = [
            cp
            for cp in self.checkpoints
            if not (cp.unit.path == checkpoint.unit.path and cp.created_at > checkpoint.created_at)
        ]
        saved = self.saved.get((checkpoint.unit.path, checkpoint.name))
        if self.system is not None and saved is not None:
            self.system.restore_state(saved)

    def destroy(self, checkpoint: Checkpoint) -> None:
        self.calls.append(("destroy", checkpoint.unit.path))
        if checkpoint.unit.path in self.fail_destroy_on:
            raise StorageBackendError(f"cannot destroy {checkpoint.unit.path}@{checkpoint.name}")
        self.checkpoints = [
            cp
            for cp in self.checkpoints
            if not (cp.unit.path == checkpoint.unit.path and cp.name == checkpoint.name)
        ]

    def discard_unit(self, unit: StorageUnit) -> None:
        self.calls.append(("discard", unit.path))
        doomed = {p for p in self.units if p == unit.path or p.startswith(unit.path + "/")}
        for path in doomed:
            del self.units[path]
        self.checkpoints = [cp for cp in self.checkpoints if cp.unit.path not in doomed]

    def corrupt(self, label: str, unit_path: str, **changes) -> None:
        """Rewrite one stored checkpoint, e.g. to mark it incomplete."""
        for i, cp in enumerate(self.checkpoints):
            if cp.label == label and cp.unit.path == unit_path:
                self.checkpoints[i] = replace(cp, **changes)


class FakePackageSystem(PackageSystem):
    def __init__(self, system: FakeSystem) -> None:
        self.system = system
        self.calls: list[str | None] = []
        self.fail = False

    def available_target(self) -> str | None:
        return self.system.offers.get(self.system.release)

    def upgrade(self, target: str | None) -> ActionOutcome:
        self.calls.append(target)
        if self.fail:
            return ActionOutcome.failed("dpkg was interrupted")
        if target is not None:
            self.system.release = target
        return ActionOutcome.ok(detail=f"upgraded to {target or 'latest packages'}")


class FakeInitImages(InitImageSystem):
    def __init__(self, system: FakeSystem) -> None:
        self.system = system
        self.calls: list[str | None] = []
        self.fail = False
        # report success without doing anything
        self.lie = False
        self.rebuild_calls = 0
        self.fail_rebuild = False

    def regenerate(self, kernel_version: str | None) -> ActionOutcome:
        self.calls.append(kernel_version)
        if self.fail:
            return ActionOutcome.failed("dracut: cannot find module zfs")
        if not self.lie:
            self.system.tools[INIT_GENERATOR_A] = False
            self.system.tools[INIT_GENERATOR_B] = True
        return ActionOutcome.ok(detail=f"regenerated for {kernel_version}")

    def rebuild_current(self) -> ActionOutcome:
        self.rebuild_calls += 1
        if self.fail_rebuild:
            return ActionOutcome.failed("update-initramfs: failed for /boot/initrd.img")
        return ActionOutcome.ok(detail="rebuilt init images")

    def list_installed_generators(self) -> set[str]:
        names = {INIT_GENERATOR_A: "update-initramfs", INIT_GENERATOR_B: "dracut"}
        return {name for role, name in names.items() if self.system.tools.get(role)}


class FakeBootConfigurator(BootConfigurator):
    def __init__(self) -> None:
        self.calls = 0
        self.fail = False

    def sync(self) -> ActionOutcome:
        self.calls += 1
        if self.fail:
            return ActionOutcome.failed("grub-install: no such device")
        return ActionOutcome.ok(detail="boot config synced")


@pytest.fixture
def clock():
    """Deterministic nanosecond clock advancing one second per call."""
    counter = itertools.count(START_NS, 1_000_000_000)
    return lambda: next(counter)


@pytest.fixture
def system() -> FakeSystem:
    return FakeSystem()


@pytest.fixture
def backend(system: FakeSystem) -> FakeBackend:
    return FakeBackend(system=system)


@pytest.fixture
def store(backend: FakeBackend, clock) -> CheckpointStore:
    return CheckpointStore(backend, clock=clock)


@pytest.fixture
def collector(system: FakeSystem) -> FakeCollector:
    return FakeCollector(system)


@pytest.fixture
def package_system(system: FakeSystem) -> FakePackageSystem:
    return FakePackageSystem(system)


@pytest.fixture
def init_images(system: FakeSystem) -> FakeInitImages:
    return FakeInitImages(system)


@pytest.fixture
def boot_configurator() -> FakeBootConfigurator:
    return FakeBootConfigurator()


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "state" / "state.json"


@pytest.fixture
def state_store(state_path) -> StateStore:
    return StateStore(state_path)


@pytest.fixture
def orchestrator(
    backend,
    collector,
    package_system,
    init_images,
    boot_configurator,
    state_store,
    state_path,
    clock,
) -> Orchestrator:
    """Orchestrator wired to fakes under the default configuration."""
    config = load_config_from_dict({"state": {"path": str(state_path)}})
    return Orchestrator(
        config,
        backend=backend,
        package_system=package_system,
        init_images=init_images,
        boot_configurator=boot_configurator,
        collector=collector,
        state_store=state_store,
        clock=clock,
    )


def approve(request) -> bool:
    return True


def decline(request) -> bool:
    return False
