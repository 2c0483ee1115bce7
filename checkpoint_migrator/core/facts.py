"""
Fact Collector
~~~~~~~~~~~~~~

Side-effect-free reads of ground-truth system state. Missing facts are
represented, never raised, so phase detection can work with partial
information.
"""

from __future__ import annotations

import logging
import platform
import re
import shutil
import subprocess
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from checkpoint_migrator.core.phase import PoolHealth
from checkpoint_migrator.runner import CommandRunner

if TYPE_CHECKING:
    from checkpoint_migrator.collaborators.base import InitImageSystem, PackageSystem

__all__ = [
    "KernelVersion",
    "SystemFacts",
    "FactCollector",
    "INIT_GENERATOR_A",
    "INIT_GENERATOR_B",
    "BOOT_SYNC_HELPER",
]

logger = logging.getLogger(__name__)

INIT_GENERATOR_A = "init_generator_a"
INIT_GENERATOR_B = "init_generator_b"
BOOT_SYNC_HELPER = "boot_sync_helper"

_KERNEL_RE = re.compile(r"^(\d+)\.(\d+)")


@dataclass(frozen=True, order=True)
class KernelVersion:
    """Kernel version reduced to ``major.minor`` for comparison."""

    major: int
    minor: int

    @classmethod
    def parse(cls, value: str | None) -> KernelVersion | None:
        """Parse ``6.14.0-24-generic`` style strings; None if unparseable."""
        if not value:
            return None
        match = _KERNEL_RE.match(value.strip())
        if match is None:
            return None
        return cls(int(match.group(1)), int(match.group(2)))

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}"


@dataclass(frozen=True)
class SystemFacts:
    """
    One snapshot of system state.

    Attributes:
        release: Active release identifier (os-release ``VERSION_ID``).
        kernel: Running kernel release string.
        pool_health: Health of the storage pool.
        tools: Presence flag per tool role.
        available_target: Next release offered by the package system.
        free_space_gb: Free space on the root filesystem.
        boot_id: Identifier of the running boot; changes on every reboot.
        collected_at: When the facts were read.
    """

    release: str | None = None
    kernel: str | None = None
    pool_health: PoolHealth = PoolHealth.ABSENT
    tools: Mapping[str, bool] = field(default_factory=dict)
    available_target: str | None = None
    free_space_gb: float | None = None
    boot_id: str | None = None
    collected_at: datetime = field(
        default_factory=lambda: datetime.now(UTC), compare=False
    )

    @property
    def kernel_version(self) -> KernelVersion | None:
        return KernelVersion.parse(self.kernel)

    def has_tool(self, role: str) -> bool:
        return bool(self.tools.get(role, False))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-safe dictionary."""
        return {
            "release": self.release,
            "kernel": self.kernel,
            "pool_health": self.pool_health.value,
            "tools": dict(self.tools),
            "available_target": self.available_target,
            "free_space_gb": self.free_space_gb,
            "boot_id": self.boot_id,
            "collected_at": self.collected_at.isoformat(),
        }


def _parse_os_release(text: str) -> dict[str, str]:
    values: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip().strip("\"'")
    return values


class FactCollector:
    """
    Collects SystemFacts without side effects.

    Args:
        pool: Storage pool whose health is reported.
        tools: Mapping of tool role to executable name or absolute path.
        os_release_path: File holding ``VERSION_ID``.
        disk_path: Filesystem whose free space is reported.
        runner: Command runner used for ``zpool``.
        package_system: Optional source of ``available_target``.
        init_images: Optional source of installed init-image generators.
        kernel_release: Returns the running kernel release string.
        boot_id_path: File holding the kernel's per-boot identifier.
    """

    def __init__(
        self,
        pool: str = "rpool",
        tools: Mapping[str, str] | None = None,
        os_release_path: str = "/etc/os-release",
        disk_path: str = "/",
        runner: CommandRunner | None = None,
        package_system: PackageSystem | None = None,
        init_images: InitImageSystem | None = None,
        kernel_release: Callable[[], str] = platform.release,
        boot_id_path: str = "/proc/sys/kernel/random/boot_id",
    ) -> None:
        self._pool = pool
        self._tools = dict(
            tools
            or {
                INIT_GENERATOR_A: "update-initramfs",
                INIT_GENERATOR_B: "dracut",
                BOOT_SYNC_HELPER: "sync-mirror-boot",
            }
        )
        self._os_release = Path(os_release_path)
        self._disk_path = disk_path
        self._runner = runner or CommandRunner()
        self._package_system = package_system
        self._init_images = init_images
        self._kernel_release = kernel_release
        self._boot_id = Path(boot_id_path)

    def collect(self) -> SystemFacts:
        """Read every fact; each one degrades to 'absent' on its own."""
        facts = SystemFacts(
            release=self._release(),
            kernel=self._kernel(),
            pool_health=self._pool_health(),
            tools=self._tool_presence(),
            available_target=self._available_target(),
            free_space_gb=self._free_space_gb(),
            boot_id=self._boot_id_value(),
        )
        logger.debug("Collected facts: %s", facts.to_dict())
        return facts

    def _release(self) -> str | None:
        try:
            text = self._os_release.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("Cannot read %s: %s", self._os_release, exc)
            return None
        return _parse_os_release(text).get("VERSION_ID") or None

    def _kernel(self) -> str | None:
        try:
            return self._kernel_release() or None
        except OSError as exc:
            logger.warning("Cannot determine kernel release: %s", exc)
            return None

    def _pool_health(self) -> PoolHealth:
        try:
            result = self._runner.run(
                ["zpool", "list", "-H", "-o", "health", self._pool], check=False
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("Cannot query pool %s: %s", self._pool, exc)
            return PoolHealth.ABSENT
        if result.returncode != 0:
            return PoolHealth.ABSENT
        return PoolHealth.from_zpool(result.stdout)

    def _tool_presence(self) -> dict[str, bool]:
        installed: set[str] | None = None
        if self._init_images is not None:
            try:
                installed = set(self._init_images.list_installed_generators())
            except Exception as exc:
                logger.warning("Cannot list init-image generators: %s", exc)

        presence: dict[str, bool] = {}
        for role, tool in self._tools.items():
            if installed is not None and role in (INIT_GENERATOR_A, INIT_GENERATOR_B):
                presence[role] = Path(tool).name in installed
            else:
                presence[role] = self._on_path(tool)
        return presence

    @staticmethod
    def _on_path(tool: str) -> bool:
        if "/" in tool:
            path = Path(tool)
            return path.is_file() and path.stat().st_mode & 0o111 != 0
        return shutil.which(tool) is not None

    def _available_target(self) -> str | None:
        if self._package_system is None:
            return None
        try:
            return self._package_system.available_target()
        except Exception as exc:
            logger.warning("Cannot query available release: %s", exc)
            return None

    def _free_space_gb(self) -> float | None:
        try:
            usage = shutil.disk_usage(self._disk_path)
        except OSError as exc:
            logger.warning("Cannot stat %s: %s", self._disk_path, exc)
            return None
        return round(usage.free / 1024**3, 2)

    def _boot_id_value(self) -> str | None:
        try:
            return self._boot_id.read_text(encoding="utf-8").strip() or None
        except OSError as exc:
            logger.warning("Cannot read %s: %s", self._boot_id, exc)
            return None
