"""
Command Collaborators
~~~~~~~~~~~~~~~~~~~~~

Collaborators that execute argv templates from configuration through a
CommandRunner. Templates may use ``{target}`` and ``{kernel}``.
Command failures become failed ActionOutcomes; nothing escapes.
"""

from __future__ import annotations

import logging
import re
import shlex
import shutil
import subprocess
from collections.abc import Iterable, Sequence
from pathlib import Path

from checkpoint_migrator.collaborators.base import (
    BootConfigurator,
    InitImageSystem,
    PackageSystem,
)
from checkpoint_migrator.core.results import ActionOutcome
from checkpoint_migrator.runner import CommandRunner

__all__ = [
    "CommandPackageSystem",
    "CommandInitImageSystem",
    "CommandBootConfigurator",
]

logger = logging.getLogger(__name__)

_NEW_RELEASE_RE = re.compile(r"New release '([^']+)'")


def _render(template: Sequence[str], **values: str | None) -> list[str]:
    safe = {k: v or "" for k, v in values.items()}
    return [part.format(**safe) for part in template]


def _run_action(
    runner: CommandRunner,
    argv: Sequence[str],
    what: str,
    timeout: float | None = None,
) -> ActionOutcome:
    if not argv:
        return ActionOutcome.failed(f"No command configured for {what}")
    cmdline = shlex.join(argv)
    try:
        runner.run(argv, mutates=True, timeout=timeout)
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        logger.error("%s failed (exit %d): %s", what, exc.returncode, stderr or cmdline)
        error = f"{cmdline} exited {exc.returncode}"
        if stderr:
            error = f"{error}: {stderr}"
        return ActionOutcome.failed(error, detail=what)
    except subprocess.TimeoutExpired:
        logger.error("%s timed out: %s", what, cmdline)
        return ActionOutcome.failed(f"{cmdline} timed out", detail=what)
    except OSError as exc:
        logger.error("%s could not start: %s", what, exc)
        return ActionOutcome.failed(f"{cmdline}: {exc}", detail=what)
    return ActionOutcome.ok(detail=f"{what}: {cmdline}")


class CommandPackageSystem(PackageSystem):
    """
    apt / do-release-upgrade driven package system.

    ``available_target`` parses ``New release 'X'`` from the
    check command's output.
    """

    def __init__(
        self,
        runner: CommandRunner,
        check_release: Sequence[str],
        upgrade_packages: Sequence[str],
        release_upgrade: Sequence[str],
        timeout: float | None = None,
    ) -> None:
        self._runner = runner
        self._check_release = list(check_release)
        self._upgrade_packages = list(upgrade_packages)
        self._release_upgrade = list(release_upgrade)
        self._timeout = timeout

    def available_target(self) -> str | None:
        if not self._check_release:
            return None
        try:
            result = self._runner.run(self._check_release, check=False)
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("Release check failed: %s", exc)
            return None
        match = _NEW_RELEASE_RE.search(f"{result.stdout}\n{result.stderr}")
        return match.group(1) if match else None

    def upgrade(self, target: str | None) -> ActionOutcome:
        if target is None:
            return _run_action(
                self._runner,
                _render(self._upgrade_packages),
                "package upgrade",
                self._timeout,
            )
        return _run_action(
            self._runner,
            _render(self._release_upgrade, target=target),
            f"release upgrade to {target}",
            self._timeout,
        )


class CommandInitImageSystem(InitImageSystem):
    """Installs the new init-image generator, then rebuilds images with it."""

    def __init__(
        self,
        runner: CommandRunner,
        regenerate_command: Sequence[str],
        install_command: Sequence[str] = (),
        rebuild_command: Sequence[str] = (),
        generators: Iterable[str] = ("update-initramfs", "dracut"),
        timeout: float | None = None,
    ) -> None:
        self._runner = runner
        self._regenerate = list(regenerate_command)
        self._install = list(install_command)
        self._rebuild = list(rebuild_command)
        self._generators = list(generators)
        self._timeout = timeout

    def regenerate(self, kernel_version: str | None) -> ActionOutcome:
        if self._install:
            installed = _run_action(
                self._runner,
                _render(self._install, kernel=kernel_version),
                "init-image generator install",
                self._timeout,
            )
            if not installed.success:
                return installed
        return _run_action(
            self._runner,
            _render(self._regenerate, kernel=kernel_version),
            f"init-image regeneration for {kernel_version or 'running kernel'}",
            self._timeout,
        )

    def rebuild_current(self) -> ActionOutcome:
        if not self._rebuild:
            return ActionOutcome.failed("No init-image rebuild command configured")
        return _run_action(self._runner, self._rebuild, "init-image rebuild", self._timeout)

    def list_installed_generators(self) -> set[str]:
        return {Path(tool).name for tool in self._generators if shutil.which(tool)}


class CommandBootConfigurator(BootConfigurator):
    """Runs each configured boot-sync command in order; stops at the first failure."""

    def __init__(
        self,
        runner: CommandRunner,
        commands: Iterable[Sequence[str]],
        timeout: float | None = None,
    ) -> None:
        self._runner = runner
        self._commands = [list(c) for c in commands]
        self._timeout = timeout

    def sync(self) -> ActionOutcome:
        if not self._commands:
            return ActionOutcome.failed("No boot sync commands configured")
        ran: list[str] = []
        for argv in self._commands:
            outcome = _run_action(self._runner, argv, "boot config sync", self._timeout)
            if not outcome.success:
                return outcome
            ran.append(shlex.join(argv))
        return ActionOutcome.ok(detail="boot config synced: " + "; ".join(ran))
