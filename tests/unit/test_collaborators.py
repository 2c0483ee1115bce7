"""Tests for the command-running collaborators."""

import subprocess

from checkpoint_migrator.collaborators.commands import (
    CommandBootConfigurator,
    CommandInitImageSystem,
    CommandPackageSystem,
)
from checkpoint_migrator.runner import CommandRunner


class ScriptedRunner(CommandRunner):
    """Returns canned results per executable and records every argv."""

    def __init__(self, stdout=None, fail=None, missing=None):
        super().__init__()
        self.stdout = stdout or {}
        self.fail = fail or set()
        self.missing = missing or set()
        self.commands = []

    def run(self, argv, *, check=True, mutates=False, timeout=None):
        argv = list(argv)
        self.commands.append(argv)
        if argv[0] in self.missing:
            raise FileNotFoundError(argv[0])
        if argv[0] in self.fail:
            if check:
                raise subprocess.CalledProcessError(100, argv, output="", stderr="E: broken packages")
            return subprocess.CompletedProcess(argv, 100, stdout="", stderr="")
        return subprocess.CompletedProcess(argv, 0, stdout=self.stdout.get(argv[0], ""), stderr="")


def packages(runner):
    return CommandPackageSystem(
        runner,
        check_release=["do-release-upgrade", "--check-dist-upgrade-only"],
        upgrade_packages=["apt-get", "-y", "full-upgrade"],
        release_upgrade=["do-release-upgrade", "-f", "DistUpgradeViewNonInteractive"],
    )


class TestCommandPackageSystem:
    """Tests for the apt-driven package system."""

    def test_available_target_parses_new_release(self):
        runner = ScriptedRunner(stdout={"do-release-upgrade": "Checking for a new Ubuntu release\nNew release '25.04' available.\n"})
        assert packages(runner).available_target() == "25.04"

    def test_available_target_none_when_nothing_offered(self):
        runner = ScriptedRunner(stdout={"do-release-upgrade": "No new release found.\n"})
        assert packages(runner).available_target() is None

    def test_available_target_survives_missing_tool(self):
        runner = ScriptedRunner(missing={"do-release-upgrade"})
        assert packages(runner).available_target() is None

    def test_in_release_upgrade(self):
        runner = ScriptedRunner()
        outcome = packages(runner).upgrade(None)
        assert outcome.success
        assert runner.commands[-1] == ["apt-get", "-y", "full-upgrade"]

    def test_release_upgrade(self):
        runner = ScriptedRunner()
        outcome = packages(runner).upgrade("25.04")
        assert outcome.success
        assert runner.commands[-1][0] == "do-release-upgrade"

    def test_failure_becomes_failed_outcome(self):
        runner = ScriptedRunner(fail={"apt-get"})
        outcome = packages(runner).upgrade(None)
        assert not outcome.success
        assert "exited 100" in outcome.error
        assert "broken packages" in outcome.error

    def test_missing_command_becomes_failed_outcome(self):
        outcome = CommandPackageSystem(ScriptedRunner(), [], [], []).upgrade(None)
        assert not outcome.success
        assert "No command configured" in outcome.error


class TestCommandInitImageSystem:
    """Tests for the dracut migration collaborator."""

    def test_installs_then_regenerates_for_kernel(self):
        runner = ScriptedRunner()
        init = CommandInitImageSystem(
            runner,
            regenerate_command=["dracut", "--force", "--kver", "{kernel}"],
            install_command=["apt-get", "-y", "install", "dracut"],
        )
        outcome = init.regenerate("6.17.0-5-generic")

        assert outcome.success
        assert runner.commands == [
            ["apt-get", "-y", "install", "dracut"],
            ["dracut", "--force", "--kver", "6.17.0-5-generic"],
        ]

    def test_install_failure_stops_regeneration(self):
        runner = ScriptedRunner(fail={"apt-get"})
        init = CommandInitImageSystem(
            runner,
            regenerate_command=["dracut", "--force"],
            install_command=["apt-get", "-y", "install", "dracut"],
        )
        assert not init.regenerate("6.17.0").success
        assert len(runner.commands) == 1

    def test_lists_only_installed_generators(self, tmp_path):
        tool = tmp_path / "dracut"
        tool.write_text("#!/bin/sh\n", encoding="utf-8")
        tool.chmod(0o755)
        init = CommandInitImageSystem(
            ScriptedRunner(),
            regenerate_command=["dracut"],
            generators=(str(tmp_path / "update-initramfs"), str(tool)),
        )
        assert init.list_installed_generators() == {"dracut"}

    def test_rebuild_runs_configured_command(self):
        runner = ScriptedRunner()
        init = CommandInitImageSystem(
            runner,
            regenerate_command=["dracut"],
            rebuild_command=["update-initramfs", "-u", "-k", "all"],
        )

        assert init.rebuild_current().success
        assert runner.commands == [["update-initramfs", "-u", "-k", "all"]]

    def test_rebuild_without_command_fails(self):
        init = CommandInitImageSystem(ScriptedRunner(), regenerate_command=["dracut"])
        outcome = init.rebuild_current()
        assert not outcome.success
        assert "No init-image rebuild command" in outcome.error


class TestCommandBootConfigurator:
    """Tests for boot configuration sync."""

    def test_runs_every_command(self):
        runner = ScriptedRunner()
        outcome = CommandBootConfigurator(runner, [["update-grub"], ["sync-mirror-boot"]]).sync()
        assert outcome.success
        assert runner.commands == [["update-grub"], ["sync-mirror-boot"]]

    def test_stops_at_first_failure(self):
        runner = ScriptedRunner(fail={"update-grub"})
        outcome = CommandBootConfigurator(runner, [["update-grub"], ["sync-mirror-boot"]]).sync()
        assert not outcome.success
        assert runner.commands == [["update-grub"]]

    def test_unstartable_command(self):
        runner = ScriptedRunner(missing={"sync-mirror-boot"})
        outcome = CommandBootConfigurator(runner, [["sync-mirror-boot"]]).sync()
        assert not outcome.success


class TestCommandRunner:
    """Tests for the shared runner."""

    def test_dry_run_skips_mutating_commands(self):
        result = CommandRunner(dry_run=True).run(["false"], mutates=True)
        assert result.returncode == 0
        assert result.stdout == ""
