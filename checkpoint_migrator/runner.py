"""
Command Runner
~~~~~~~~~~~~~~

Thin, logged wrapper around :func:`subprocess.run` shared by the
storage backend, the fact collector, and the command collaborators.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Sequence

__all__ = ["CommandRunner"]

logger = logging.getLogger(__name__)


class CommandRunner:
    """
    Runs external commands with text capture and debug logging.

    In dry-run mode, commands flagged as mutating are logged and
    reported as successful without being executed. Read-only
    commands always run so facts stay truthful.
    """

    def __init__(self, dry_run: bool = False, timeout: float | None = None) -> None:
        self.dry_run = dry_run
        self._timeout = timeout

    def run(
        self,
        argv: Sequence[str],
        *,
        check: bool = True,
        mutates: bool = False,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """
        Run a command and capture its output.

        Args:
            argv: Command and arguments.
            check: Raise CalledProcessError on a non-zero exit.
            mutates: Whether the command changes system state.
            timeout: Per-call timeout overriding the runner default.

        Raises:
            subprocess.CalledProcessError: On non-zero exit when ``check``.
            OSError: If the executable cannot be started.
        """
        argv = [str(a) for a in argv]
        cmdline = shlex.join(argv)
        if mutates and self.dry_run:
            logger.info("[dry-run] would execute: %s", cmdline)
            return subprocess.CompletedProcess(argv, 0, stdout="", stderr="")

        logger.debug("Running: %s", cmdline)
        result = subprocess.run(
            argv,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout if timeout is not None else self._timeout,
        )
        if result.returncode != 0:
            logger.debug(
                "Command exited %d: %s (%s)",
                result.returncode,
                cmdline,
                result.stderr.strip(),
            )
            if check:
                raise subprocess.CalledProcessError(
                    result.returncode, argv, output=result.stdout, stderr=result.stderr
                )
        return result
