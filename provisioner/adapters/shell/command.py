"""
Shell command runner — execute module commands on the host.

Every command runs through bash with ``set -euo pipefail``. The
execution context decides who runs it and with which shell startup
files; ``build_argv`` is the single place that mapping lives.
"""

from __future__ import annotations

import getpass
import logging
import os
import subprocess
import time
from typing import assert_never

from provisioner.adapters.base import CommandResult, CommandRunner
from provisioner.core.models.manifest import RunAs

logger = logging.getLogger(__name__)

STRICT_PREFIX = "set -euo pipefail\n"


def build_argv(
    run_as: RunAs,
    command: str,
    *,
    target_user: str,
    current_user: str,
    is_root: bool,
) -> list[str]:
    """Translate (context, command) into the argv that runs it.

    ROOT                  bash -c (via ``sudo -n`` when not already root)
    TARGET_USER           bash -lc as the target user (login shell)
    TARGET_USER_NO_SHELL  bash without profile/rc files as the target user
    CURRENT               bash -c as whoever invoked the provisioner
    """
    script = STRICT_PREFIX + command

    if run_as is RunAs.ROOT:
        argv = ["bash", "-c", script]
        return argv if is_root else ["sudo", "-n", *argv]

    if run_as is RunAs.TARGET_USER:
        argv = ["bash", "-lc", script]
    elif run_as is RunAs.TARGET_USER_NO_SHELL:
        argv = ["bash", "--noprofile", "--norc", "-c", script]
    elif run_as is RunAs.CURRENT:
        return ["bash", "-c", script]
    else:
        assert_never(run_as)

    if target_user == current_user:
        return argv
    return ["sudo", "-n", "-u", target_user, "-H", *argv]


class ShellCommandRunner(CommandRunner):
    """Run commands with subprocess, capturing output and enforcing a timeout."""

    def __init__(self, target_user: str, cwd: str | None = None):
        self._target_user = target_user
        self._cwd = cwd
        self._current_user = getpass.getuser()
        self._is_root = os.geteuid() == 0

    @property
    def target_user(self) -> str:
        return self._target_user

    def run(
        self,
        command: str,
        run_as: RunAs,
        *,
        timeout: int,
        input: bytes | None = None,
    ) -> CommandResult:
        argv = build_argv(
            run_as,
            command,
            target_user=self._target_user,
            current_user=self._current_user,
            is_root=self._is_root,
        )
        logger.debug("Executing [%s]: %s", run_as.value, command)
        start = time.monotonic()

        try:
            result = subprocess.run(
                argv,
                input=input,
                stdin=None if input is not None else subprocess.DEVNULL,
                capture_output=True,
                timeout=timeout,
                cwd=self._cwd,
            )
        except subprocess.TimeoutExpired as e:
            return CommandResult(
                command=command,
                run_as=run_as,
                timed_out=True,
                stdout=_decode(e.stdout),
                stderr=_decode(e.stderr),
                duration_ms=int((time.monotonic() - start) * 1000),
                error=f"Command timed out after {timeout}s",
            )
        except OSError as e:
            return CommandResult(
                command=command,
                run_as=run_as,
                duration_ms=int((time.monotonic() - start) * 1000),
                error=f"Command execution error: {e}",
            )

        elapsed_ms = int((time.monotonic() - start) * 1000)
        if result.returncode != 0:
            logger.debug("Command exited %d after %dms: %s", result.returncode, elapsed_ms, command)
        return CommandResult(
            command=command,
            run_as=run_as,
            exit_code=result.returncode,
            stdout=_decode(result.stdout),
            stderr=_decode(result.stderr),
            duration_ms=elapsed_ms,
        )


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, str):
        return data
    return data.decode("utf-8", errors="replace")
