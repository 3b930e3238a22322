"""
Upgrade backend — the host operations the state machine drives.

``UpgradeBackend`` is the seam between the pure state machine and the
machine itself. Like the command runner, backend operations return a
``StepResult`` rather than raising; the state machine decides what a
failure means. ``ReleaseUpgradeBackend`` drives Ubuntu's
``do-release-upgrade``, apt and systemd.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from provisioner.adapters.base import tail
from provisioner.core.services.upgrade.versions import is_lts

logger = logging.getLogger(__name__)

OS_RELEASE = Path("/etc/os-release")
REBOOT_REQUIRED_FLAG = Path("/var/run/reboot-required")
RELEASE_UPGRADES_CONFIG = Path("/etc/update-manager/release-upgrades")
SYSTEMD_UNIT_DIR = Path("/etc/systemd/system")
MOTD_PATH = Path("/etc/update-motd.d/00-provisioner-upgrade")
APT_HISTORY = Path("/var/log/apt/history.log")

RESUME_SERVICE = "provisioner-resume"
CONTINUE_UNIT = "provisioner-continue"
UPGRADE_TIMEOUT = 4 * 60 * 60
RECOVERY_ATTEMPTS = 3
RECOVERY_INITIAL_DELAY = 30.0
NOTICE_WIDTH = 51


@dataclass(frozen=True)
class StepResult:
    """Outcome of one backend operation."""

    ok: bool
    action: str
    command: str = ""
    output_tail: str = ""
    error: str | None = None

    @classmethod
    def success(cls, action: str, command: str = "", output: str = "") -> StepResult:
        return cls(ok=True, action=action, command=command, output_tail=tail(output))

    @classmethod
    def failure(cls, action: str, error: str, command: str = "", output: str = "") -> StepResult:
        return cls(ok=False, action=action, command=command, output_tail=tail(output), error=error)


class UpgradeBackend(ABC):
    """Host operations for OS upgrades."""

    @abstractmethod
    def current_version(self) -> str | None:
        """Installed Ubuntu version (``"24.04"``), or None if not Ubuntu."""

    @abstractmethod
    def reboot_pending(self) -> bool:
        """True if the host still has to reboot to finish the last hop."""

    @abstractmethod
    def upgrade_to(self, version: str) -> StepResult:
        """Perform exactly one release upgrade hop."""

    @abstractmethod
    def install_resume_hook(self) -> StepResult:
        """Arrange for ``upgrade resume`` to run on next boot."""

    @abstractmethod
    def schedule_reboot(self, delay_minutes: int) -> StepResult:
        """Schedule a reboot."""

    @abstractmethod
    def cleanup(self) -> StepResult:
        """Remove the resume hook and undo temporary upgrader settings."""

    @abstractmethod
    def continue_installation(self) -> StepResult:
        """Launch ordinary module installation detached from this process."""

    @abstractmethod
    def recover(self) -> StepResult:
        """Repair the package system after a failed hop so it can be retried."""

    @abstractmethod
    def update_notice(self, message: str) -> StepResult:
        """Show ``message`` to operators logging in while the upgrade runs."""

    @abstractmethod
    def write_diagnostics(self, path: Path, state_snapshot: str | None) -> StepResult:
        """Write a host diagnostics dump to ``path``."""


def retry_with_backoff(
    operation: Callable[[], StepResult],
    attempts: int = RECOVERY_ATTEMPTS,
    initial_delay: float = RECOVERY_INITIAL_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> StepResult:
    """Run ``operation`` until it succeeds, doubling the delay between tries.

    Returns:
        The first successful result, or the last failure.
    """
    delay = initial_delay
    result = operation()
    for attempt in range(2, attempts + 1):
        if result.ok:
            break
        logger.warning(
            "%s failed (attempt %d/%d: %s); retrying in %.0fs",
            result.action, attempt - 1, attempts, result.error, delay,
        )
        sleep(delay)
        delay *= 2
        result = operation()
    return result


def notice_script(message: str) -> str:
    """Login banner script (``update-motd.d``) carrying one status line."""
    line = " ".join(message.split())
    if len(line) > NOTICE_WIDTH:
        line = line[: NOTICE_WIDTH - 3] + "..."
    return (
        "#!/bin/sh\n"
        "# Installed by provisioner while an OS upgrade is in progress\n"
        "echo\n"
        "echo '>>> UBUNTU UPGRADE IN PROGRESS <<<'\n"
        f"echo {shlex.quote('Status: ' + line)}\n"
        "echo 'The upgrade continues automatically and reboots after each release.'\n"
        "echo 'Do not interrupt it.'\n"
        "echo\n"
        "echo 'Progress:  provision upgrade status'\n"
        "echo\n"
    )


def read_os_release(path: Path = OS_RELEASE) -> dict[str, str]:
    """Parse an os-release file into a mapping."""
    values: dict[str, str] = {}
    try:
        content = path.read_text(encoding="utf-8")
    except OSError:
        return values
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, raw = line.partition("=")
        try:
            parts = shlex.split(raw)
        except ValueError:
            parts = [raw]
        values[key] = parts[0] if parts else ""
    return values


class ReleaseUpgradeBackend(UpgradeBackend):
    """Ubuntu + systemd implementation.

    Args:
        resume_command: argv run by the resume service after each reboot.
        continue_command: argv launched (via systemd-run) once the final
            hop is done, to carry on with module installation.
        sleep: Wait function between recovery retries.
    """

    def __init__(
        self,
        resume_command: list[str],
        continue_command: list[str],
        os_release: Path = OS_RELEASE,
        unit_dir: Path = SYSTEMD_UNIT_DIR,
        motd_path: Path = MOTD_PATH,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._resume_command = resume_command
        self._continue_command = continue_command
        self._os_release = os_release
        self._unit_dir = unit_dir
        self._motd_path = motd_path
        self._sleep = sleep

    @property
    def unit_path(self) -> Path:
        return self._unit_dir / f"{RESUME_SERVICE}.service"

    def current_version(self) -> str | None:
        info = read_os_release(self._os_release)
        if info.get("ID") != "ubuntu":
            return None
        return info.get("VERSION_ID") or None

    def reboot_pending(self) -> bool:
        return REBOOT_REQUIRED_FLAG.exists()

    def upgrade_to(self, version: str) -> StepResult:
        action = f"upgrade to {version}"
        if shutil.which("do-release-upgrade") is None:
            return StepResult.failure(
                action,
                "do-release-upgrade not found (install ubuntu-release-upgrader-core)",
            )

        if not is_lts(version):
            self._enable_normal_releases()

        argv = ["do-release-upgrade", "-f", "DistUpgradeViewNonInteractive"]
        command = shlex.join(argv)
        logger.warning("Starting %s: %s (this takes a while)", action, command)
        return self._run(action, argv, timeout=UPGRADE_TIMEOUT)

    def install_resume_hook(self) -> StepResult:
        action = "install resume hook"
        exec_start = shlex.join(self._resume_command)
        unit = (
            "[Unit]\n"
            "Description=Provisioner resume (after OS upgrade reboot)\n"
            "After=network-online.target\n"
            "Wants=network-online.target\n"
            "\n"
            "[Service]\n"
            "Type=oneshot\n"
            f"ExecStart={exec_start}\n"
            "RemainAfterExit=no\n"
            "StandardOutput=journal+console\n"
            "StandardError=journal+console\n"
            "\n"
            "[Install]\n"
            "WantedBy=multi-user.target\n"
        )
        try:
            self._unit_dir.mkdir(parents=True, exist_ok=True)
            self.unit_path.write_text(unit, encoding="utf-8")
        except OSError as e:
            return StepResult.failure(action, f"cannot write {self.unit_path}: {e}")

        reload = self._run(action, ["systemctl", "daemon-reload"])
        if not reload.ok:
            return reload
        return self._run(action, ["systemctl", "enable", f"{RESUME_SERVICE}.service"])

    def schedule_reboot(self, delay_minutes: int) -> StepResult:
        return self._run(
            "schedule reboot",
            ["shutdown", "-r", f"+{delay_minutes}", "provisioner: OS upgrade requires reboot"],
        )

    def cleanup(self) -> StepResult:
        action = "cleanup"
        disable = self._run(action, ["systemctl", "disable", f"{RESUME_SERVICE}.service"])
        if not disable.ok:
            logger.warning("Could not disable %s: %s", RESUME_SERVICE, disable.error)
        try:
            self.unit_path.unlink(missing_ok=True)
        except OSError as e:
            return StepResult.failure(action, f"cannot remove {self.unit_path}: {e}")
        self._run(action, ["systemctl", "daemon-reload"])
        self._restore_lts_only()
        try:
            self._motd_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove login notice %s: %s", self._motd_path, e)
        return StepResult.success(action)

    def continue_installation(self) -> StepResult:
        argv = [
            "systemd-run",
            f"--unit={CONTINUE_UNIT}",
            "--description=Provisioner module installation",
            "--collect",
            *self._continue_command,
        ]
        return self._run("continue installation", argv)

    def recover(self) -> StepResult:
        """Finish interrupted dpkg work, then complete a partial dist-upgrade."""
        action = "recover package system"
        noninteractive = {"DEBIAN_FRONTEND": "noninteractive"}
        for argv in (["dpkg", "--configure", "-a"], ["apt-get", "-f", "install", "-y"]):
            step = self._run(action, argv, timeout=UPGRADE_TIMEOUT, env=noninteractive)
            if not step.ok:
                logger.warning("%s: %s failed (%s)", action, step.command, step.error)

        dist_upgrade = [
            "apt-get", "dist-upgrade", "-y",
            "-o", "Dpkg::Options::=--force-confdef",
            "-o", "Dpkg::Options::=--force-confold",
        ]
        return retry_with_backoff(
            lambda: self._run(action, dist_upgrade, timeout=UPGRADE_TIMEOUT, env=noninteractive),
            sleep=self._sleep,
        )

    def update_notice(self, message: str) -> StepResult:
        action = "update login notice"
        try:
            self._motd_path.parent.mkdir(parents=True, exist_ok=True)
            self._motd_path.write_text(notice_script(message), encoding="utf-8")
            self._motd_path.chmod(0o755)
        except OSError as e:
            return StepResult.failure(action, f"cannot write {self._motd_path}: {e}")
        return StepResult.success(action)

    def write_diagnostics(self, path: Path, state_snapshot: str | None) -> StepResult:
        action = "write diagnostics"
        sections = [
            ("OS release", self._read_or_note(self._os_release)),
            ("Disk space", self._capture(["df", "-h"])),
            ("Memory", self._capture(["free", "-h"])),
            ("dpkg audit", self._capture(["dpkg", "--audit"])),
            ("Held packages", self._capture(["apt-mark", "showhold"])),
            ("APT history (last 50 lines)", tail(self._read_or_note(APT_HISTORY), 50)),
            ("Upgrade state", state_snapshot or "(no state file)"),
        ]
        body = "".join(f"=== {title} ===\n{text.rstrip()}\n\n" for title, text in sections)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(body, encoding="utf-8")
        except OSError as e:
            return StepResult.failure(action, f"cannot write {path}: {e}")
        return StepResult.success(action)

    # ── Helpers ─────────────────────────────────────────────────

    def _capture(self, argv: list[str]) -> str:
        result = self._run("diagnostics", argv, timeout=30)
        if result.ok:
            return result.output_tail
        return f"({result.command} failed: {result.error})"

    @staticmethod
    def _read_or_note(path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            return f"(cannot read {path}: {e.strerror or e})"

    def _run(
        self,
        action: str,
        argv: list[str],
        timeout: int = 120,
        env: dict[str, str] | None = None,
    ) -> StepResult:
        command = shlex.join(argv)
        logger.debug("backend: %s", command)
        try:
            result = subprocess.run(
                argv, capture_output=True, text=True, timeout=timeout,
                env={**os.environ, **env} if env else None,
            )
        except subprocess.TimeoutExpired as e:
            output = e.stdout if isinstance(e.stdout, str) else ""
            return StepResult.failure(action, f"timed out after {timeout}s", command, output)
        except OSError as e:
            return StepResult.failure(action, str(e), command)

        output = "\n".join(p for p in (result.stdout.strip(), result.stderr.strip()) if p)
        if result.returncode != 0:
            return StepResult.failure(action, f"exit code {result.returncode}", command, output)
        return StepResult.success(action, command, output)

    def _enable_normal_releases(self) -> None:
        """Allow upgrades to non-LTS releases (``Prompt=lts`` → ``normal``)."""
        config = RELEASE_UPGRADES_CONFIG
        backup = config.with_name(config.name + ".disabled")
        try:
            content = config.read_text(encoding="utf-8")
        except OSError:
            logger.warning("Release upgrade config not found: %s", config)
            return
        if "Prompt=lts" not in content.splitlines():
            return
        lines = ["Prompt=normal" if line == "Prompt=lts" else line for line in content.splitlines()]
        try:
            if not backup.exists():
                backup.write_text(content, encoding="utf-8")
            config.write_text("\n".join(lines) + "\n", encoding="utf-8")
        except OSError as e:
            logger.warning("Could not enable normal release upgrades in %s: %s", config, e)
            return
        logger.info("Enabled normal release upgrades (was LTS-only)")

    def _restore_lts_only(self) -> None:
        config = RELEASE_UPGRADES_CONFIG
        backup = config.with_name(config.name + ".disabled")
        if not backup.exists():
            return
        try:
            backup.replace(config)
            logger.info("Restored LTS-only release upgrade setting")
        except OSError as e:
            logger.warning("Failed to restore %s (backup left at %s): %s", config, backup, e)
