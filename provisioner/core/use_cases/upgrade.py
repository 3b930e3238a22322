"""
Upgrade use case — wire the upgrade state machine to this host.
"""

from __future__ import annotations

import shutil
import sys
from pathlib import Path

from provisioner.core.config.settings import RuntimeSettings
from provisioner.core.persistence.lock import LockFile
from provisioner.core.persistence.upgrade_store import UpgradeStateStore
from provisioner.core.services.upgrade.backend import ReleaseUpgradeBackend, UpgradeBackend
from provisioner.core.services.upgrade.preflight import default_checks
from provisioner.core.services.upgrade.state_machine import UpgradeStateMachine

CLI_NAME = "provision"


def cli_argv(manifest_path: Path | None, *args: str) -> list[str]:
    """argv that re-invokes this CLI (for systemd units)."""
    executable = shutil.which(CLI_NAME) or str(Path(sys.argv[0]).resolve())
    argv = [executable]
    if manifest_path is not None:
        argv += ["--manifest", str(manifest_path)]
    return [*argv, *args]


def make_backend(manifest_path: Path | None) -> UpgradeBackend:
    return ReleaseUpgradeBackend(
        resume_command=cli_argv(manifest_path, "upgrade", "resume"),
        continue_command=cli_argv(manifest_path, "run", "--skip-os-upgrade"),
    )


def build_state_machine(
    settings: RuntimeSettings,
    manifest_path: Path | None = None,
    backend: UpgradeBackend | None = None,
) -> UpgradeStateMachine:
    """State machine using the configured state path, lock and preflight."""
    return UpgradeStateMachine(
        store=UpgradeStateStore(settings.upgrade_state_path),
        lock=LockFile(settings.lock_file),
        backend=backend or make_backend(manifest_path),
        checks=default_checks(settings.min_disk_mb, settings.network_check_url),
    )
