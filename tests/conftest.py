"""
Shared test fixtures and configuration.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from provisioner.core.config.loader import parse_manifest
from provisioner.core.config.settings import RuntimeSettings
from provisioner.core.models.manifest import Manifest
from provisioner.core.persistence.lock import LockFile
from provisioner.core.persistence.upgrade_store import UpgradeStateStore
from provisioner.core.services.upgrade.backend import StepResult, UpgradeBackend
from provisioner.core.services.upgrade.preflight import PreflightCheck
from provisioner.core.services.upgrade.state_machine import UpgradeStateMachine

# ── Manifest builders ───────────────────────────────────────────


def module_spec(
    module_id: str,
    phase: int = 1,
    deps: list[str] | None = None,
    **fields: Any,
) -> dict[str, Any]:
    """Raw module mapping with every required field filled in."""
    data: dict[str, Any] = {
        "id": module_id,
        "description": f"{module_id} module",
        "phase": phase,
        "dependencies": list(deps or []),
        "install": [f"install {module_id}"],
        "verify": [f"verify {module_id}"],
    }
    data.update(fields)
    return data


def manifest_from(modules: list[dict[str, Any]], **top: Any) -> Manifest:
    """Schema-valid manifest around ``modules`` (graph checks not applied)."""
    data: dict[str, Any] = {
        "version": 1,
        "name": "Test environment",
        "id": "testenv",
        "defaults": {"user": "dev", "workspace_root": "/data/projects"},
        "modules": modules,
    }
    data.update(top)
    return parse_manifest(data)


@pytest.fixture
def spec() -> Callable[..., dict[str, Any]]:
    """Factory for raw module mappings."""
    return module_spec


@pytest.fixture
def make_manifest() -> Callable[..., Manifest]:
    """Factory for manifests built from module mappings."""
    return manifest_from


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def settings(tmp_path: Path) -> RuntimeSettings:
    """Runtime settings with every path under tmp_path."""
    return RuntimeSettings(
        state_dir=tmp_path / "state",
        lock_file=tmp_path / "run" / "upgrade.lock",
        upgrade_log=tmp_path / "log" / "upgrade_resume.log",
        run_dir=tmp_path / "runs",
    )


# ── Upgrade fakes ───────────────────────────────────────────────


class FakeUpgradeBackend(UpgradeBackend):
    """In-memory host: upgrading changes the version and sets reboot-pending."""

    def __init__(self, version: str | None = "22.04", reboot_pending: bool = False):
        self.version = version
        self.pending = reboot_pending
        self.calls: list[str] = []
        self.fail_upgrade: set[str] = set()
        self.fail_hook = False
        self.fail_reboot = False
        self.fail_recover = False
        self.recover_fixes = False
        self.notices: list[str] = []

    @property
    def upgrades(self) -> list[str]:
        return [c.split(":", 1)[1] for c in self.calls if c.startswith("upgrade:")]

    def reboot(self) -> None:
        """Simulate the machine coming back up."""
        self.pending = False

    def current_version(self) -> str | None:
        return self.version

    def reboot_pending(self) -> bool:
        return self.pending

    def upgrade_to(self, version: str) -> StepResult:
        self.calls.append(f"upgrade:{version}")
        if version in self.fail_upgrade:
            return StepResult.failure(
                f"upgrade to {version}",
                "exit code 1",
                command="do-release-upgrade",
                output="E: upgrade aborted",
            )
        self.version = version
        self.pending = True
        return StepResult.success(f"upgrade to {version}")

    def install_resume_hook(self) -> StepResult:
        self.calls.append("hook")
        if self.fail_hook:
            return StepResult.failure("install resume hook", "cannot write unit")
        return StepResult.success("install resume hook")

    def schedule_reboot(self, delay_minutes: int) -> StepResult:
        self.calls.append("reboot")
        if self.fail_reboot:
            return StepResult.failure("schedule reboot", "shutdown not permitted")
        return StepResult.success("schedule reboot")

    def cleanup(self) -> StepResult:
        self.calls.append("cleanup")
        return StepResult.success("cleanup")

    def continue_installation(self) -> StepResult:
        self.calls.append("continue")
        return StepResult.success("continue installation")

    def recover(self) -> StepResult:
        self.calls.append("recover")
        if self.fail_recover:
            return StepResult.failure("recover package system", "exit code 100")
        if self.recover_fixes:
            self.fail_upgrade.clear()
        return StepResult.success("recover package system")

    def update_notice(self, message: str) -> StepResult:
        self.calls.append("notice")
        self.notices.append(message)
        return StepResult.success("update login notice")

    def write_diagnostics(self, path: Path, state_snapshot: str | None) -> StepResult:
        self.calls.append("diagnostics")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"=== Upgrade state ===\n{state_snapshot}\n")
        return StepResult.success("write diagnostics")


def passing_check() -> PreflightCheck:
    return PreflightCheck("always", True, "ok")


@pytest.fixture
def fake_backend() -> FakeUpgradeBackend:
    return FakeUpgradeBackend()


@pytest.fixture
def upgrade_store(tmp_path: Path) -> UpgradeStateStore:
    return UpgradeStateStore(tmp_path / "state" / "upgrade_state.json")


@pytest.fixture
def upgrade_lock(tmp_path: Path) -> LockFile:
    return LockFile(tmp_path / "run" / "upgrade.lock")


@pytest.fixture
def state_machine(
    upgrade_store: UpgradeStateStore,
    upgrade_lock: LockFile,
    fake_backend: FakeUpgradeBackend,
) -> UpgradeStateMachine:
    return UpgradeStateMachine(
        store=upgrade_store,
        lock=upgrade_lock,
        backend=fake_backend,
        checks=[passing_check],
    )
