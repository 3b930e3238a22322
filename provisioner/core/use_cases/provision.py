"""
Provision use case — the full vertical slice of ``provision run``.

    load manifest + checksums → validate/compile plan → (OS upgrade gate)
    → execute → persist report

Nothing with a side effect happens before the plan has compiled: an
invalid manifest or selection stops here with an exception and an
untouched host.
"""

from __future__ import annotations

import getpass
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from provisioner.adapters.base import CommandRunner, InstallerFetcher
from provisioner.adapters.shell.command import ShellCommandRunner
from provisioner.adapters.shell.fetch import CurlInstallerFetcher
from provisioner.core.config.loader import find_manifest_file, load_checksums, load_manifest
from provisioner.core.config.settings import RuntimeSettings
from provisioner.core.engine.executor import ExecutionEngine, ProgressCallback
from provisioner.core.errors import (
    EXIT_INTERRUPTED,
    EXIT_MODULE_FAILED,
    EXIT_OK,
    ConfigError,
)
from provisioner.core.models.checksums import ChecksumRegistry
from provisioner.core.models.manifest import Manifest
from provisioner.core.models.plan import ExecutionPlan, Selection
from provisioner.core.models.report import RunReport, RunStatus
from provisioner.core.models.upgrade import UpgradeStage
from provisioner.core.persistence.run_history import RunHistory
from provisioner.core.services.provision.resolver.plan_compiler import compile_plan
from provisioner.core.services.upgrade.state_machine import UpgradeOutcome, UpgradeStateMachine

logger = logging.getLogger(__name__)


@dataclass
class LoadedManifest:
    """A parsed manifest together with its checksum registry."""

    manifest: Manifest
    registry: ChecksumRegistry
    path: Path


@dataclass
class ProvisionResult:
    """Result of ``provision run``."""

    plan: ExecutionPlan
    report: RunReport | None = None
    upgrade: UpgradeOutcome | None = None
    exit_code: int = EXIT_OK

    def to_dict(self) -> dict[str, Any]:
        return {
            "exit_code": self.exit_code,
            "plan": self.plan.to_dict(),
            "upgrade": self.upgrade.to_dict() if self.upgrade else None,
            "report": self.report.to_dict() if self.report else None,
        }


def load_inputs(manifest_path: Path | None = None, checksums_path: Path | None = None) -> LoadedManifest:
    """Load the manifest (auto-detected when not given) and its registry.

    Raises:
        ConfigError: Missing/unreadable files.
        ManifestSchemaError: Schema violations.
    """
    path = manifest_path or find_manifest_file()
    if path is None:
        raise ConfigError("No provision.manifest.yaml found. Specify one with --manifest.")
    manifest = load_manifest(path)
    registry = load_checksums(checksums_path, manifest_path=path)
    return LoadedManifest(manifest=manifest, registry=registry, path=path.resolve())


def build_plan(loaded: LoadedManifest, selection: Selection | None = None) -> ExecutionPlan:
    """Validate and compile (raises ``ManifestValidationError`` / ``SelectionError``)."""
    return compile_plan(loaded.manifest, selection, loaded.registry)


def target_user(manifest: Manifest, settings: RuntimeSettings) -> str:
    return settings.target_user or manifest.defaults.user or getpass.getuser()


def make_runner(manifest: Manifest, settings: RuntimeSettings) -> CommandRunner:
    return ShellCommandRunner(target_user(manifest, settings))


def make_fetcher(settings: RuntimeSettings) -> InstallerFetcher:
    return CurlInstallerFetcher()


def build_engine(
    manifest: Manifest,
    settings: RuntimeSettings,
    *,
    on_progress: ProgressCallback | None = None,
    persist: bool = True,
) -> ExecutionEngine:
    return ExecutionEngine(
        make_runner(manifest, settings),
        make_fetcher(settings),
        command_timeout=settings.command_timeout,
        fetch_timeout=settings.fetch_timeout,
        history=RunHistory(settings.run_dir) if persist else None,
        on_progress=on_progress,
    )


def exit_code_for(report: RunReport) -> int:
    if report.status == RunStatus.INTERRUPTED:
        return EXIT_INTERRUPTED
    if report.status == RunStatus.FAILED:
        return EXIT_MODULE_FAILED
    return EXIT_OK


def run_provision(
    loaded: LoadedManifest,
    selection: Selection,
    settings: RuntimeSettings,
    *,
    state_machine: UpgradeStateMachine | None = None,
    target_version: str | None = None,
    on_progress: ProgressCallback | None = None,
    on_plan: Callable[[ExecutionPlan], None] | None = None,
) -> ProvisionResult:
    """Compile, pass the OS upgrade gate, then execute.

    Args:
        state_machine: When given, the OS upgrade runs (or resumes)
            first; module installation only proceeds once it reports
            ready. None skips the OS upgrade entirely.

    Raises:
        ManifestValidationError, SelectionError: Before anything runs.
        LockConflictError, UpgradeError, StaleStateError: From the upgrade gate.
    """
    plan = build_plan(loaded, selection)
    if on_plan is not None:
        on_plan(plan)

    result = ProvisionResult(plan=plan)

    if state_machine is not None:
        outcome = state_machine.start(target_version or settings.target_version)
        result.upgrade = outcome
        if not outcome.ready_for_install:
            # A scheduled or pending reboot is progress, not failure.
            waiting = outcome.stage == UpgradeStage.AWAITING_REBOOT
            result.exit_code = EXIT_OK if waiting else EXIT_MODULE_FAILED
            logger.info("Module installation deferred: %s", outcome.message)
            return result

    engine = build_engine(loaded.manifest, settings, on_progress=on_progress)
    report = engine.run(plan, loaded.manifest, loaded.registry)
    result.report = report
    result.exit_code = exit_code_for(report)
    return result


def run_doctor(
    loaded: LoadedManifest,
    selection: Selection,
    settings: RuntimeSettings,
    *,
    on_progress: ProgressCallback | None = None,
) -> RunReport:
    """Verify-only pass over the plan; installs nothing."""
    plan = build_plan(loaded, selection)
    engine = build_engine(loaded.manifest, settings, on_progress=on_progress, persist=False)
    return engine.verify(plan, loaded.manifest)
