"""
Engine executor — the central provisioning loop.

Walks an ``ExecutionPlan`` strictly in order, one module at a time:

    installed_check → install (verified installer, then commands) → verify

and builds a ``RunReport`` as it goes. The report is persisted after
every module transition, so a crash, a halt or an interrupt always
leaves a diagnosable record behind.

Failure semantics:
    required module fails  → run halts, the rest are ``not-attempted``
    optional module fails  → ``warning``, the run continues (dependents
                             of that module are still attempted)
    checksum mismatch      → run halts, even for an optional module
    KeyboardInterrupt      → current module ``interrupted``, run
                             ``interrupted``, nothing further starts
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime

from provisioner.adapters.base import CommandResult, CommandRunner, InstallerFetcher
from provisioner.core.errors import ChecksumMismatch
from provisioner.core.models.checksums import ChecksumRegistry
from provisioner.core.models.manifest import Manifest, Module, RunAs, VerifiedInstaller
from provisioner.core.models.plan import ExecutionPlan
from provisioner.core.models.report import (
    CommandRecord,
    ModuleResult,
    ModuleStatus,
    RunReport,
    RunStatus,
)
from provisioner.core.persistence.run_history import RunHistory
from provisioner.core.services.provision.execution.checksum_verify import (
    runner_command,
    verify_content,
)

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 900
DEFAULT_FETCH_TIMEOUT = 120

ALREADY_SATISFIED = "already-satisfied"
CHECKSUM_MISMATCH = "checksum-mismatch"

ProgressCallback = Callable[[ModuleResult], None]


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def generate_run_id() -> str:
    """Generate a unique run ID."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    short = uuid.uuid4().hex[:6]
    return f"run-{now}-{short}"


class _StageFailed(Exception):
    """A module step failed; carries what the report needs."""

    def __init__(self, stage: str, message: str, result: CommandResult | None = None):
        super().__init__(message)
        self.stage = stage
        self.result = result


class ExecutionEngine:
    """Sequential plan executor.

    Args:
        runner: Executes commands under an execution context.
        fetcher: Downloads verified-installer content (only needed when
            the plan contains modules with a verified installer).
        command_timeout: Per-command timeout in seconds; a timeout is a
            failed command.
        history: Where reports are persisted. None disables persistence.
        on_progress: Called with each module result as it changes state.
    """

    def __init__(
        self,
        runner: CommandRunner,
        fetcher: InstallerFetcher | None = None,
        *,
        command_timeout: int = DEFAULT_COMMAND_TIMEOUT,
        fetch_timeout: int = DEFAULT_FETCH_TIMEOUT,
        history: RunHistory | None = None,
        on_progress: ProgressCallback | None = None,
    ):
        self._runner = runner
        self._fetcher = fetcher
        self._command_timeout = command_timeout
        self._fetch_timeout = fetch_timeout
        self._history = history
        self._on_progress = on_progress

    # ── Public API ──────────────────────────────────────────────

    def run(
        self,
        plan: ExecutionPlan,
        manifest: Manifest,
        registry: ChecksumRegistry | None = None,
    ) -> RunReport:
        """Install every module in the plan."""
        registry = registry if registry is not None else ChecksumRegistry()
        return self._execute(
            plan,
            manifest,
            mode="install",
            step=lambda module, result: self._install_module(module, result, registry),
        )

    def verify(self, plan: ExecutionPlan, manifest: Manifest) -> RunReport:
        """Doctor mode: run only verify commands, never install, never halt."""
        return self._execute(plan, manifest, mode="doctor", step=self._verify_only)

    # ── Loop ────────────────────────────────────────────────────

    def _execute(
        self,
        plan: ExecutionPlan,
        manifest: Manifest,
        *,
        mode: str,
        step: Callable[[Module, ModuleResult], None],
    ) -> RunReport:
        index = manifest.module_index()
        report = RunReport(
            run_id=generate_run_id(),
            manifest_id=manifest.id,
            mode=mode,
            modules=[ModuleResult(module_id=e.module_id, optional=e.optional) for e in plan.entries],
        )
        started = time.monotonic()
        halt_on_failure = mode == "install"
        halted = False
        logger.info("Run %s: %d module(s), mode=%s", report.run_id, len(report.modules), mode)
        self._persist(report)

        try:
            for result in report.modules:
                if halted:
                    result.status = ModuleStatus.NOT_ATTEMPTED
                    continue

                module = index[result.module_id]
                result.status = ModuleStatus.RUNNING
                result.started_at = _now_iso()
                self._transition(report, result)

                module_started = time.monotonic()
                step(module, result)
                result.ended_at = _now_iso()
                result.duration_ms = int((time.monotonic() - module_started) * 1000)
                self._transition(report, result)

                if result.status == ModuleStatus.FAILED:
                    report.failed_module = result.module_id
                    report.error = _failure_summary(result)
                    if halt_on_failure:
                        halted = True
                        logger.error("Required module '%s' failed; halting run", result.module_id)

        except KeyboardInterrupt:
            logger.warning("Interrupted; not starting further modules")
            for result in report.modules:
                if result.status == ModuleStatus.RUNNING:
                    result.status = ModuleStatus.INTERRUPTED
                    result.ended_at = _now_iso()
                    result.error = "interrupted by operator"
                elif result.status == ModuleStatus.PENDING:
                    result.status = ModuleStatus.NOT_ATTEMPTED
            report.status = RunStatus.INTERRUPTED
            report.error = "interrupted by operator"

        if report.status == RunStatus.RUNNING:
            report.status = RunStatus.FAILED if report.failed_module else RunStatus.SUCCESS

        report.ended_at = _now_iso()
        report.duration_ms = int((time.monotonic() - started) * 1000)
        self._persist(report)
        if self._history is not None:
            self._history.record(report)

        logger.info("Run %s finished: %s %s", report.run_id, report.status.value, report.summary())
        return report

    # ── Module steps ────────────────────────────────────────────

    def _install_module(self, module: Module, result: ModuleResult, registry: ChecksumRegistry) -> None:
        satisfied = False
        try:
            if module.installed_check is not None:
                check = self._run(
                    result,
                    "installed_check",
                    module.installed_check.command,
                    module.installed_check.run_as,
                )
                satisfied = check.ok

            if satisfied:
                logger.info("%s: already satisfied, skipping install", module.id)
            else:
                if module.verified_installer is not None:
                    self._run_verified_installer(module.verified_installer, module.run_as, result, registry)
                for command in module.install:
                    self._run_checked(result, "install", command, module.run_as)

            for command in module.verify:
                self._run_checked(result, "verify", command, module.run_as)

        except ChecksumMismatch as e:
            result.status = ModuleStatus.FAILED
            result.reason = CHECKSUM_MISMATCH
            result.error = str(e)
            result.failed_command = f"verified_installer:{e.tool}"
            logger.error("%s: %s", module.id, e)
            return
        except _StageFailed as e:
            self._mark_failed(module, result, e)
            return

        if satisfied:
            result.status = ModuleStatus.SKIPPED
            result.reason = ALREADY_SATISFIED
        else:
            result.status = ModuleStatus.SUCCESS
        logger.info("✓ %s → %s", module.id, result.status.value)

    def _verify_only(self, module: Module, result: ModuleResult) -> None:
        try:
            for command in module.verify:
                self._run_checked(result, "verify", command, module.run_as)
        except _StageFailed as e:
            self._mark_failed(module, result, e)
            return
        result.status = ModuleStatus.SUCCESS

    def _run_verified_installer(
        self,
        installer: VerifiedInstaller,
        run_as: RunAs,
        result: ModuleResult,
        registry: ChecksumRegistry,
    ) -> None:
        pinned = registry.get(installer.tool)
        if pinned is None:
            raise ChecksumMismatch(installer.tool, None)

        if self._fetcher is None:
            raise _StageFailed("verified_installer", "no installer fetcher configured")

        fetched = self._fetcher.fetch(pinned.url, timeout=self._fetch_timeout)
        if not fetched.ok:
            raise _StageFailed(
                "verified_installer",
                f"download of {pinned.url} failed: {fetched.error}",
            )

        # Raises before anything is executed; the bytes go out of scope unused.
        verified = verify_content(fetched.content, installer.tool, registry)

        self._run_checked(
            result,
            "verified_installer",
            runner_command(installer),
            run_as,
            input=verified.content,
        )

    # ── Helpers ─────────────────────────────────────────────────

    def _run(
        self,
        result: ModuleResult,
        stage: str,
        command: str,
        run_as: RunAs,
        input: bytes | None = None,
    ) -> CommandResult:
        outcome = self._runner.run(command, run_as, timeout=self._command_timeout, input=input)
        result.commands.append(
            CommandRecord(
                stage=stage,
                command=command,
                run_as=run_as.value,
                exit_code=outcome.exit_code,
                timed_out=outcome.timed_out,
                duration_ms=outcome.duration_ms,
                output_tail=outcome.output_tail(),
            )
        )
        return outcome

    def _run_checked(
        self,
        result: ModuleResult,
        stage: str,
        command: str,
        run_as: RunAs,
        input: bytes | None = None,
    ) -> CommandResult:
        outcome = self._run(result, stage, command, run_as, input=input)
        if not outcome.ok:
            raise _StageFailed(stage, f"{stage} command failed ({outcome.describe()})", outcome)
        return outcome

    def _mark_failed(self, module: Module, result: ModuleResult, failure: _StageFailed) -> None:
        result.status = ModuleStatus.WARNING if module.optional else ModuleStatus.FAILED
        result.error = str(failure)
        if failure.result is not None:
            result.failed_command = failure.result.command
            result.exit_code = failure.result.exit_code
            result.output_tail = failure.result.output_tail()
        log = logger.warning if module.optional else logger.error
        log("✗ %s: %s", module.id, failure)

    def _transition(self, report: RunReport, result: ModuleResult) -> None:
        self._persist(report)
        if self._on_progress is not None:
            self._on_progress(result)

    def _persist(self, report: RunReport) -> None:
        if self._history is None:
            return
        try:
            self._history.save_current(report)
        except OSError as e:
            logger.error("Could not persist run report: %s", e)


def _failure_summary(result: ModuleResult) -> str:
    """One block naming the module, the command, its exit code and output tail."""
    lines = [f"module '{result.module_id}' failed: {result.error}"]
    if result.failed_command:
        lines.append(f"command: {result.failed_command}")
    if result.exit_code is not None:
        lines.append(f"exit code: {result.exit_code}")
    if result.output_tail:
        lines.append(f"last output:\n{result.output_tail}")
    return "\n".join(lines)
