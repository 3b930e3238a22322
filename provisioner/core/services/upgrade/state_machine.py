"""
Upgrade state machine — multi-hop OS upgrades that survive reboots.

    not_started → preparing → upgrading → awaiting_reboot → resuming
                                  ↑                            │
                                  └──── more hops ─────────────┤
                                                               ↓
                                                           completed

Rules:
    - every transition happens under the PID lock file; a system that
      needs no upgrade is answered without it
    - state is persisted after every transition (``preparing`` excepted:
      a failed preflight leaves nothing behind)
    - ``awaiting_reboot`` is the recovery boundary; after it the process
      may die and ``resume()`` picks up from disk alone
    - the remaining hop path is always recomputed from the current
      version; a hop already in ``completed_hops`` is never re-run
    - if the persisted version disagrees with the system, stop with
      ``StaleStateError`` rather than guess
    - a failed hop gets one package-system recovery and one retry; if
      that fails too, a diagnostics dump is written and the hop fails
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from provisioner.core.errors import StaleStateError, UpgradeError
from provisioner.core.models.upgrade import UpgradeStage, UpgradeState
from provisioner.core.persistence.lock import LockFile
from provisioner.core.persistence.upgrade_store import UpgradeStateStore
from provisioner.core.services.upgrade.backend import StepResult, UpgradeBackend
from provisioner.core.services.upgrade.preflight import Check, run_preflight
from provisioner.core.services.upgrade.versions import (
    calculate_upgrade_path,
    normalize_version,
    version_gte,
)

logger = logging.getLogger(__name__)

DEFAULT_REBOOT_DELAY_MINUTES = 1


@dataclass
class UpgradeOutcome:
    """What an invocation of the state machine did, and what comes next."""

    stage: UpgradeStage
    message: str
    ready_for_install: bool = False
    reboot_scheduled: bool = False
    next_hop: str | None = None
    remaining_hops: list[str] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)
    state: UpgradeState | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "message": self.message,
            "ready_for_install": self.ready_for_install,
            "reboot_scheduled": self.reboot_scheduled,
            "next_hop": self.next_hop,
            "remaining_hops": self.remaining_hops,
            "reasons": self.reasons,
            "state": self.state.model_dump(mode="json") if self.state else None,
        }


class UpgradeStateMachine:
    """Drives OS upgrades hop by hop across reboots.

    Args:
        store: Persisted state location.
        lock: PID lock guarding every transition.
        backend: Host operations.
        checks: Preflight checks run in ``preparing``.
        edges: Release edge table (defaults to the supported releases).
        reboot_delay_minutes: Delay passed to the reboot scheduler.
    """

    def __init__(
        self,
        store: UpgradeStateStore,
        lock: LockFile,
        backend: UpgradeBackend,
        checks: list[Check] | None = None,
        edges: Mapping[str, str] | None = None,
        reboot_delay_minutes: int = DEFAULT_REBOOT_DELAY_MINUTES,
    ):
        self._store = store
        self._lock = lock
        self._backend = backend
        self._checks = checks or []
        self._edges = edges
        self._reboot_delay = reboot_delay_minutes

    # ── Queries ─────────────────────────────────────────────────

    def status(self) -> UpgradeState | None:
        """Persisted state, or None when no upgrade is in progress."""
        return self._store.load()

    def plan(self, target: str) -> list[str]:
        """Hops still needed to reach ``target`` from the running system."""
        current = self._backend.current_version()
        if current is None:
            return []
        return calculate_upgrade_path(current, target, self._edges)

    # ── Transitions ─────────────────────────────────────────────

    def start(self, target: str) -> UpgradeOutcome:
        """Begin (or continue) upgrading towards ``target``.

        A system that needs no upgrade is reported ready without taking
        the lock, so hosts where the lock path is not writable still
        proceed to module installation.

        Raises:
            LockConflictError: Another live process holds the lock.
            LockUnavailableError: The lock file cannot be created.
            UpgradeError: No upgrade path, or a hop failed.
            StaleStateError: Persisted state disagrees with the system.
        """
        existing = self._store.load()
        if existing is None or existing.current_stage == UpgradeStage.COMPLETED:
            current = self._backend.current_version()
            if current is None or version_gte(current, normalize_version(target)):
                return self._no_upgrade_needed(current, target)

        with self._lock:
            state = self._store.load()
            if state is not None and state.current_stage != UpgradeStage.COMPLETED:
                requested = normalize_version(target)
                if requested != state.target_version:
                    logger.warning(
                        "Upgrade in progress targets %s; ignoring requested target %s",
                        state.target_version, requested,
                    )
                if state.current_stage == UpgradeStage.AWAITING_REBOOT and self._backend.reboot_pending():
                    return UpgradeOutcome(
                        stage=state.current_stage,
                        message=(
                            f"Upgrade to {state.current_version} is waiting for a reboot; "
                            "installation resumes automatically afterwards"
                        ),
                        state=state,
                    )
                logger.info("Continuing upgrade in progress (stage=%s)", state.current_stage.value)
                return self._resume_locked(state, continue_install=False)

            current = self._backend.current_version()
            if current is None or version_gte(current, normalize_version(target)):
                return self._no_upgrade_needed(current, target)

            target = normalize_version(target)
            path = calculate_upgrade_path(current, target, self._edges)
            logger.info("Upgrade path %s → %s: %s", current, target, " → ".join(path))

            # ── preparing (never persisted) ──
            report = run_preflight(self._checks)
            if not report.ok:
                return UpgradeOutcome(
                    stage=UpgradeStage.NOT_STARTED,
                    message="Upgrade preflight failed",
                    reasons=report.reasons,
                    remaining_hops=path,
                )

            state = UpgradeState(
                current_stage=UpgradeStage.PREPARING,
                original_version=normalize_version(current),
                current_version=normalize_version(current),
                target_version=target,
            )
            return self._run_hop(state, path)

    def resume(self, continue_install: bool = True) -> UpgradeOutcome:
        """Reboot entry point: pick up from the persisted state.

        Idempotent: with no state on disk it reports that nothing is in
        progress and does nothing else.

        Args:
            continue_install: On completion, launch module installation
                through the backend.
        """
        with self._lock:
            state = self._store.load()
            if state is None:
                return UpgradeOutcome(
                    stage=UpgradeStage.NOT_STARTED,
                    message="No upgrade in progress",
                    ready_for_install=True,
                )
            return self._resume_locked(state, continue_install=continue_install)

    @staticmethod
    def _no_upgrade_needed(current: str | None, target: str) -> UpgradeOutcome:
        if current is None:
            message = "Not an Ubuntu system; skipping OS upgrade"
        else:
            message = f"Ubuntu {current} already meets target {normalize_version(target)}"
        return UpgradeOutcome(stage=UpgradeStage.NOT_STARTED, message=message, ready_for_install=True)

    # ── Internals (lock held) ───────────────────────────────────

    def _resume_locked(self, state: UpgradeState, *, continue_install: bool) -> UpgradeOutcome:
        state.current_stage = UpgradeStage.RESUMING
        state.needs_reboot = False
        self._store.save(state)

        actual = self._backend.current_version()
        expected = state.current_version
        if actual is None or expected is None or normalize_version(actual) != normalize_version(expected):
            self._fail(state, f"system reports {actual}, state expects {expected}")
            raise StaleStateError(
                "Persisted upgrade state does not match the running system",
                expected=expected,
                actual=actual,
                state_path=str(self._store.path),
            )

        if version_gte(actual, state.target_version):
            return self._complete(state, continue_install=continue_install)

        path = calculate_upgrade_path(actual, state.target_version, self._edges)
        if path[0] in state.completed_hops:
            self._fail(state, f"next hop {path[0]} is already recorded as completed")
            raise StaleStateError(
                f"Next hop {path[0]} is already recorded as completed",
                expected=path[0],
                actual=actual,
                state_path=str(self._store.path),
            )
        return self._run_hop(state, path)

    def _run_hop(self, state: UpgradeState, path: list[str]) -> UpgradeOutcome:
        hop = path[0]
        state.current_stage = UpgradeStage.UPGRADING
        state.last_error = None
        self._store.save(state)
        logger.info("Upgrading %s → %s (hop %d of %d)", state.current_version, hop, 1, len(path))

        result = self._backend.upgrade_to(hop)
        if not result.ok:
            result = self._recover_and_retry(hop, result)
        if not result.ok:
            dump = self._write_diagnostics()
            error = f"Upgrade to {hop} failed: {result.error}"
            if dump is not None:
                error += f" (diagnostics: {dump})"
            self._fail(state, error)
            self._notify(f"Upgrade to {hop} failed; manual attention needed")
            raise UpgradeError(
                error,
                stage=UpgradeStage.UPGRADING.value,
                command=result.command or None,
                output_tail=result.output_tail,
            )

        state.completed_hops.append(hop)
        state.current_version = hop
        state.needs_reboot = True
        state.current_stage = UpgradeStage.AWAITING_REBOOT
        self._store.save(state)

        hook = self._backend.install_resume_hook()
        if not hook.ok:
            self._fail(state, f"resume hook: {hook.error}")
            raise UpgradeError(
                f"Upgraded to {hop}, but the resume hook could not be installed: {hook.error}. "
                "Reboot manually and run 'provision upgrade resume'.",
                stage=UpgradeStage.AWAITING_REBOOT.value,
                command=hook.command or None,
                output_tail=hook.output_tail,
            )

        remaining = path[1:]
        self._notify(
            f"Upgraded to {hop}; "
            + (f"{len(remaining)} more release(s) to {state.target_version}" if remaining else "finishing")
        )

        reboot = self._backend.schedule_reboot(self._reboot_delay)
        if not reboot.ok:
            logger.warning("Could not schedule reboot: %s", reboot.error)

        return UpgradeOutcome(
            stage=UpgradeStage.AWAITING_REBOOT,
            message=(
                f"Upgraded to {hop}; "
                + ("rebooting to continue" if reboot.ok else "reboot manually to continue")
            ),
            reboot_scheduled=reboot.ok,
            next_hop=remaining[0] if remaining else None,
            remaining_hops=remaining,
            state=state,
        )

    def _complete(self, state: UpgradeState, *, continue_install: bool) -> UpgradeOutcome:
        state.current_stage = UpgradeStage.COMPLETED
        state.needs_reboot = False
        state.last_error = None
        self._store.save(state)
        logger.info(
            "OS upgrade complete: %s → %s (%d hop(s))",
            state.original_version, state.current_version, len(state.completed_hops),
        )

        cleanup = self._backend.cleanup()
        if not cleanup.ok:
            logger.warning("Upgrade cleanup incomplete: %s", cleanup.error)
        self._store.archive()

        message = f"Upgrade complete: now on {state.current_version}"
        if continue_install:
            launched = self._backend.continue_installation()
            if launched.ok:
                message += "; module installation started"
            else:
                logger.error("Could not start module installation: %s", launched.error)
                message += "; start module installation manually with 'provision run'"

        return UpgradeOutcome(
            stage=UpgradeStage.COMPLETED,
            message=message,
            ready_for_install=True,
            state=state,
        )

    def _fail(self, state: UpgradeState, error: str) -> None:
        state.last_error = error
        self._store.save(state)

    def _recover_and_retry(self, hop: str, failed: StepResult) -> StepResult:
        """One repair of the package system, then one more attempt at the hop."""
        logger.warning("Upgrade to %s failed (%s); attempting recovery", hop, failed.error)
        recovery = self._backend.recover()
        if not recovery.ok:
            logger.error("Recovery failed: %s", recovery.error)
            return failed
        logger.info("Recovery succeeded; retrying upgrade to %s", hop)
        return self._backend.upgrade_to(hop)

    def _write_diagnostics(self) -> Path | None:
        path = self._store.new_diagnostics_path()
        written = self._backend.write_diagnostics(path, self._store.raw())
        if not written.ok:
            logger.warning("Could not write upgrade diagnostics: %s", written.error)
            return None
        logger.warning("Upgrade diagnostics saved to %s", path)
        return path

    def _notify(self, message: str) -> None:
        notice = self._backend.update_notice(message)
        if not notice.ok:
            logger.warning("Could not update login notice: %s", notice.error)
