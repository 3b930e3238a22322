"""
RunReport — the outcome of one execution of a plan.

Built incrementally by the engine and returned; persisted after every
module transition so a crash or interrupt leaves a diagnosable record.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

REPORT_SCHEMA_VERSION = 1


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class ModuleStatus(str, Enum):
    """Per-module state: pending → running → terminal."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"
    WARNING = "warning"
    NOT_ATTEMPTED = "not-attempted"
    INTERRUPTED = "interrupted"

    @property
    def is_terminal(self) -> bool:
        return self not in (ModuleStatus.PENDING, ModuleStatus.RUNNING)


class RunStatus(str, Enum):
    """Overall run state."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


class CommandRecord(BaseModel):
    """One command the engine ran for a module."""

    stage: str                      # installed_check, install, verified_installer, verify
    command: str
    run_as: str
    exit_code: int | None = None
    timed_out: bool = False
    duration_ms: int = 0
    output_tail: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class ModuleResult(BaseModel):
    """Terminal state of one module plus what led there."""

    module_id: str
    status: ModuleStatus = ModuleStatus.PENDING
    optional: bool = False
    reason: str = ""                # e.g. "already-satisfied"

    started_at: str | None = None
    ended_at: str | None = None
    duration_ms: int = 0

    commands: list[CommandRecord] = Field(default_factory=list)

    # ── Failure diagnostics ──────────────────────────────────────
    error: str | None = None
    failed_command: str | None = None
    exit_code: int | None = None
    output_tail: str = ""


class RunReport(BaseModel):
    """All module outcomes for one run, in plan order."""

    schema_version: int = REPORT_SCHEMA_VERSION
    run_id: str = ""
    manifest_id: str = ""
    mode: str = "install"           # install, doctor

    status: RunStatus = RunStatus.RUNNING
    started_at: str = Field(default_factory=_now_iso)
    ended_at: str | None = None
    duration_ms: int = 0

    modules: list[ModuleResult] = Field(default_factory=list)
    failed_module: str | None = None
    error: str | None = None

    def result_for(self, module_id: str) -> ModuleResult | None:
        for result in self.modules:
            if result.module_id == module_id:
                return result
        return None

    def count(self, status: ModuleStatus) -> int:
        return sum(1 for r in self.modules if r.status == status)

    def ids_with_status(self, status: ModuleStatus) -> list[str]:
        return [r.module_id for r in self.modules if r.status == status]

    @property
    def succeeded(self) -> int:
        return self.count(ModuleStatus.SUCCESS)

    @property
    def skipped(self) -> int:
        return self.count(ModuleStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return self.count(ModuleStatus.FAILED)

    @property
    def warnings(self) -> int:
        return self.count(ModuleStatus.WARNING)

    @property
    def all_ok(self) -> bool:
        return self.status == RunStatus.SUCCESS

    def summary(self) -> dict[str, int]:
        return {status.value: self.count(status) for status in ModuleStatus if self.count(status)}

    def to_dict(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data["summary"] = self.summary()
        return data
