"""
Run history — user-level record of provisioning runs.

Two files under the run directory:

    last_run.json     the current/most recent RunReport, rewritten after
                      every module transition (a crash leaves a partial
                      report behind for diagnosis)
    history.ndjson    append-only ledger, one summary line per finished run
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from provisioner.core.models.report import RunReport
from provisioner.core.persistence.state_file import atomic_write_json, read_json

logger = logging.getLogger(__name__)

DEFAULT_RUN_DIR = Path.home() / ".local" / "share" / "provisioner"
LAST_RUN_FILE = "last_run.json"
HISTORY_FILE = "history.ndjson"


class RunSummary(BaseModel):
    """A single history ledger entry."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    run_id: str = ""
    manifest_id: str = ""
    mode: str = ""
    status: str = ""
    duration_ms: int = 0

    modules_total: int = 0
    succeeded: int = 0
    skipped: int = 0
    warnings: int = 0
    failed: int = 0

    failed_module: str | None = None
    error: str | None = None

    @classmethod
    def from_report(cls, report: RunReport) -> RunSummary:
        return cls(
            run_id=report.run_id,
            manifest_id=report.manifest_id,
            mode=report.mode,
            status=report.status.value,
            duration_ms=report.duration_ms,
            modules_total=len(report.modules),
            succeeded=report.succeeded,
            skipped=report.skipped,
            warnings=report.warnings,
            failed=report.failed,
            failed_module=report.failed_module,
            error=report.error,
        )


class RunHistory:
    """Reads and writes run reports in the user-level run directory."""

    def __init__(self, run_dir: Path | None = None):
        self._dir = run_dir or DEFAULT_RUN_DIR

    @property
    def directory(self) -> Path:
        return self._dir

    @property
    def last_run_path(self) -> Path:
        return self._dir / LAST_RUN_FILE

    @property
    def history_path(self) -> Path:
        return self._dir / HISTORY_FILE

    def save_current(self, report: RunReport) -> None:
        """Persist the in-progress (or final) report."""
        atomic_write_json(self.last_run_path, report.to_dict())

    def record(self, report: RunReport) -> None:
        """Append a finished run to the history ledger."""
        entry = RunSummary.from_report(report)
        line = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False) + "\n"
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            with self.history_path.open("a", encoding="utf-8") as f:
                f.write(line)
            logger.debug("History entry written: %s (%s)", entry.run_id, entry.status)
        except OSError as e:
            logger.error("Failed to write history entry: %s", e)

    def load_last(self) -> RunReport | None:
        """Load the most recent report, or None if there is none (or it is unreadable)."""
        try:
            data = read_json(self.last_run_path)
        except (OSError, ValueError) as e:
            logger.warning("Cannot read %s: %s", self.last_run_path, e)
            return None
        if data is None:
            return None
        data.pop("summary", None)
        try:
            return RunReport.model_validate(data)
        except ValidationError as e:
            logger.warning("Ignoring malformed run report %s: %s", self.last_run_path, e)
            return None

    def read_recent(self, n: int = 20) -> list[RunSummary]:
        """Read the most recent N ledger entries, oldest first."""
        if not self.history_path.is_file():
            return []

        entries: list[RunSummary] = []
        try:
            with self.history_path.open("r", encoding="utf-8") as f:
                for line_num, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entries.append(RunSummary.model_validate(json.loads(line)))
                    except (ValueError, ValidationError) as e:
                        logger.warning("Skipping corrupt history entry at line %d: %s", line_num, e)
        except OSError as e:
            logger.error("Failed to read run history: %s", e)

        return entries[-n:]

    def summaries_as_dicts(self, n: int = 20) -> list[dict[str, Any]]:
        return [s.model_dump(mode="json") for s in self.read_recent(n)]
