"""
UpgradeState — the persisted record of a multi-hop OS upgrade.

Serialized to the system-level state file after every stage transition
and loaded fresh on every resume. Unknown fields are ignored so a newer
writer never breaks an older resume.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

UPGRADE_SCHEMA_VERSION = 1


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class UpgradeStage(str, Enum):
    NOT_STARTED = "not_started"
    PREPARING = "preparing"
    UPGRADING = "upgrading"
    AWAITING_REBOOT = "awaiting_reboot"
    RESUMING = "resuming"
    COMPLETED = "completed"


class UpgradeState(BaseModel):
    """Root upgrade state model."""

    model_config = ConfigDict(extra="ignore")

    # ── Schema ───────────────────────────────────────────────────
    schema_version: int = UPGRADE_SCHEMA_VERSION

    # ── Progress ─────────────────────────────────────────────────
    current_stage: UpgradeStage = UpgradeStage.NOT_STARTED
    original_version: str | None = None
    current_version: str | None = None
    target_version: str
    completed_hops: list[str] = Field(default_factory=list)
    needs_reboot: bool = False

    # ── Diagnostics ──────────────────────────────────────────────
    last_error: str | None = None

    # ── Timestamps ───────────────────────────────────────────────
    started_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)

    def touch(self) -> None:
        """Update the updated_at timestamp."""
        self.updated_at = _now_iso()

    @property
    def in_progress(self) -> bool:
        return self.current_stage not in (UpgradeStage.NOT_STARTED, UpgradeStage.COMPLETED)
