"""
Upgrade state store — the single source of truth across reboots.

Lives at a fixed, root-owned, system-level path. A corrupt or
unreadable file is never silently reset: the machine is mid-upgrade
and guessing would be worse than stopping.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from provisioner.core.errors import StaleStateError
from provisioner.core.models.upgrade import UPGRADE_SCHEMA_VERSION, UpgradeState
from provisioner.core.persistence.state_file import atomic_write_json, read_json

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = Path("/var/lib/provisioner")
DEFAULT_STATE_FILE = "upgrade_state.json"
ARCHIVE_DIR = "archive"
DIAGNOSTICS_DIR = "diagnostics"


class UpgradeStateStore:
    """Load, save and archive the persisted ``UpgradeState``."""

    def __init__(self, path: Path | None = None):
        self._path = path or DEFAULT_STATE_DIR / DEFAULT_STATE_FILE

    @property
    def path(self) -> Path:
        return self._path

    @property
    def archive_dir(self) -> Path:
        return self._path.parent / ARCHIVE_DIR

    @property
    def diagnostics_dir(self) -> Path:
        return self._path.parent / DIAGNOSTICS_DIR

    def new_diagnostics_path(self) -> Path:
        """Timestamped path for a failure diagnostics dump."""
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")
        return self.diagnostics_dir / f"upgrade_diagnostic_{stamp}.txt"

    def exists(self) -> bool:
        return self._path.is_file()

    def load(self) -> UpgradeState | None:
        """Load the persisted state.

        Returns:
            The state, or None if no upgrade has been started.

        Raises:
            StaleStateError: If the file exists but cannot be parsed.
        """
        try:
            data = read_json(self._path)
        except (OSError, ValueError) as e:
            # json.JSONDecodeError is a ValueError
            raise StaleStateError(
                f"Upgrade state file is unreadable: {e}",
                state_path=str(self._path),
            ) from e

        if data is None:
            return None

        version = data.get("schema_version", 0)
        if isinstance(version, int) and version > UPGRADE_SCHEMA_VERSION:
            logger.warning(
                "Upgrade state %s has schema_version %s (newer than %s); unknown fields ignored",
                self._path, version, UPGRADE_SCHEMA_VERSION,
            )

        try:
            state = UpgradeState.model_validate(data)
        except ValidationError as e:
            raise StaleStateError(
                f"Upgrade state file does not match the expected schema: {e}",
                state_path=str(self._path),
            ) from e

        logger.debug("Loaded upgrade state from %s (stage=%s)", self._path, state.current_stage.value)
        return state

    def save(self, state: UpgradeState) -> None:
        """Persist the state atomically (root-only permissions)."""
        state.touch()
        atomic_write_json(self._path, state.model_dump(mode="json"), mode=0o600)
        logger.info(
            "Upgrade state persisted: stage=%s current=%s target=%s",
            state.current_stage.value, state.current_version, state.target_version,
        )

    def archive(self) -> Path | None:
        """Move the state file into ``archive/`` with a timestamp suffix.

        Returns:
            The archived path, or None if there was nothing to archive.
        """
        if not self._path.is_file():
            return None

        self.archive_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")
        dest = self.archive_dir / f"{self._path.stem}_{stamp}{self._path.suffix}"
        self._path.replace(dest)
        logger.info("Archived upgrade state to %s", dest)
        return dest

    def raw(self) -> str | None:
        """Raw file content, for diagnostics."""
        if not self._path.is_file():
            return None
        try:
            return json.dumps(json.loads(self._path.read_text(encoding="utf-8")), indent=2)
        except (OSError, ValueError):
            return self._path.read_text(encoding="utf-8", errors="replace")
