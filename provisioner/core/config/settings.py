"""
Runtime settings — process-level knobs resolved from the environment.

Precedence: CLI flag  >  PROVISIONER_* env var  >  default.
The CLI builds a ``RuntimeSettings`` via ``from_env()`` and then
applies its own overrides with ``model_copy(update=...)``.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from provisioner.core.errors import ConfigError
from provisioner.core.persistence.lock import DEFAULT_LOCK_PATH
from provisioner.core.persistence.run_history import DEFAULT_RUN_DIR
from provisioner.core.persistence.upgrade_store import DEFAULT_STATE_DIR, DEFAULT_STATE_FILE

logger = logging.getLogger(__name__)

ENV_PREFIX = "PROVISIONER_"

DEFAULT_COMMAND_TIMEOUT = 900
DEFAULT_FETCH_TIMEOUT = 120
DEFAULT_UPGRADE_LOG = Path("/var/log/provisioner/upgrade_resume.log")
DEFAULT_MIN_DISK_MB = 5000
DEFAULT_NETWORK_CHECK_URL = "https://archive.ubuntu.com"
DEFAULT_TARGET_VERSION = "25.10"


class RuntimeSettings(BaseModel):
    """Resolved runtime configuration."""

    # ── Execution ────────────────────────────────────────────────
    command_timeout: int = Field(default=DEFAULT_COMMAND_TIMEOUT, gt=0)
    fetch_timeout: int = Field(default=DEFAULT_FETCH_TIMEOUT, gt=0)
    target_user: str | None = None

    # ── Paths ────────────────────────────────────────────────────
    state_dir: Path = DEFAULT_STATE_DIR
    lock_file: Path = DEFAULT_LOCK_PATH
    upgrade_log: Path = DEFAULT_UPGRADE_LOG
    run_dir: Path = DEFAULT_RUN_DIR

    # ── Upgrade preflight ────────────────────────────────────────
    min_disk_mb: int = Field(default=DEFAULT_MIN_DISK_MB, ge=0)
    network_check_url: str = DEFAULT_NETWORK_CHECK_URL
    target_version: str = DEFAULT_TARGET_VERSION

    @property
    def upgrade_state_path(self) -> Path:
        return self.state_dir / DEFAULT_STATE_FILE

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RuntimeSettings:
        """Build settings from PROVISIONER_* variables.

        Raises:
            ConfigError: If a variable holds an invalid value.
        """
        env = os.environ if environ is None else environ
        data: dict[str, str] = {}
        for field_name in cls.model_fields:
            value = env.get(ENV_PREFIX + field_name.upper())
            if value:
                data[field_name] = value

        try:
            settings = cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid {ENV_PREFIX}* environment setting: {e}") from e

        if data:
            logger.debug("Settings from environment: %s", sorted(data))
        return settings
