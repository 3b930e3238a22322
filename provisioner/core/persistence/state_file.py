"""
State file persistence — atomic JSON read/write.

Every JSON document the provisioner persists (upgrade state, run
reports) goes through here. Writes are atomic (write to temp file in
the same directory, then rename) so a crash or power loss mid-write
leaves either the old document or the new one, never a torn file.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def atomic_write_json(path: Path, data: dict[str, Any], *, mode: int | None = None) -> None:
    """Write a JSON document atomically.

    Args:
        path: Target path. Parent directories are created.
        data: JSON-serializable mapping.
        mode: Optional permission bits applied before the rename.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"

    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".state_", suffix=".tmp")
    tmp = Path(tmp_path)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            tmp.chmod(mode)
        tmp.replace(path)
        logger.debug("State saved to %s", path)
    except Exception as e:
        tmp.unlink(missing_ok=True)
        logger.error("Failed to save state to %s: %s", path, e)
        raise


def read_json(path: Path) -> dict[str, Any] | None:
    """Read a JSON document.

    Returns:
        The decoded mapping, or None if the file does not exist.

    Raises:
        ValueError: If the file exists but is not a JSON object.
        OSError: If the file exists but cannot be read.
    """
    if not path.is_file():
        return None

    raw = path.read_text(encoding="utf-8")
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data
