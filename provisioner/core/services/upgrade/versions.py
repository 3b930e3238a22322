"""
Release versions and multi-hop path calculation (pure).

Versions are ``YY.MM`` strings compared numerically (``24.04`` → 2404).
The path from ``current`` to ``target`` walks the release-edge table one
supported hop at a time, so it can be recomputed at any point from the
current version alone.
"""

from __future__ import annotations

import re
from collections.abc import Mapping

from provisioner.core.errors import UpgradeError

_VERSION_RE = re.compile(r"^(\d{2})\.(\d{1,2})$")

# Supported single-step upgrades: from → to
RELEASE_EDGES: dict[str, str] = {
    "22.04": "24.04",
    "24.04": "25.04",
    "24.10": "25.04",
    "25.04": "25.10",
}

DEFAULT_TARGET = "25.10"


def parse_version(version: str) -> int:
    """``"24.04"`` → 2404.

    Raises:
        UpgradeError: If the string is not ``YY.MM``.
    """
    match = _VERSION_RE.match(version.strip())
    if not match:
        raise UpgradeError(f"Invalid Ubuntu version '{version}' (expected YY.MM)")
    major, minor = int(match.group(1)), int(match.group(2))
    return major * 100 + minor


def normalize_version(version: str) -> str:
    """``"24.4"`` → ``"24.04"``."""
    number = parse_version(version)
    return f"{number // 100:02d}.{number % 100:02d}"


def version_gte(a: str, b: str) -> bool:
    return parse_version(a) >= parse_version(b)


def is_lts(version: str) -> bool:
    """LTS releases are even years, April."""
    number = parse_version(version)
    return (number // 100) % 2 == 0 and number % 100 == 4


def calculate_upgrade_path(
    current: str,
    target: str,
    edges: Mapping[str, str] | None = None,
) -> list[str]:
    """Ordered intermediate versions to visit from ``current`` to ``target``.

    Returns an empty list when ``current`` is already at or past
    ``target``. Never skips a release the edge table does not allow.

    Raises:
        UpgradeError: If no supported path exists.
    """
    table = {normalize_version(k): normalize_version(v) for k, v in (edges or RELEASE_EDGES).items()}
    current = normalize_version(current)
    target = normalize_version(target)
    target_number = parse_version(target)

    path: list[str] = []
    version = current
    while parse_version(version) < target_number:
        nxt = table.get(version)
        if nxt is None:
            raise UpgradeError(
                f"Cannot determine upgrade path from {current} to {target}: "
                f"no supported upgrade from {version}"
            )
        if parse_version(nxt) > target_number:
            raise UpgradeError(
                f"Cannot determine upgrade path from {current} to {target}: "
                f"{version} upgrades to {nxt}, past the target"
            )
        path.append(nxt)
        version = nxt

    return path
