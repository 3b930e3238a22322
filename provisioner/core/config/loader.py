"""
Configuration loader — reads provision.manifest.yaml and checksums.yaml
into domain models.

Reads YAML, validates against Pydantic schemas, and returns typed
domain objects. Schema failures are reported per module and field so the
operator can find the offending entry without re-reading the whole file.
Graph-level checks (dependencies, cycles, phases) happen later, in the
validator.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ValidationError

from provisioner.core.errors import ConfigError, ManifestSchemaError, SchemaIssue
from provisioner.core.models.checksums import ChecksumRegistry
from provisioner.core.models.manifest import Manifest

logger = logging.getLogger(__name__)

MANIFEST_FILE = "provision.manifest.yaml"
CHECKSUMS_FILE = "checksums.yaml"


def find_manifest_file(start_dir: Path | None = None) -> Path | None:
    """Search for provision.manifest.yaml starting from a directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to the manifest, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / MANIFEST_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def _read_yaml_mapping(path: Path) -> dict[str, Any]:
    if not path.is_file():
        raise ConfigError(f"File not found: {path}")

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")
    return data


def _schema_issues(error: ValidationError, data: dict[str, Any]) -> list[SchemaIssue]:
    """Translate pydantic errors into (module id, field, message) triples."""
    modules = data.get("modules")
    issues: list[SchemaIssue] = []

    for err in error.errors():
        loc = list(err.get("loc", ()))
        message = err.get("msg", "invalid value")
        module_id: str | None = None

        if len(loc) >= 2 and loc[0] == "modules" and isinstance(loc[1], int):
            index = loc[1]
            module_id = f"#{index}"
            if isinstance(modules, list) and index < len(modules):
                raw_module = modules[index]
                if isinstance(raw_module, dict) and isinstance(raw_module.get("id"), str):
                    module_id = raw_module["id"]
            loc = loc[2:]

        field = ".".join(str(part) for part in loc) or "(module)"
        issues.append(SchemaIssue(module_id, field, message))

    return issues


def parse_manifest(data: dict[str, Any], source: str = "manifest") -> Manifest:
    """Validate an already-decoded manifest document.

    Raises:
        ManifestSchemaError: One issue per offending field.
    """
    try:
        return Manifest.model_validate(data)
    except ValidationError as e:
        raise ManifestSchemaError(_schema_issues(e, data), source=source) from e


def load_manifest(path: Path | None = None) -> Manifest:
    """Load and validate the module manifest.

    Args:
        path: Explicit manifest path. If None, searches upward from cwd.

    Raises:
        ConfigError: If the file is missing, unreadable or not YAML.
        ManifestSchemaError: If the document does not match the schema.
    """
    if path is None:
        path = find_manifest_file()

    if path is None:
        raise ConfigError(f"No {MANIFEST_FILE} found. Specify one with --manifest.")

    logger.debug("Loading manifest from %s", path)
    data = _read_yaml_mapping(path)
    manifest = parse_manifest(data, source=str(path))
    logger.info("Loaded manifest '%s' with %d modules", manifest.id, len(manifest.modules))
    return manifest


def load_checksums(path: Path | None = None, manifest_path: Path | None = None) -> ChecksumRegistry:
    """Load the pinned installer checksum registry.

    An explicit path must exist. Without one, ``checksums.yaml`` next to
    the manifest is used if present; otherwise the registry is empty (and
    any module referencing a verified installer fails validation).

    Raises:
        ConfigError: If the file is missing (explicit path) or invalid.
    """
    if path is None:
        if manifest_path is None:
            return ChecksumRegistry()
        candidate = manifest_path.parent / CHECKSUMS_FILE
        if not candidate.is_file():
            logger.debug("No %s next to %s", CHECKSUMS_FILE, manifest_path)
            return ChecksumRegistry()
        path = candidate

    data = _read_yaml_mapping(path)
    try:
        registry = ChecksumRegistry.model_validate(data)
    except ValidationError as e:
        issues = [
            SchemaIssue(
                str(err["loc"][1]) if len(err["loc"]) > 1 else None,
                ".".join(str(p) for p in err["loc"][2:]) or "(entry)",
                err["msg"],
            )
            for err in e.errors()
        ]
        raise ManifestSchemaError(issues, source=str(path)) from e

    logger.info("Loaded %d pinned installer checksum(s) from %s", len(registry.installers), path)
    return registry


def dump_model(model: BaseModel) -> str:
    """Render a model back to YAML (used by ``manifest show``)."""
    return yaml.safe_dump(model.model_dump(mode="json", exclude_defaults=True), sort_keys=False)
