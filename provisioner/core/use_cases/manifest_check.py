"""
Manifest check use case — validate the manifest and report every issue.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from provisioner.core.errors import ConfigError, ManifestSchemaError
from provisioner.core.models.manifest import Manifest
from provisioner.core.services.provision.domain.validation import (
    ValidationIssue,
    ValidationWarning,
    collect_warnings,
    validate_manifest,
)
from provisioner.core.use_cases.provision import load_inputs


@dataclass
class ManifestCheckResult:
    """Result of manifest validation."""

    valid: bool = False
    manifest: Manifest | None = None
    manifest_path: Path | None = None
    errors: list[str] = field(default_factory=list)
    issues: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationWarning] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "manifest_path": str(self.manifest_path) if self.manifest_path else None,
            "manifest_id": self.manifest.id if self.manifest else None,
            "module_count": len(self.manifest.modules) if self.manifest else 0,
            "errors": self.errors,
            "issues": [i.to_dict() for i in self.issues],
            "warnings": [w.to_dict() for w in self.warnings],
        }


def check_manifest(
    manifest_path: Path | None = None,
    checksums_path: Path | None = None,
) -> ManifestCheckResult:
    """Load, schema-check and graph-validate the manifest.

    Never raises for an invalid manifest; everything found is reported.
    """
    result = ManifestCheckResult()

    try:
        loaded = load_inputs(manifest_path, checksums_path)
    except ManifestSchemaError as e:
        result.errors.extend(str(issue) for issue in e.issues)
        return result
    except ConfigError as e:
        result.errors.append(str(e))
        return result

    result.manifest = loaded.manifest
    result.manifest_path = loaded.path
    result.issues = validate_manifest(loaded.manifest, loaded.registry)
    result.warnings = collect_warnings(loaded.manifest)
    result.valid = not result.issues
    return result
