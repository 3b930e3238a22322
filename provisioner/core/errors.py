"""
Error taxonomy — every fatal path the provisioner can take.

Validation and selection errors are raised before any side effect.
Execution failures are NOT raised by adapters (they come back as
results); the engine turns them into module outcomes. The CLI maps
each exception type to a process exit code.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from provisioner.core.services.provision.domain.validation import ValidationIssue

# ── Exit codes ──────────────────────────────────────────────────

EXIT_OK = 0
EXIT_MODULE_FAILED = 1
EXIT_INVALID_MANIFEST = 2
EXIT_LOCK_CONFLICT = 3
EXIT_INTERRUPTED = 130


class ProvisionerError(Exception):
    """Base class for all provisioner errors."""

    def to_dict(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "message": str(self)}


class ConfigError(ProvisionerError):
    """Raised when a manifest or registry file is missing or unreadable."""


class SchemaIssue:
    """One schema problem, located by module id and field."""

    __slots__ = ("module_id", "field", "message")

    def __init__(self, module_id: str | None, field: str, message: str):
        self.module_id = module_id
        self.field = field
        self.message = message

    def __str__(self) -> str:
        where = f"module '{self.module_id}'" if self.module_id else "manifest"
        return f"{where}: {self.field}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {"module": self.module_id, "field": self.field, "message": self.message}


class ManifestSchemaError(ConfigError):
    """Raised when the manifest document does not match the schema."""

    def __init__(self, issues: list[SchemaIssue], source: str = "manifest"):
        self.issues = issues
        self.source = source
        lines = "\n".join(f"  - {issue}" for issue in issues)
        super().__init__(f"Invalid {source} ({len(issues)} issue(s)):\n{lines}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "ManifestSchemaError",
            "source": self.source,
            "issues": [i.to_dict() for i in self.issues],
        }


class ManifestValidationError(ProvisionerError):
    """Raised when graph validation reports one or more errors.

    Carries the complete issue list; never raised for a single issue
    while others are still unchecked.
    """

    def __init__(self, issues: list[ValidationIssue]):
        self.issues = issues
        lines = "\n".join(f"  - {issue.message}" for issue in issues)
        super().__init__(f"Manifest validation failed ({len(issues)} error(s)):\n{lines}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "ManifestValidationError",
            "issues": [i.to_dict() for i in self.issues],
        }


class UnsatisfiableExclusion:
    """A skipped module that an included module still depends on."""

    __slots__ = ("excluded", "dependent")

    def __init__(self, excluded: str, dependent: str):
        self.excluded = excluded
        self.dependent = dependent

    def __str__(self) -> str:
        return (
            f"'{self.dependent}' depends on skipped module '{self.excluded}' "
            f"(remove --skip {self.excluded} or leave out {self.dependent})"
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, UnsatisfiableExclusion):
            return NotImplemented
        return (self.excluded, self.dependent) == (other.excluded, other.dependent)

    def __hash__(self) -> int:
        return hash((self.excluded, self.dependent))

    def to_dict(self) -> dict[str, Any]:
        return {"excluded": self.excluded, "dependent": self.dependent}


class SelectionError(ProvisionerError):
    """Raised when a selection cannot be turned into a plan."""

    def __init__(
        self,
        message: str,
        conflicts: list[UnsatisfiableExclusion] | None = None,
    ):
        self.conflicts = conflicts or []
        if self.conflicts:
            details = "\n".join(f"  - {c}" for c in self.conflicts)
            message = f"{message}\n{details}"
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "SelectionError",
            "message": str(self),
            "conflicts": [c.to_dict() for c in self.conflicts],
        }


class ChecksumMismatch(ProvisionerError):
    """Fetched installer content does not match its pinned digest."""

    def __init__(
        self,
        tool: str,
        expected: str | None,
        actual: str | None = None,
        url: str | None = None,
    ):
        self.tool = tool
        self.expected = expected
        self.actual = actual
        self.url = url
        if expected is None:
            message = f"No pinned checksum for installer '{tool}'; refusing to execute"
        else:
            message = (
                f"SHA256 mismatch for installer '{tool}'"
                + (f" ({url})" if url else "")
                + f"\nExpected: {expected}\nGot:      {actual}"
                + "\nThe content was discarded. Update checksums.yaml only after"
                " reviewing the upstream change."
            )
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "ChecksumMismatch",
            "tool": self.tool,
            "url": self.url,
            "expected_sha256": self.expected,
            "actual_sha256": self.actual,
        }


class LockConflictError(ProvisionerError):
    """Another live process holds the upgrade lock."""

    def __init__(self, path: str, holder_pid: int | None):
        self.path = path
        self.holder_pid = holder_pid
        holder = f"PID {holder_pid}" if holder_pid is not None else "an unknown process"
        super().__init__(f"Another upgrade is in progress ({holder} holds {path})")

    def to_dict(self) -> dict[str, Any]:
        return {"error": "LockConflictError", "lock": self.path, "holder_pid": self.holder_pid}


class LockUnavailableError(ProvisionerError):
    """The upgrade lock file cannot be created (permissions, read-only fs)."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot create upgrade lock {path}: {reason}")

    def to_dict(self) -> dict[str, Any]:
        return {"error": "LockUnavailableError", "lock": self.path, "reason": self.reason}


class StaleStateError(ProvisionerError):
    """Persisted upgrade state disagrees with the actual system."""

    def __init__(
        self,
        message: str,
        expected: str | None = None,
        actual: str | None = None,
        state_path: str | None = None,
    ):
        self.expected = expected
        self.actual = actual
        self.state_path = state_path
        if expected is not None or actual is not None:
            message = f"{message} (expected version {expected}, system reports {actual})"
        if state_path:
            message = f"{message}\nInspect or remove {state_path} after checking the system manually."
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "StaleStateError",
            "message": str(self),
            "expected_version": self.expected,
            "actual_version": self.actual,
            "state_path": self.state_path,
        }


class UpgradeError(ProvisionerError):
    """An OS upgrade stage failed."""

    def __init__(
        self,
        message: str,
        stage: str | None = None,
        command: str | None = None,
        output_tail: str = "",
    ):
        self.stage = stage
        self.command = command
        self.output_tail = output_tail
        parts = [message]
        if stage:
            parts.append(f"stage: {stage}")
        if command:
            parts.append(f"command: {command}")
        if output_tail:
            parts.append(f"last output:\n{output_tail}")
        super().__init__("\n".join(parts))

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "UpgradeError",
            "message": str(self),
            "stage": self.stage,
            "command": self.command,
            "output_tail": self.output_tail,
        }
