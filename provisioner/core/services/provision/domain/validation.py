"""
L1 Domain — manifest graph validation (pure).

``validate_manifest()`` runs every check to completion and returns the
full list of issues; callers must not execute anything unless the list
is empty. Checks, in order:

    1. duplicate ids
    2. dependency existence
    3. dependency cycles (three-color DFS)
    4. phase ordering (a dependency's phase ≤ its dependent's)
    5. generated-name collisions (with each other and with reserved names)
    6. pinned checksums for verified installers (when a registry is given)

``collect_warnings()`` reports non-fatal oddities separately.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar

from provisioner.core.models.checksums import ChecksumRegistry
from provisioner.core.models.manifest import Manifest, module_function_name
from provisioner.core.services.provision.domain.dag import find_cycles

# Categories whose ``install_<category>`` aggregate functions the
# orchestrator generates itself.
RESERVED_CATEGORIES = (
    "base", "users", "filesystem", "shell", "cli", "lang",
    "tools", "db", "cloud", "agents", "stack", "acfs",
)

RESERVED_NAMES: frozenset[str] = frozenset(
    {
        "install_all",
        "install_main",
        "install_phase",
        "install_module",
        "install_plan",
        "install_helpers",
    }
    | {f"install_{category}" for category in RESERVED_CATEGORIES}
)


# ── Issue types ─────────────────────────────────────────────────


@dataclass(frozen=True)
class ValidationIssue:
    """Base class for one validation finding."""

    kind: ClassVar[str] = "issue"

    @property
    def message(self) -> str:
        raise NotImplementedError

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        data = {k: v for k, v in self.__dict__.items()}
        return {"kind": self.kind, "message": self.message, **data}


@dataclass(frozen=True)
class DuplicateModuleId(ValidationIssue):
    kind: ClassVar[str] = "duplicate-id"
    module: str
    count: int

    @property
    def message(self) -> str:
        return f"Duplicate module id '{self.module}' (declared {self.count} times)"


@dataclass(frozen=True)
class MissingDependency(ValidationIssue):
    kind: ClassVar[str] = "missing-dependency"
    module: str
    missing: str

    @property
    def message(self) -> str:
        return f"Module '{self.module}' depends on unknown module '{self.missing}'"


@dataclass(frozen=True)
class DependencyCycle(ValidationIssue):
    kind: ClassVar[str] = "dependency-cycle"
    path: tuple[str, ...]

    @property
    def message(self) -> str:
        chain = " -> ".join((*self.path, self.path[0]))
        return f"Dependency cycle: {chain}"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "path": list(self.path)}


@dataclass(frozen=True)
class PhaseViolation(ValidationIssue):
    kind: ClassVar[str] = "phase-violation"
    module: str
    dependency: str
    phases: tuple[int, int]     # (module phase, dependency phase)

    @property
    def message(self) -> str:
        module_phase, dep_phase = self.phases
        return (
            f"Module '{self.module}' (phase {module_phase}) depends on "
            f"'{self.dependency}' (phase {dep_phase}); dependencies must be "
            f"in the same or an earlier phase"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "module": self.module,
            "dependency": self.dependency,
            "phases": list(self.phases),
        }


@dataclass(frozen=True)
class NameCollision(ValidationIssue):
    kind: ClassVar[str] = "name-collision"
    name: str
    modules: tuple[str, ...]

    @property
    def message(self) -> str:
        return f"Modules {', '.join(repr(m) for m in self.modules)} all generate '{self.name}'"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "name": self.name,
            "modules": list(self.modules),
        }


@dataclass(frozen=True)
class ReservedNameCollision(ValidationIssue):
    kind: ClassVar[str] = "reserved-name"
    module: str
    name: str

    @property
    def message(self) -> str:
        return f"Module '{self.module}' generates reserved name '{self.name}'"


@dataclass(frozen=True)
class MissingChecksum(ValidationIssue):
    kind: ClassVar[str] = "missing-checksum"
    module: str
    tool: str

    @property
    def message(self) -> str:
        return (
            f"Module '{self.module}' uses verified installer '{self.tool}' "
            f"but checksums.yaml has no entry for it"
        )


@dataclass(frozen=True)
class ValidationWarning:
    """A non-fatal finding."""

    module: str
    field: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"module": self.module, "field": self.field, "message": self.message}


# ── Checks ──────────────────────────────────────────────────────


def _dependency_graph(manifest: Manifest) -> dict[str, list[str]]:
    return {m.id: list(m.dependencies) for m in manifest.module_index().values()}


def check_duplicates(manifest: Manifest) -> list[ValidationIssue]:
    counts: dict[str, int] = {}
    for module in manifest.modules:
        counts[module.id] = counts.get(module.id, 0) + 1
    return [DuplicateModuleId(mid, n) for mid, n in counts.items() if n > 1]


def check_existence(manifest: Manifest) -> list[ValidationIssue]:
    index = manifest.module_index()
    issues: list[ValidationIssue] = []
    for module in index.values():
        for dep in module.dependencies:
            if dep not in index:
                issues.append(MissingDependency(module.id, dep))
    return issues


def check_cycles(manifest: Manifest) -> list[ValidationIssue]:
    graph = _dependency_graph(manifest)
    return [DependencyCycle(tuple(c)) for c in find_cycles(graph, graph.keys())]


def check_phases(manifest: Manifest) -> list[ValidationIssue]:
    index = manifest.module_index()
    issues: list[ValidationIssue] = []
    for module in index.values():
        for dep_id in module.dependencies:
            dep = index.get(dep_id)
            if dep is not None and dep.phase > module.phase:
                issues.append(PhaseViolation(module.id, dep.id, (module.phase, dep.phase)))
    return issues


def check_names(manifest: Manifest) -> list[ValidationIssue]:
    """Generated identifiers must be unique and must not shadow reserved ones.

    ``lang.bun`` and ``lang_bun`` both generate ``install_lang_bun``.
    Duplicate ids are reported by ``check_duplicates``, not here.
    """
    by_name: dict[str, list[str]] = {}
    issues: list[ValidationIssue] = []

    for module_id in manifest.module_index():
        name = module_function_name(module_id)
        by_name.setdefault(name, []).append(module_id)
        if name in RESERVED_NAMES:
            issues.append(ReservedNameCollision(module_id, name))

    for name, ids in by_name.items():
        if len(ids) > 1:
            issues.append(NameCollision(name, tuple(ids)))
    return issues


def check_checksums(manifest: Manifest, registry: ChecksumRegistry) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    for module in manifest.module_index().values():
        installer = module.verified_installer
        if installer is not None and installer.tool not in registry:
            issues.append(MissingChecksum(module.id, installer.tool))
    return issues


def validate_manifest(
    manifest: Manifest,
    registry: ChecksumRegistry | None = None,
) -> list[ValidationIssue]:
    """Run every graph check and return all issues (empty = valid).

    Args:
        manifest: Schema-valid manifest.
        registry: Pinned checksums. When None the checksum check is
            skipped (pure graph validation); the CLI always passes one.
    """
    issues: list[ValidationIssue] = []
    issues.extend(check_duplicates(manifest))
    issues.extend(check_existence(manifest))
    issues.extend(check_cycles(manifest))
    issues.extend(check_phases(manifest))
    issues.extend(check_names(manifest))
    if registry is not None:
        issues.extend(check_checksums(manifest, registry))
    return issues


def _looks_like_prose(command: str) -> bool:
    stripped = command.strip()
    return stripped.startswith('"') or "Ensure" in stripped or "Install " in stripped


def collect_warnings(manifest: Manifest) -> list[ValidationWarning]:
    """Non-fatal findings, e.g. install steps that read like descriptions."""
    warnings: list[ValidationWarning] = []
    for module in manifest.modules:
        if module.install and all(_looks_like_prose(c) for c in module.install):
            warnings.append(
                ValidationWarning(
                    module.id,
                    "install",
                    "Install commands appear to be descriptions, not actual commands",
                )
            )
        if module.optional and "critical" in module.tags:
            warnings.append(
                ValidationWarning(module.id, "optional", "Module is tagged critical but marked optional")
            )
    return warnings
