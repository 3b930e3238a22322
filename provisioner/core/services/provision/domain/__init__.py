"""
L1 Domain — ``__init__.py`` re-exports all pure domain functions.

These functions have NO subprocess calls, NO filesystem access,
NO network calls. Pure input→output.
"""

from provisioner.core.services.provision.domain.dag import (  # noqa: F401
    canonical_cycle,
    find_cycles,
    stable_topological_sort,
)
from provisioner.core.services.provision.domain.validation import (  # noqa: F401
    RESERVED_NAMES,
    DependencyCycle,
    DuplicateModuleId,
    MissingChecksum,
    MissingDependency,
    NameCollision,
    PhaseViolation,
    ReservedNameCollision,
    ValidationIssue,
    ValidationWarning,
    collect_warnings,
    validate_manifest,
)
