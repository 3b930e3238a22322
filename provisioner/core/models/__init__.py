"""
Domain models — Pydantic types for the provisioner.

All models are re-exported here for convenient access:

    from provisioner.core.models import Manifest, Module, ExecutionPlan, RunReport
"""

from provisioner.core.models.checksums import ChecksumRegistry, InstallerChecksum
from provisioner.core.models.manifest import (
    InstalledCheck,
    Manifest,
    ManifestDefaults,
    Module,
    RunAs,
    VerifiedInstaller,
)
from provisioner.core.models.plan import (
    ExecutionPlan,
    InclusionReason,
    PlanEntry,
    PlanExclusion,
    Selection,
)
from provisioner.core.models.report import (
    CommandRecord,
    ModuleResult,
    ModuleStatus,
    RunReport,
    RunStatus,
)
from provisioner.core.models.upgrade import UpgradeStage, UpgradeState

__all__ = [
    # checksums.py
    "ChecksumRegistry",
    "InstallerChecksum",
    # manifest.py
    "InstalledCheck",
    "Manifest",
    "ManifestDefaults",
    "Module",
    "RunAs",
    "VerifiedInstaller",
    # plan.py
    "ExecutionPlan",
    "InclusionReason",
    "PlanEntry",
    "PlanExclusion",
    "Selection",
    # report.py
    "CommandRecord",
    "ModuleResult",
    "ModuleStatus",
    "RunReport",
    "RunStatus",
    # upgrade.py
    "UpgradeStage",
    "UpgradeState",
]
