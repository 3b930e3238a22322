"""
L2 Resolver — plan compilation.

``compile_plan(manifest, selection)`` is the only way to obtain an
``ExecutionPlan``. It validates the manifest first (refusing to produce
a plan for an invalid one), then:

    1. seed set: what the selection names (or the defaults)
    2. skips removed from the seeds
    3. dependency closure (a skipped dependency is an error)
    4. phase-bucketed stable topological order, declaration order as
       tie-break

The result is a pure function of (manifest, selection, registry).
"""

from __future__ import annotations

import logging
from collections import deque

from provisioner.core.errors import ManifestValidationError, SelectionError, UnsatisfiableExclusion
from provisioner.core.models.checksums import ChecksumRegistry
from provisioner.core.models.manifest import Manifest
from provisioner.core.models.plan import (
    ExecutionPlan,
    InclusionReason,
    PlanEntry,
    PlanExclusion,
    Selection,
)
from provisioner.core.services.provision.domain.dag import stable_topological_sort
from provisioner.core.services.provision.domain.validation import validate_manifest
from provisioner.core.services.provision.resolver.selection import resolve_seeds, resolve_skips

logger = logging.getLogger(__name__)


def compile_plan(
    manifest: Manifest,
    selection: Selection | None = None,
    registry: ChecksumRegistry | None = None,
) -> ExecutionPlan:
    """Compile a validated, ordered execution plan.

    Args:
        manifest: Schema-valid manifest.
        selection: Operator selection (empty = defaults).
        registry: Pinned checksums, forwarded to validation.

    Raises:
        ManifestValidationError: If the manifest graph is invalid.
        SelectionError: If the selection is unknown or unsatisfiable.
    """
    selection = selection or Selection()

    issues = validate_manifest(manifest, registry)
    if issues:
        raise ManifestValidationError(issues)

    index = manifest.module_index()
    rank = manifest.declaration_order()
    graph = {mid: list(m.dependencies) for mid, m in index.items()}

    seeds, excluded = resolve_seeds(manifest, selection)
    skipped = resolve_skips(manifest, selection)

    # ── Seeds minus skips ───────────────────────────────────────
    included: dict[str, tuple[InclusionReason, str]] = {}
    for seed in seeds:
        if seed.module_id in skipped:
            continue
        included[seed.module_id] = (seed.reason, seed.detail)

    # ── Dependency closure ──────────────────────────────────────
    conflicts: list[UnsatisfiableExclusion] = []
    queue = deque(sorted(included, key=rank.__getitem__))
    visited = set(queue)
    while queue:
        current = queue.popleft()
        for dep in graph[current]:
            if dep in skipped:
                conflict = UnsatisfiableExclusion(dep, current)
                if conflict not in conflicts:
                    conflicts.append(conflict)
                continue
            if dep not in included:
                included[dep] = (InclusionReason.DEPENDENCY_CLOSURE, f"required by {current}")
            if dep not in visited:
                visited.add(dep)
                queue.append(dep)

    if conflicts:
        raise SelectionError("Selection excludes modules that included modules depend on:", conflicts)

    # ── Ordering ────────────────────────────────────────────────
    buckets: dict[int, list[str]] = {}
    for mid in included:
        buckets.setdefault(index[mid].phase, []).append(mid)

    ordered: list[str] = []
    for phase in sorted(buckets):
        ordered.extend(stable_topological_sort(buckets[phase], graph, rank))

    entries = [
        PlanEntry(
            module_id=mid,
            phase=index[mid].phase,
            reason=included[mid][0],
            detail=included[mid][1],
            optional=index[mid].optional,
        )
        for mid in ordered
    ]

    # ── Exclusions ──────────────────────────────────────────────
    fallback = "filtered by phase" if selection.only_phases and not selection.only else "not selected"
    exclusions: list[PlanExclusion] = []
    for mid in index:
        if mid in included:
            continue
        reason = skipped.get(mid) or excluded.get(mid) or fallback
        exclusions.append(PlanExclusion(module_id=mid, reason=reason))

    plan = ExecutionPlan(
        manifest_id=manifest.id,
        manifest_version=manifest.version,
        selection=selection,
        entries=entries,
        excluded=exclusions,
    )
    logger.info(
        "Compiled plan for '%s': %d module(s), %d excluded",
        manifest.id, len(entries), len(exclusions),
    )
    return plan
