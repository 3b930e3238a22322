"""
L2 Resolver — selection parsing.

Turns the operator's ``--only`` / ``--only-phase`` / ``--skip*`` tokens
into concrete module ids against one manifest. Every token must match
something; an unknown selector is an error, never silently ignored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from provisioner.core.errors import SelectionError
from provisioner.core.models.manifest import MAX_PHASE, MIN_PHASE, Manifest
from provisioner.core.models.plan import InclusionReason, Selection

logger = logging.getLogger(__name__)

PHASE_NAMES: dict[str, int] = {
    "base": 1,
    "users": 2,
    "filesystem": 3,
    "shell": 4,
    "cli": 5,
    "lang": 6,
    "agents": 7,
    "cloud": 8,
    "stack": 9,
    "finalize": 10,
}

_PREFIXES = ("id:", "tag:", "category:")


@dataclass(frozen=True)
class Seed:
    """A module picked directly by the selection, before closure."""

    module_id: str
    reason: InclusionReason
    detail: str = ""


def parse_phase(token: str) -> int:
    """``"6"`` or ``"lang"`` → 6.

    Raises:
        SelectionError: For anything outside 1–10 or an unknown name.
    """
    value = token.strip().lower()
    if value in PHASE_NAMES:
        return PHASE_NAMES[value]
    try:
        phase = int(value)
    except ValueError:
        known = ", ".join(PHASE_NAMES)
        raise SelectionError(f"Unknown phase '{token}' (use {MIN_PHASE}-{MAX_PHASE} or one of: {known})") from None
    if not MIN_PHASE <= phase <= MAX_PHASE:
        raise SelectionError(f"Phase {phase} is out of range ({MIN_PHASE}-{MAX_PHASE})")
    return phase


def _alias_index(manifest: Manifest) -> dict[str, str]:
    aliases: dict[str, str] = {}
    for module in manifest.module_index().values():
        for alias in module.aliases:
            aliases.setdefault(alias, module.id)
    return aliases


def _match_only_token(manifest: Manifest, token: str) -> list[Seed]:
    """Resolve one ``--only`` token to seeds (in declaration order)."""
    index = manifest.module_index()
    modules = list(index.values())

    kind = None
    name = token
    for prefix in _PREFIXES:
        if token.startswith(prefix):
            kind, name = prefix[:-1], token[len(prefix):]
            break

    if kind in (None, "id"):
        module_id = name if name in index else _alias_index(manifest).get(name)
        if module_id is not None:
            return [Seed(module_id, InclusionReason.EXPLICIT)]
        if kind == "id":
            raise SelectionError(f"Unknown module id in --only: {name}")

    if kind in (None, "category"):
        matched = [m.id for m in modules if m.effective_category == name]
        if matched:
            return [Seed(mid, InclusionReason.CATEGORY_MATCH, f"category:{name}") for mid in matched]
        if kind == "category":
            raise SelectionError(f"Unknown category in --only: {name}")

    matched = [m.id for m in modules if name in m.tags]
    if matched:
        return [Seed(mid, InclusionReason.TAG_MATCH, f"tag:{name}") for mid in matched]
    if kind == "tag":
        raise SelectionError(f"Unknown tag in --only: {name}")
    raise SelectionError(f"--only '{token}' matches no module id, category or tag")


def resolve_seeds(manifest: Manifest, selection: Selection) -> tuple[list[Seed], dict[str, str]]:
    """Compute the seed set and the exclusions it already implies.

    ``--only`` takes precedence over ``--only-phase``; with neither,
    every ``enabled_by_default`` module is a seed.

    Returns:
        (seeds in first-match order, {module id: exclusion reason})
    """
    seeds: dict[str, Seed] = {}
    excluded: dict[str, str] = {}

    if selection.only:
        if selection.only_phases:
            logger.warning("--only given; ignoring --only-phase %s", ", ".join(selection.only_phases))
        for token in selection.only:
            token = token.strip()
            if not token:
                continue
            for seed in _match_only_token(manifest, token):
                seeds.setdefault(seed.module_id, seed)

    elif selection.only_phases:
        phases = {parse_phase(p) for p in selection.only_phases}
        present = {m.phase for m in manifest.modules}
        missing = sorted(phases - present)
        if missing:
            raise SelectionError(
                f"No modules in phase(s) {', '.join(str(p) for p in missing)}"
            )
        for module in manifest.module_index().values():
            if module.phase in phases:
                seeds[module.id] = Seed(module.id, InclusionReason.PHASE_MATCH, f"phase:{module.phase}")

    else:
        for module in manifest.module_index().values():
            if module.enabled_by_default:
                seeds[module.id] = Seed(module.id, InclusionReason.DEFAULT)
            else:
                excluded[module.id] = "disabled by default"

    return list(seeds.values()), excluded


def resolve_skips(manifest: Manifest, selection: Selection) -> dict[str, str]:
    """Map every skipped module id → why it was skipped.

    Raises:
        SelectionError: For an unknown id, tag or category.
    """
    index = manifest.module_index()
    aliases = _alias_index(manifest)
    skipped: dict[str, str] = {}

    for token in selection.skip:
        token = token.strip()
        if not token:
            continue
        module_id = token if token in index else aliases.get(token)
        if module_id is None:
            raise SelectionError(f"Unknown module id in --skip: {token}")
        skipped.setdefault(module_id, "explicitly skipped")

    known_tags = set(manifest.tags())
    for tag in selection.skip_tags:
        if tag not in known_tags:
            raise SelectionError(f"Unknown tag in --skip-tag: {tag}")
        for module in index.values():
            if tag in module.tags:
                skipped.setdefault(module.id, f"skipped tag {tag}")

    known_categories = set(manifest.categories())
    for category in selection.skip_categories:
        if category not in known_categories:
            raise SelectionError(f"Unknown category in --skip-category: {category}")
        for module in index.values():
            if module.effective_category == category:
                skipped.setdefault(module.id, f"skipped category {category}")

    return skipped
