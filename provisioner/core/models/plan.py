"""
Selection and ExecutionPlan models — the compiler's input and output.

A plan is a pure function of (manifest, selection): it carries no
timestamps or run ids so that two compiles serialize identically.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class InclusionReason(str, Enum):
    """Why a module ended up in the plan."""

    EXPLICIT = "explicit"
    TAG_MATCH = "tag-match"
    CATEGORY_MATCH = "category-match"
    PHASE_MATCH = "phase-match"
    DEFAULT = "default"
    DEPENDENCY_CLOSURE = "dependency-closure"


class Selection(BaseModel):
    """What the operator asked for on the command line.

    ``only`` tokens may be a module id, ``tag:<name>``, ``category:<name>``
    or ``id:<module>``; a bare token is tried as id, then category, then tag.
    """

    only: list[str] = Field(default_factory=list)
    only_phases: list[str] = Field(default_factory=list)
    skip: list[str] = Field(default_factory=list)
    skip_tags: list[str] = Field(default_factory=list)
    skip_categories: list[str] = Field(default_factory=list)


class PlanEntry(BaseModel):
    """One module in the plan, with the reason it was included."""

    module_id: str
    phase: int
    reason: InclusionReason
    detail: str = ""          # e.g. "tag:agents", "required by agents.claude"
    optional: bool = False


class PlanExclusion(BaseModel):
    """A manifest module that is not part of this plan."""

    module_id: str
    reason: str               # not selected, disabled by default, explicitly skipped, ...


class ExecutionPlan(BaseModel):
    """The validated, ordered, selection-filtered sequence of modules."""

    manifest_id: str
    manifest_version: int
    selection: Selection = Field(default_factory=Selection)
    entries: list[PlanEntry] = Field(default_factory=list)
    excluded: list[PlanExclusion] = Field(default_factory=list)

    @property
    def module_ids(self) -> list[str]:
        return [e.module_id for e in self.entries]

    def entry_for(self, module_id: str) -> PlanEntry | None:
        for entry in self.entries:
            if entry.module_id == module_id:
                return entry
        return None

    def reason_for(self, module_id: str) -> InclusionReason | None:
        entry = self.entry_for(module_id)
        return entry.reason if entry else None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    def to_json(self) -> str:
        """Stable serialization for ``--print-plan --json`` diffing."""
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)
