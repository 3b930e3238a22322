"""
Manifest model — the declarative module graph.

Loaded from provision.manifest.yaml, this is the canonical truth about
what gets installed, in which execution context, and in which phase.
Graph-level invariants (existence, cycles, phases, naming) are NOT
enforced here; see the graph validator.
"""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MODULE_ID_PATTERN = r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)*$"
MANIFEST_ID_PATTERN = r"^[a-z][a-z0-9_]*$"

MIN_PHASE = 1
MAX_PHASE = 10


class RunAs(str, Enum):
    """Execution context for a command.

    Closed set: every dispatcher must handle all four members.
    """

    ROOT = "root"                                  # privileged
    TARGET_USER = "target_user"                    # target user, login shell
    TARGET_USER_NO_SHELL = "target_user_noshell"   # target user, no rc files
    CURRENT = "current"                            # invoking user


class ManifestDefaults(BaseModel):
    """Defaults applied to every module."""

    model_config = ConfigDict(extra="forbid")

    user: str = Field(min_length=1)
    workspace_root: str = Field(min_length=1)
    mode: Literal["vibe", "safe"] = "vibe"


class InstalledCheck(BaseModel):
    """Idempotency check: exit 0 means the module is already satisfied."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    run_as: RunAs = RunAs.TARGET_USER
    command: str = Field(min_length=1)


class VerifiedInstaller(BaseModel):
    """Reference to an upstream install script pinned in checksums.yaml."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    tool: str = Field(min_length=1)
    runner: Literal["bash", "sh"]
    args: list[str] = Field(default_factory=list)


class Module(BaseModel):
    """A single installable unit."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    # ── Identity ─────────────────────────────────────────────────
    id: str = Field(pattern=MODULE_ID_PATTERN)
    description: str = Field(min_length=1)
    category: str | None = None

    # ── Ordering ─────────────────────────────────────────────────
    phase: int = Field(default=MIN_PHASE, ge=MIN_PHASE, le=MAX_PHASE)
    dependencies: list[str] = Field(default_factory=list)

    # ── Selection ────────────────────────────────────────────────
    tags: list[str] = Field(default_factory=list)
    optional: bool = False
    enabled_by_default: bool = True
    generated: bool = True

    # ── Execution ────────────────────────────────────────────────
    run_as: RunAs = RunAs.TARGET_USER
    installed_check: InstalledCheck | None = None
    verified_installer: VerifiedInstaller | None = None
    install: list[str] = Field(default_factory=list)
    verify: list[str] = Field(min_length=1)

    # ── Documentation ────────────────────────────────────────────
    notes: list[str] = Field(default_factory=list)
    docs_url: str | None = None
    aliases: list[str] = Field(default_factory=list)

    @field_validator("verify", "install")
    @classmethod
    def _no_blank_commands(cls, value: list[str]) -> list[str]:
        for command in value:
            if not command.strip():
                raise ValueError("commands cannot be blank")
        return value

    @model_validator(mode="after")
    def _require_install_source(self) -> Module:
        if self.generated and self.verified_installer is None and not self.install:
            raise ValueError(
                "Module must define verified_installer or install commands "
                "(or set generated: false)"
            )
        return self

    @property
    def effective_category(self) -> str:
        """Explicit category, or the id prefix (``lang.bun`` → ``lang``)."""
        return self.category or self.id.split(".", 1)[0]

    @property
    def function_name(self) -> str:
        """Identifier generated for this module (``lang.bun`` → ``install_lang_bun``)."""
        return module_function_name(self.id)


class Manifest(BaseModel):
    """The complete manifest: defaults plus modules in declaration order."""

    model_config = ConfigDict(extra="forbid")

    version: int = Field(gt=0)
    name: str = Field(min_length=1)
    id: str = Field(pattern=MANIFEST_ID_PATTERN)
    defaults: ManifestDefaults
    modules: list[Module] = Field(min_length=1)

    @property
    def module_ids(self) -> list[str]:
        return [m.id for m in self.modules]

    def get_module(self, module_id: str) -> Module | None:
        """Look up a module by id (first declaration wins)."""
        for module in self.modules:
            if module.id == module_id:
                return module
        return None

    def module_index(self) -> dict[str, Module]:
        """Map id → module, keeping the first declaration of a duplicate id."""
        index: dict[str, Module] = {}
        for module in self.modules:
            index.setdefault(module.id, module)
        return index

    def declaration_order(self) -> dict[str, int]:
        """Map id → position of its first declaration."""
        order: dict[str, int] = {}
        for position, module in enumerate(self.modules):
            order.setdefault(module.id, position)
        return order

    def categories(self) -> list[str]:
        seen: dict[str, None] = {}
        for module in self.modules:
            seen.setdefault(module.effective_category, None)
        return list(seen)

    def tags(self) -> list[str]:
        seen: dict[str, None] = {}
        for module in self.modules:
            for tag in module.tags:
                seen.setdefault(tag, None)
        return list(seen)


def module_function_name(module_id: str) -> str:
    """Normalize a module id into the identifier it generates."""
    return "install_" + module_id.replace(".", "_")
