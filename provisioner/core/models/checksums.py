"""
Checksum registry model — pinned digests for upstream installers.

Loaded read-only from checksums.yaml::

    installers:
      bun:
        url: "https://bun.sh/install"
        sha256: "8b7c..."
"""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")


class InstallerChecksum(BaseModel):
    """Where an installer lives and what its bytes must hash to."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    url: str
    sha256: str

    @field_validator("url")
    @classmethod
    def _https_only(cls, value: str) -> str:
        if not value.startswith("https://"):
            raise ValueError("installer URLs must use https://")
        return value

    @field_validator("sha256")
    @classmethod
    def _normalize_digest(cls, value: str) -> str:
        digest = value.strip().lower().removeprefix("sha256:")
        if not _SHA256_RE.match(digest):
            raise ValueError("sha256 must be 64 hex characters")
        return digest


class ChecksumRegistry(BaseModel):
    """Installer key → pinned checksum."""

    model_config = ConfigDict(extra="forbid")

    installers: dict[str, InstallerChecksum] = Field(default_factory=dict)

    def get(self, tool: str) -> InstallerChecksum | None:
        return self.installers.get(tool)

    def __contains__(self, tool: object) -> bool:
        return tool in self.installers
