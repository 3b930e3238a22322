"""
L4 Execution — installer integrity verification.

The supply-chain trust boundary: fetched installer bytes are hashed and
compared against the pinned registry entry before anything runs them.
There is no soft-fail path. A mismatch, or a missing pin, raises
``ChecksumMismatch`` and the caller must drop the content.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import shlex
from dataclasses import dataclass

from provisioner.core.errors import ChecksumMismatch
from provisioner.core.models.checksums import ChecksumRegistry
from provisioner.core.models.manifest import VerifiedInstaller

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifiedContent:
    """Installer bytes that matched their pin. Only this type gets executed."""

    tool: str
    content: bytes
    sha256: str


def sha256_hex(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def verify_content(content: bytes, registry_key: str, registry: ChecksumRegistry) -> VerifiedContent:
    """Check raw fetched bytes against the pinned digest for ``registry_key``.

    Raises:
        ChecksumMismatch: If the digest differs or no pin exists.
    """
    actual = sha256_hex(content)
    pinned = registry.get(registry_key)

    if pinned is None:
        logger.error("No pinned checksum for installer '%s'", registry_key)
        raise ChecksumMismatch(registry_key, None, actual)

    if not hmac.compare_digest(actual, pinned.sha256):
        logger.error(
            "SHA256 mismatch for installer '%s': expected %s, got %s",
            registry_key, pinned.sha256, actual,
        )
        raise ChecksumMismatch(registry_key, pinned.sha256, actual, url=pinned.url)

    logger.debug("Installer '%s' verified (%d bytes, sha256 %s)", registry_key, len(content), actual)
    return VerifiedContent(tool=registry_key, content=content, sha256=actual)


def runner_command(installer: VerifiedInstaller) -> str:
    """Shell command that runs verified content fed on stdin.

    ``runner: bash, args: [-y]``  →  ``bash -s -- -y``
    """
    parts = [installer.runner, "-s", "--", *installer.args]
    return " ".join(shlex.quote(p) for p in parts)
