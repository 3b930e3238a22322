"""
L4 Execution — ``__init__.py`` re-exports the execution helpers.

These functions sit on the boundary with the host: installer
integrity checks before anything fetched is run.
"""

from provisioner.core.services.provision.execution.checksum_verify import (  # noqa: F401
    VerifiedContent,
    runner_command,
    sha256_hex,
    verify_content,
)
