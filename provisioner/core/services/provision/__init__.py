"""
Provisioning service — package re-exports.

Each symbol lives in its single-responsibility module inside the
appropriate layer (domain → resolver → execution)::

    from provisioner.core.services.provision import compile_plan, validate_manifest
"""

# ── L1: Domain ──
from provisioner.core.services.provision.domain.validation import (  # noqa: F401
    collect_warnings,
    validate_manifest,
)

# ── L2: Resolver ──
from provisioner.core.services.provision.resolver.plan_compiler import (  # noqa: F401
    compile_plan,
)

# ── L4: Execution ──
from provisioner.core.services.provision.execution.checksum_verify import (  # noqa: F401
    verify_content,
)
