"""
L2 Resolver — ``__init__.py`` re-exports all resolver functions.

These functions turn a validated manifest plus an operator selection
into a concrete, ordered execution plan.
"""

from provisioner.core.services.provision.resolver.plan_compiler import (  # noqa: F401
    compile_plan,
)
from provisioner.core.services.provision.resolver.selection import (  # noqa: F401
    PHASE_NAMES,
    Seed,
    parse_phase,
    resolve_seeds,
    resolve_skips,
)
