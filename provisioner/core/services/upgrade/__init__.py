"""
OS upgrade service — package re-exports.

    versions       release table and hop path calculation (pure)
    preflight      conditions checked before the first hop
    backend        host operations (do-release-upgrade, systemd)
    state_machine  the reboot-surviving upgrade state machine
"""

from provisioner.core.services.upgrade.backend import (  # noqa: F401
    ReleaseUpgradeBackend,
    StepResult,
    UpgradeBackend,
)
from provisioner.core.services.upgrade.preflight import (  # noqa: F401
    PreflightCheck,
    PreflightReport,
    default_checks,
    run_preflight,
)
from provisioner.core.services.upgrade.state_machine import (  # noqa: F401
    UpgradeOutcome,
    UpgradeStateMachine,
)
from provisioner.core.services.upgrade.versions import (  # noqa: F401
    DEFAULT_TARGET,
    RELEASE_EDGES,
    calculate_upgrade_path,
    parse_version,
)
