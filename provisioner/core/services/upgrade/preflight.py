"""
Upgrade preflight — conditions that must hold before the first hop.

Every check runs (no short-circuit) so the operator sees all blocking
reasons at once. Checks are plain callables returning a
``PreflightCheck``; tests substitute their own list.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import urllib.error
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

REBOOT_REQUIRED_FLAG = Path("/var/run/reboot-required")


@dataclass(frozen=True)
class PreflightCheck:
    name: str
    ok: bool
    detail: str = ""


@dataclass
class PreflightReport:
    checks: list[PreflightCheck] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(c.ok for c in self.checks)

    @property
    def failures(self) -> list[PreflightCheck]:
        return [c for c in self.checks if not c.ok]

    @property
    def reasons(self) -> list[str]:
        return [f"{c.name}: {c.detail}" for c in self.failures]


Check = Callable[[], PreflightCheck]


# ── Individual checks ───────────────────────────────────────────


def check_root() -> PreflightCheck:
    if os.geteuid() == 0:
        return PreflightCheck("root", True, "running as root")
    return PreflightCheck("root", False, "OS upgrades must run as root")


def check_not_container() -> PreflightCheck:
    if Path("/.dockerenv").exists():
        return PreflightCheck("container", False, "running in Docker; distribution upgrades are not supported")
    try:
        cgroup = Path("/proc/1/cgroup").read_text(encoding="utf-8")
    except OSError:
        cgroup = ""
    if "docker" in cgroup or "containerd" in cgroup:
        return PreflightCheck("container", False, "running in a container; distribution upgrades are not supported")
    return PreflightCheck("container", True, "not a container")


def check_not_wsl() -> PreflightCheck:
    try:
        version = Path("/proc/version").read_text(encoding="utf-8").lower()
    except OSError:
        version = ""
    if "microsoft" in version or "wsl" in version:
        return PreflightCheck("wsl", False, "running in WSL; Ubuntu release upgrades are not supported")
    return PreflightCheck("wsl", True, "not WSL")


def make_disk_check(min_free_mb: int, path: str = "/") -> Check:
    def check_disk_space() -> PreflightCheck:
        try:
            free_mb = shutil.disk_usage(path).free // (1024 * 1024)
        except OSError as e:
            return PreflightCheck("disk", False, f"cannot stat {path}: {e}")
        if free_mb < min_free_mb:
            return PreflightCheck("disk", False, f"{free_mb} MB free on {path}, need {min_free_mb} MB")
        return PreflightCheck("disk", True, f"{free_mb} MB free on {path}")

    return check_disk_space


def make_network_check(url: str, timeout: int = 10) -> Check:
    def check_network() -> PreflightCheck:
        try:
            req = urllib.request.Request(url, method="HEAD")
            with urllib.request.urlopen(req, timeout=timeout):
                pass
        except (urllib.error.URLError, OSError) as e:
            return PreflightCheck("network", False, f"cannot reach {url}: {e}")
        return PreflightCheck("network", True, f"{url} reachable")

    return check_network


def check_dpkg_healthy() -> PreflightCheck:
    if shutil.which("dpkg") is None:
        return PreflightCheck("dpkg", False, "dpkg not found")
    try:
        result = subprocess.run(["dpkg", "--audit"], capture_output=True, text=True, timeout=60)
    except (OSError, subprocess.TimeoutExpired) as e:
        return PreflightCheck("dpkg", False, f"dpkg --audit failed: {e}")
    if result.returncode != 0 or result.stdout.strip():
        return PreflightCheck("dpkg", False, "package database is inconsistent; run 'sudo dpkg --configure -a'")
    return PreflightCheck("dpkg", True, "package database consistent")


def check_no_pending_reboot() -> PreflightCheck:
    if REBOOT_REQUIRED_FLAG.exists():
        return PreflightCheck("reboot", False, "a reboot is already pending; reboot first, then re-run")
    return PreflightCheck("reboot", True, "no pending reboot")


def default_checks(min_free_mb: int, network_url: str) -> list[Check]:
    return [
        check_root,
        check_not_container,
        check_not_wsl,
        make_disk_check(min_free_mb),
        make_network_check(network_url),
        check_dpkg_healthy,
        check_no_pending_reboot,
    ]


def run_preflight(checks: list[Check]) -> PreflightReport:
    """Run every check and collect the results."""
    report = PreflightReport()
    for check in checks:
        result = check()
        report.checks.append(result)
        if result.ok:
            logger.debug("preflight %s: %s", result.name, result.detail)
        else:
            logger.warning("preflight %s failed: %s", result.name, result.detail)
    return report
