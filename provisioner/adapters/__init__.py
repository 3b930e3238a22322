"""Adapters — host bindings for command execution and installer download.

Public re-exports for convenient access.
"""

from provisioner.adapters.base import CommandResult, CommandRunner, FetchResult, InstallerFetcher
from provisioner.adapters.mock import MockCommandRunner, MockInstallerFetcher

__all__ = [
    "CommandResult",
    "CommandRunner",
    "FetchResult",
    "InstallerFetcher",
    "MockCommandRunner",
    "MockInstallerFetcher",
]
