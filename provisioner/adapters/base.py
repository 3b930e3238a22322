"""
Adapter base — the protocol contract between the engine and the host.

The engine never calls subprocess or the network directly: it talks to
a ``CommandRunner`` (run a command under an execution context) and an
``InstallerFetcher`` (download installer bytes). Both return result
objects and NEVER raise for an ordinary failure; the engine decides
what a failure means for the module.

``KeyboardInterrupt`` is the one exception allowed through, so an
operator interrupt still stops the run.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from pydantic import BaseModel

from provisioner.core.models.manifest import RunAs

DEFAULT_TAIL_LINES = 20


def tail(text: str, lines: int = DEFAULT_TAIL_LINES) -> str:
    """Last ``lines`` lines of ``text``."""
    if not text:
        return ""
    return "\n".join(text.rstrip().splitlines()[-lines:])


class CommandResult(BaseModel):
    """What happened when one command ran."""

    command: str
    run_as: RunAs
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    duration_ms: int = 0
    error: str | None = None        # could not start, etc.

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and self.error is None

    def output_tail(self, lines: int = DEFAULT_TAIL_LINES) -> str:
        """Combined stdout/stderr tail for diagnostics."""
        parts = [p for p in (self.stdout.strip(), self.stderr.strip()) if p]
        if self.error:
            parts.append(self.error)
        return tail("\n".join(parts), lines)

    def describe(self) -> str:
        if self.timed_out:
            return f"timed out after {self.duration_ms // 1000}s"
        if self.error:
            return self.error
        return f"exit code {self.exit_code}"


class FetchResult(BaseModel):
    """Raw bytes of a downloaded installer (unverified)."""

    url: str
    ok: bool
    content: bytes = b""
    error: str | None = None


class CommandRunner(ABC):
    """Runs shell commands under a declared execution context."""

    @abstractmethod
    def run(
        self,
        command: str,
        run_as: RunAs,
        *,
        timeout: int,
        input: bytes | None = None,
    ) -> CommandResult:
        """Run ``command`` and return its result.

        MUST NOT raise for command failure or timeout; those are
        captured in the result.
        """

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"


class InstallerFetcher(ABC):
    """Downloads installer content over HTTPS."""

    @abstractmethod
    def fetch(self, url: str, *, timeout: int) -> FetchResult:
        """Fetch ``url``. MUST NOT raise for network failure."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"
