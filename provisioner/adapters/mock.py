"""
Mock adapters — test doubles for the command runner and installer fetcher.

Used in tests to simulate host behavior without touching the system.
By default every command succeeds; specific commands can be configured
to fail, to return a sequence of results across calls, or to raise
``KeyboardInterrupt`` (simulating an operator interrupt).
"""

from __future__ import annotations

from dataclasses import dataclass

from provisioner.adapters.base import CommandResult, CommandRunner, FetchResult, InstallerFetcher
from provisioner.core.models.manifest import RunAs


@dataclass
class MockCall:
    """One recorded ``run()`` invocation."""

    command: str
    run_as: RunAs
    timeout: int
    input: bytes | None = None


class MockCommandRunner(CommandRunner):
    """Scripted command runner.

    Results are keyed by the exact command string. ``set_results`` takes
    a sequence: each call consumes the next entry and the last one
    repeats.
    """

    def __init__(self, default_exit_code: int = 0, default_output: str = "[mock] executed"):
        self._default_exit_code = default_exit_code
        self._default_output = default_output
        self._results: dict[str, list[int | CommandResult]] = {}
        self._interrupts: set[str] = set()
        self._call_log: list[MockCall] = []

    @property
    def call_log(self) -> list[MockCall]:
        return self._call_log

    @property
    def call_count(self) -> int:
        return len(self._call_log)

    @property
    def commands(self) -> list[str]:
        """Commands run so far, in order."""
        return [c.command for c in self._call_log]

    def calls_for(self, command: str) -> list[MockCall]:
        return [c for c in self._call_log if c.command == command]

    def set_result(self, command: str, exit_code: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Configure a fixed result for ``command``."""
        self._results[command] = [
            CommandResult(
                command=command,
                run_as=RunAs.CURRENT,
                exit_code=exit_code,
                stdout=stdout,
                stderr=stderr,
            )
        ]

    def set_failure(self, command: str, exit_code: int = 1, stderr: str = "mock failure") -> None:
        self.set_result(command, exit_code=exit_code, stderr=stderr)

    def set_results(self, command: str, results: list[int | CommandResult]) -> None:
        """Configure a sequence of exit codes (or full results) for ``command``."""
        if not results:
            raise ValueError("results must not be empty")
        self._results[command] = list(results)

    def set_timeout(self, command: str) -> None:
        self._results[command] = [
            CommandResult(command=command, run_as=RunAs.CURRENT, timed_out=True, error="Command timed out")
        ]

    def set_interrupt(self, command: str) -> None:
        """Raise ``KeyboardInterrupt`` when ``command`` runs."""
        self._interrupts.add(command)

    def run(
        self,
        command: str,
        run_as: RunAs,
        *,
        timeout: int,
        input: bytes | None = None,
    ) -> CommandResult:
        self._call_log.append(MockCall(command, run_as, timeout, input))

        if command in self._interrupts:
            raise KeyboardInterrupt

        queue = self._results.get(command)
        if not queue:
            return CommandResult(
                command=command,
                run_as=run_as,
                exit_code=self._default_exit_code,
                stdout=self._default_output,
            )

        entry = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(entry, int):
            return CommandResult(
                command=command,
                run_as=run_as,
                exit_code=entry,
                stdout=self._default_output if entry == 0 else "",
                stderr="" if entry == 0 else f"[mock] exit {entry}",
            )
        return entry.model_copy(update={"command": command, "run_as": run_as})

    def reset(self) -> None:
        """Clear call log and configured results."""
        self._call_log.clear()
        self._results.clear()
        self._interrupts.clear()


class MockInstallerFetcher(InstallerFetcher):
    """Serves configured bytes per URL; unknown URLs fail."""

    def __init__(self, contents: dict[str, bytes] | None = None):
        self._contents: dict[str, bytes] = dict(contents or {})
        self._fetched: list[str] = []

    @property
    def fetched(self) -> list[str]:
        return self._fetched

    def set_content(self, url: str, content: bytes) -> None:
        self._contents[url] = content

    def fetch(self, url: str, *, timeout: int) -> FetchResult:
        self._fetched.append(url)
        if url not in self._contents:
            return FetchResult(url=url, ok=False, error=f"[mock] no content for {url}")
        return FetchResult(url=url, ok=True, content=self._contents[url])
