"""
Upgrade lock file — one upgrade attempt at a time.

The lock is a file holding the owner's PID. It is published with a hard
link from a private temp file, so the lock path never exists without a
PID in it. The canonical failure mode is "machine rebooted while the
lock was held", so a lock whose PID is no longer alive is reclaimed with
a warning.
"""

from __future__ import annotations

import errno
import logging
import os
import tempfile
import time
from pathlib import Path
from types import TracebackType

from provisioner.core.errors import LockConflictError, LockUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_PATH = Path("/var/run/provisioner-upgrade.lock")

# An unreadable lock younger than this is treated as held
UNKNOWN_HOLDER_GRACE_SECONDS = 10.0


def pid_alive(pid: int) -> bool:
    """True if a process with this PID exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    return True


class LockFile:
    """PID lock usable as a context manager.

    Re-entrant within the owning process: acquiring a lock this PID
    already holds only increments a depth counter.
    """

    def __init__(self, path: Path | None = None, pid: int | None = None):
        self._path = path or DEFAULT_LOCK_PATH
        self._pid = pid if pid is not None else os.getpid()
        self._depth = 0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._depth > 0

    def holder(self) -> int | None:
        """PID recorded in the lock file, or None if absent/unparseable."""
        try:
            content = self._path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.debug("Cannot read lock %s: %s", self._path, e)
            return None
        try:
            return int(content)
        except ValueError:
            return None

    def age(self) -> float | None:
        """Seconds since the lock file was last written, or None if absent."""
        try:
            return time.time() - self._path.stat().st_mtime
        except OSError:
            return None

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            LockConflictError: If a live process other than this one holds it.
            LockUnavailableError: If the lock file cannot be created at all.
        """
        if self._depth > 0:
            self._depth += 1
            return

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LockUnavailableError(str(self._path), e.strerror or str(e)) from e

        for _ in range(2):
            try:
                self._publish()
            except FileExistsError:
                holder = self.holder()
                if holder == self._pid:
                    logger.debug("Lock %s already recorded for this process", self._path)
                    self._depth = 1
                    return
                if holder is not None and pid_alive(holder):
                    raise LockConflictError(str(self._path), holder) from None
                if holder is None:
                    age = self.age()
                    if age is not None and age < UNKNOWN_HOLDER_GRACE_SECONDS:
                        raise LockConflictError(str(self._path), None) from None
                logger.warning(
                    "Reclaiming stale upgrade lock %s (holder %s is not running)",
                    self._path, holder if holder is not None else "unknown",
                )
                self._remove_stale()
                continue
            except OSError as e:
                raise LockUnavailableError(str(self._path), e.strerror or str(e)) from e

            self._depth = 1
            logger.debug("Acquired lock %s (pid %d)", self._path, self._pid)
            return

        # Lost the race to another process twice in a row
        raise LockConflictError(str(self._path), self.holder())

    def release(self) -> None:
        if self._depth == 0:
            return
        self._depth -= 1
        if self._depth > 0:
            return
        if self.holder() == self._pid:
            try:
                self._path.unlink()
            except OSError as e:
                if e.errno != errno.ENOENT:
                    raise
        logger.debug("Released lock %s", self._path)

    # ── Helpers ─────────────────────────────────────────────────

    def _publish(self) -> None:
        """Create the lock path already containing this PID.

        Raises:
            FileExistsError: The lock path exists.
        """
        fd, tmp_path = tempfile.mkstemp(
            dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp",
        )
        tmp = Path(tmp_path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(f"{self._pid}\n")
            tmp.chmod(0o644)
            os.link(tmp, self._path)
        finally:
            tmp.unlink(missing_ok=True)

    def _remove_stale(self) -> None:
        try:
            self._path.unlink(missing_ok=True)
        except OSError as e:
            raise LockUnavailableError(str(self._path), f"cannot remove stale lock: {e.strerror or e}") from e

    def __enter__(self) -> LockFile:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
