"""
Logging configuration — one root setup per process, plus the upgrade log.

``main.py`` calls ``setup_logging`` once, with the level picked by
``resolve_level``:

    --debug > --verbose > --quiet > PROVISIONER_LOG_LEVEL > WARNING

Optional file output comes from PROVISIONER_LOG_FILE and
PROVISIONER_LOG_FILE_LEVEL. The reboot entry point (``upgrade resume``)
runs with no terminal attached, so it also calls ``attach_file_log``
for the system upgrade log, which keeps every hop's history across
reboots.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Mapping
from pathlib import Path

ENV_LEVEL = "PROVISIONER_LOG_LEVEL"

# ── Formats ─────────────────────────────────────────────────────

_CONSOLE_FORMATS: dict[int, tuple[str, str | None]] = {
    logging.DEBUG: ("%(asctime)s %(levelname)-5s %(name)s:%(lineno)d  %(message)s", "%H:%M:%S"),
    logging.INFO: ("%(asctime)s [%(name)s] %(message)s", "%H:%M:%S"),
}
_CONSOLE_DEFAULT = ("%(message)s", None)

# pid distinguishes the resume unit from an interactive run in the same file
_FILE_FORMAT = "%(asctime)s %(process)d %(levelname)-5s %(name)s:%(lineno)d  %(message)s"
_FILE_DATEFMT = "%Y-%m-%d %H:%M:%S"

_NOISY_LOGGERS = ("urllib3", "charset_normalizer")


def resolve_level(
    debug: bool = False,
    verbose: bool = False,
    quiet: bool = False,
    environ: Mapping[str, str] | None = None,
) -> str:
    """Console level name from CLI flags, falling back to the environment."""
    if debug:
        return "DEBUG"
    if verbose:
        return "INFO"
    if quiet:
        return "ERROR"
    env = os.environ if environ is None else environ
    return env.get(ENV_LEVEL) or "WARNING"


def setup_logging(
    level: str = "WARNING",
    log_file: str | Path | None = None,
    log_file_level: str | None = None,
    quiet_third_party: bool = True,
) -> None:
    """Replace the root logger's handlers with a stderr handler (and a file).

    Args:
        level: Console level name.
        log_file: Optional log file; parent directories are created.
        log_file_level: Level for the file (defaults to ``level``).
        quiet_third_party: Hold chatty library loggers at WARNING
            below DEBUG.
    """
    console_level = _parse_level(level)
    fmt, datefmt = _CONSOLE_FORMATS.get(console_level, _CONSOLE_DEFAULT)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(fmt, datefmt=datefmt))

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.addHandler(console)
    root.setLevel(console_level)

    if log_file:
        attach_file_log(log_file, log_file_level or level)

    if quiet_third_party and console_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.raiseExceptions = False


def attach_file_log(path: str | Path, level: str = "DEBUG") -> logging.Handler:
    """Add an appending file handler to the root logger.

    The root level is lowered if needed so file-only records still pass.

    Raises:
        OSError: If the file cannot be opened.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    file_level = _parse_level(level)

    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(file_level)
    handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_FILE_DATEFMT))

    root = logging.getLogger()
    root.addHandler(handler)
    if root.level == logging.NOTSET or root.level > file_level:
        root.setLevel(file_level)
    return handler


def _parse_level(level: str | None) -> int:
    if not level:
        return logging.WARNING
    numeric = getattr(logging, level.upper(), None)
    return numeric if isinstance(numeric, int) else logging.WARNING
