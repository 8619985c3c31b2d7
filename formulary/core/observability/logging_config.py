"""
Logging configuration for the formulary CLI.

main.py calls ``configure_from_cli()`` once per process; every module
logs through ``logging.getLogger(__name__)`` and inherits the result.

Console level precedence:
    --debug / --verbose / --quiet  >  FORMULARY_LOG_LEVEL  >  WARNING

FORMULARY_LOG_FILE adds a file handler that always uses the detailed
format, at FORMULARY_LOG_FILE_LEVEL (default: the console level).
Build output is never logged; the output of a failing step travels in
the RunResult instead.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Mapping

_DETAILED = "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d — %(message)s"

# (format, datefmt) per console verbosity
_CONSOLE_FORMATS = {
    logging.DEBUG: (_DETAILED, "%H:%M:%S"),
    logging.INFO: ("%(asctime)s [%(name)s] %(message)s", "%H:%M:%S"),
}

_SEVERITY_PREFIX = {
    logging.WARNING: "Warning: ",
    logging.ERROR: "Error: ",
    logging.CRITICAL: "Error: ",
}


class SeverityFormatter(logging.Formatter):
    """Plain messages, prefixed with ``Warning:`` or ``Error:``."""

    def __init__(self) -> None:
        super().__init__("%(message)s")

    def format(self, record: logging.LogRecord) -> str:
        return _SEVERITY_PREFIX.get(record.levelno, "") + super().format(record)


def console_level(
    debug: bool = False,
    verbose: bool = False,
    quiet: bool = False,
    environ: Mapping[str, str] | None = None,
) -> str:
    """Resolve the console level name from CLI flags and the environment."""
    if debug:
        return "DEBUG"
    if verbose:
        return "INFO"
    if quiet:
        return "ERROR"
    environ = os.environ if environ is None else environ
    return environ.get("FORMULARY_LOG_LEVEL") or "WARNING"


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
) -> None:
    """Install the console (and optional file) handler on the root logger.

    Args:
        level: Console level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Optional path of a log file to append to.
        log_file_level: Level for the file; defaults to ``level``.
    """
    numeric_level = parse_level(level)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(numeric_level)
    console.setFormatter(_console_formatter(numeric_level))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root_level = numeric_level

    if log_file:
        file_level = parse_level(log_file_level) if log_file_level else numeric_level
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setLevel(file_level)
        handler.setFormatter(logging.Formatter(_DETAILED, datefmt="%Y-%m-%d %H:%M:%S"))
        root.addHandler(handler)
        root_level = min(root_level, file_level)

    root.setLevel(root_level)


def configure_from_cli(debug: bool, verbose: bool, quiet: bool) -> None:
    """Set up logging from the global CLI flags and FORMULARY_LOG_* variables."""
    setup_logging(
        level=console_level(debug, verbose, quiet),
        log_file=os.environ.get("FORMULARY_LOG_FILE"),
        log_file_level=os.environ.get("FORMULARY_LOG_FILE_LEVEL"),
    )


def _console_formatter(numeric_level: int) -> logging.Formatter:
    for threshold in (logging.DEBUG, logging.INFO):
        if numeric_level <= threshold:
            fmt, datefmt = _CONSOLE_FORMATS[threshold]
            return logging.Formatter(fmt, datefmt=datefmt)
    return SeverityFormatter()


def parse_level(level: str | None) -> int:
    """Level name to its numeric value; unknown names mean WARNING."""
    numeric = getattr(logging, (level or "").upper(), None)
    return numeric if isinstance(numeric, int) else logging.WARNING
