"""Logging configuration for turnloop.

Uses Python's standard logging module with support for:
- File logging via config or TURNLOOP_LOG environment variable
- Verbosity levels: error(0), warning(1), info(2), verbose(3), trace(4)
- Stderr fallback when no log file is configured
- A `[session_id]` tag on records logged through `session_logger`
"""

from __future__ import annotations

import logging
import os
import sys
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from turnloop.config.schema import LoggingConfig

TRACE = 5
VERBOSE = 15

logging.addLevelName(TRACE, "TRACE")
logging.addLevelName(VERBOSE, "VERBOSE")

logger = logging.getLogger("turnloop")

_initialized = False

_LEVEL_MAP = {
    "TRACE": TRACE,
    "DEBUG": logging.DEBUG,
    "VERBOSE": VERBOSE,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

# --verbose=N to log levels (0=errors only, 4=everything)
_VERBOSITY_MAP = {
    0: logging.ERROR,
    1: logging.WARNING,
    2: logging.INFO,
    3: VERBOSE,
    4: TRACE,
}


class _SessionFormatter(logging.Formatter):
    """Formatter with lowercase level names and an optional session tag."""

    def format(self, record: logging.LogRecord) -> str:
        record.levelname = record.levelname.lower()
        session_id = getattr(record, "session_id", None)
        record.session_tag = f" [{session_id}]" if session_id else ""
        return super().format(record)


def resolve_level(config: LoggingConfig | None) -> int:
    """Work out the effective log level; verbose (int) wins over level (str)."""
    if config is None:
        return logging.INFO
    if config.verbose is not None:
        return _VERBOSITY_MAP.get(config.verbose, TRACE)
    if config.level:
        return _LEVEL_MAP.get(config.level.upper(), logging.INFO)
    return logging.INFO


def setup_logging(config: LoggingConfig | None = None) -> None:
    """Initialize logging based on configuration.

    Call this once at startup. Subsequent calls are no-ops.

    Args:
        config: Optional LoggingConfig with level, verbose, and file settings.
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    log_level = resolve_level(config)
    logger.setLevel(log_level)

    formatter = _SessionFormatter(
        "%(asctime)s %(levelname)s %(name)s%(session_tag)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    log_path = config.file if config and config.file else os.environ.get("TURNLOOP_LOG")

    if log_path:
        try:
            handler: logging.Handler = logging.FileHandler(
                os.path.expanduser(log_path), mode="a", encoding="utf-8"
            )
        except OSError as e:
            _attach(logging.StreamHandler(sys.stderr), formatter, log_level)
            logger.warning("Failed to open log file %s: %s", log_path, e)
            return
    elif sys.stderr.isatty():
        handler = logging.StreamHandler(sys.stderr)
    else:
        return
    _attach(handler, formatter, log_level)


def _attach(handler: logging.Handler, formatter: logging.Formatter, level: int) -> None:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def get_logger(name: str | None = None) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Optional name for a child logger (e.g., "store", "session").
              If None, returns the root turnloop logger.
    """
    if name:
        return logger.getChild(name)
    return logger


def session_logger(session_id: str | None, name: str = "session") -> logging.LoggerAdapter:
    """Child logger whose records carry `session_id` for the formatter tag."""
    return logging.LoggerAdapter(get_logger(name), {"session_id": session_id})
