"""Logging infrastructure for lsp-cli.

Defines the :class:`Logger` interface used for user-facing diagnostics and
the bridge that routes the library's stdlib ``logging`` records to the
terminal through Rich.
"""

from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

__all__ = ["LogLevel", "Logger", "configure_logging", "to_stdlib_level"]

LIBRARY_LOGGER = "lspcli"

_installed_handler: Optional[logging.Handler] = None


class LogLevel(enum.Enum):
    """Log verbosity levels for lsp-cli diagnostic messages.

    Lower numeric values represent higher severity / less verbosity.
    """
    FATAL = 0  # Only unrecoverable errors (bad configuration, server failed to start)
    ERROR = 1  # Fatal errors plus failed requests
    WARN = 2   # Errors plus daemon fallbacks and rejected edits
    INFO = 3   # Warnings plus daemon lifecycle (default)
    DEBUG = 4  # Info plus protocol traffic summaries and server stderr
    TRACE = 5  # Debug plus source locations of library log records


_STDLIB_LEVELS = {
    LogLevel.FATAL: logging.CRITICAL,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.WARN: logging.WARNING,
    LogLevel.INFO: logging.INFO,
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.TRACE: logging.DEBUG,
}


def to_stdlib_level(level: LogLevel) -> int:
    """Map a LogLevel to the matching :mod:`logging` level."""
    return _STDLIB_LEVELS[level]


class Logger(ABC):
    """Leveled logger interface for user-facing diagnostics.

    Implementations drop messages more verbose than their threshold.
    """

    @abstractmethod
    def log(self, level: LogLevel = LogLevel.INFO, *args, **kwargs) -> None:
        """Emit a message if ``level`` passes the current threshold."""

    def fatal(self, *args, **kwargs) -> None:
        self.log(LogLevel.FATAL, *args, **kwargs)

    def error(self, *args, **kwargs) -> None:
        self.log(LogLevel.ERROR, *args, **kwargs)

    def warn(self, *args, **kwargs) -> None:
        self.log(LogLevel.WARN, *args, **kwargs)

    def info(self, *args, **kwargs) -> None:
        self.log(LogLevel.INFO, *args, **kwargs)

    def debug(self, *args, **kwargs) -> None:
        self.log(LogLevel.DEBUG, *args, **kwargs)

    def trace(self, *args, **kwargs) -> None:
        self.log(LogLevel.TRACE, *args, **kwargs)


def configure_logging(level: LogLevel, console: Optional[Console] = None) -> logging.Handler:
    """Route ``lspcli`` log records to the terminal.

    Replaces any handler a previous call installed, so it is safe to call
    once per CLI invocation.

    Args:
        level: Threshold for library records
        console: Console to render on (stderr by default)

    Returns:
        The installed handler
    """
    global _installed_handler
    library_logger = logging.getLogger(LIBRARY_LOGGER)
    if _installed_handler is not None:
        library_logger.removeHandler(_installed_handler)

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_time=False,
        show_path=level is LogLevel.TRACE,
        markup=False,
    )
    handler.setLevel(to_stdlib_level(level))
    library_logger.addHandler(handler)
    _installed_handler = handler
    library_logger.setLevel(to_stdlib_level(level))
    return handler
