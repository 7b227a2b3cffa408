"""Switchable diagnostic log sink for the daemon.

In file mode a :class:`logging.FileHandler` is attached to the ``lspcli``
logger, so everything the library logs (server stderr, request traces,
dropped frames) lands in that file. Discard mode attaches nothing.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

__all__ = ["DaemonLog"]

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logger = logging.getLogger(__name__)


class DaemonLog:
    """Routes ``lspcli`` log records to a file, or nowhere."""

    def __init__(self, logger_name: str = "lspcli", level: int = logging.DEBUG):
        self._target = logging.getLogger(logger_name)
        self._level = level
        self._handler: Optional[logging.FileHandler] = None
        self._previous_level: Optional[int] = None

    @property
    def path(self) -> Optional[Path]:
        if self._handler is None:
            return None
        return Path(self._handler.baseFilename)

    def status(self) -> dict[str, Any]:
        """Current sink: ``{mode: "discard"}`` or ``{mode: "file", path}``."""
        if self._handler is None:
            return {"mode": "discard"}
        return {"mode": "file", "path": self._handler.baseFilename}

    def set_discard(self) -> None:
        self.close()

    def set_file(self, path: Path | str) -> Path:
        """Append log records to a file, replacing any previous sink.

        Returns:
            The resolved log file path
        """
        resolved = Path(path).expanduser().resolve()
        resolved.parent.mkdir(parents=True, exist_ok=True)

        self.close()
        handler = logging.FileHandler(resolved, mode="a", encoding="utf-8")
        handler.setLevel(self._level)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        self._target.addHandler(handler)
        self._previous_level = self._target.level
        if self._target.getEffectiveLevel() > self._level:
            self._target.setLevel(self._level)
        self._handler = handler
        logger.info("Daemon log sink set to %s", resolved)
        return resolved

    def close(self) -> None:
        """Detach and flush the current file handler, if any."""
        handler = self._handler
        if handler is None:
            return
        self._handler = None
        self._target.removeHandler(handler)
        if self._previous_level is not None:
            self._target.setLevel(self._previous_level)
            self._previous_level = None
        handler.close()
