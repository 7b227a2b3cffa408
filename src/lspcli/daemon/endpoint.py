"""Locating the daemon for a (workspace root, server) pair.

The location is a pure function of the canonical root path and the server
name, so every invocation for the same workspace finds the same daemon,
including one started by an earlier process.
"""

from __future__ import annotations

import fcntl
import hashlib
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Optional

import platformdirs

__all__ = [
    "Endpoint",
    "RUNTIME_DIR_ENV",
    "default_runtime_dir",
    "ensure_endpoint_dir",
    "lock_endpoint",
    "resolve_endpoint",
]

APP_NAME = "lsp-cli"

# Overrides the runtime directory holding daemon sockets and logs
RUNTIME_DIR_ENV = "LSP_CLI_RUNTIME_DIR"

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")


@dataclass(frozen=True)
class Endpoint:
    """Where a daemon listens and where it logs by default."""

    socket_path: Path
    default_log_path: Path
    lock_path: Path

    @property
    def directory(self) -> Path:
        return self.socket_path.parent


def default_runtime_dir() -> Path:
    """Directory under which daemon endpoints are created."""
    override = os.environ.get(RUNTIME_DIR_ENV, "").strip()
    if override:
        return Path(override)
    return Path(platformdirs.user_runtime_dir(APP_NAME))


def _root_hash(root: Path | str) -> str:
    canonical = os.path.realpath(root)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:24]


def _safe_token(name: str) -> str:
    return _UNSAFE_CHARS.sub("_", name)


def resolve_endpoint(root: Path | str, server_name: str, runtime_dir: Optional[Path | str] = None) -> Endpoint:
    """Derive the endpoint for a workspace root and server name.

    Args:
        root: Workspace root; symlinks are resolved first
        server_name: Profile name of the language server
        runtime_dir: Base directory (defaults to :func:`default_runtime_dir`)

    Returns:
        The endpoint; nothing is created on disk
    """
    base = Path(runtime_dir) if runtime_dir is not None else default_runtime_dir()
    directory = base / _root_hash(root)
    safe = _safe_token(server_name)
    return Endpoint(
        socket_path=directory / f"sock-{safe}",
        default_log_path=directory / f"daemon-{safe}.log",
        lock_path=directory / f"lock-{safe}",
    )


def ensure_endpoint_dir(endpoint: Endpoint) -> None:
    """Create the endpoint directory, private to the current user."""
    endpoint.directory.mkdir(parents=True, exist_ok=True, mode=0o700)


def lock_endpoint(endpoint: Endpoint) -> Optional[IO[str]]:
    """Take the endpoint's exclusive lock without blocking.

    The lock is held until the returned file is closed, and records the
    holder's pid.

    Returns:
        The open lock file, or None if another daemon holds the lock
    """
    handle = open(endpoint.lock_path, "a+", encoding="utf-8")
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        handle.close()
        return None
    handle.seek(0)
    handle.truncate()
    handle.write(f"{os.getpid()}\n")
    handle.flush()
    return handle
