"""Starting a daemon on demand and waiting for it to come up."""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Callable, Optional

from lspcli.daemon.client import DaemonClient, DaemonConnectionError
from lspcli.daemon.endpoint import RUNTIME_DIR_ENV, Endpoint
from lspcli.daemon.protocol import DaemonError

__all__ = [
    "DaemonUnavailableError",
    "connect_or_autostart",
    "spawn_daemon_detached",
    "wait_for_socket_gone",
]

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1


class DaemonUnavailableError(DaemonError):
    """Raised when no daemon can be reached, even after launching one."""

    pass


def spawn_daemon_detached(
    root: Path | str,
    server: str,
    *,
    config: Optional[Path | str] = None,
    server_cmd: Optional[str] = None,
    runtime_dir: Optional[Path | str] = None,
) -> subprocess.Popen:
    """Launch ``lsp-cli daemon`` in its own session with stdio discarded.

    The child outlives the calling process; nothing waits for it.

    Returns:
        The launched process handle
    """
    args = [sys.executable, "-m", "lspcli", "--root", str(root), "--server", server]
    if config is not None:
        args.extend(["--config", str(config)])
    if server_cmd:
        args.extend(["--server-cmd", server_cmd])
    args.append("daemon")

    env = os.environ.copy()
    if runtime_dir is not None:
        env[RUNTIME_DIR_ENV] = str(runtime_dir)

    logger.debug("Spawning daemon: %s", " ".join(args))
    return subprocess.Popen(
        args,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        env=env,
        start_new_session=True,
        close_fds=True,
    )


async def connect_or_autostart(
    endpoint: Endpoint,
    launch: Optional[Callable[[], object]],
    connect_timeout: float = 1.5,
    deadline: float = 5.0,
) -> DaemonClient:
    """Connect to the endpoint's daemon, launching it at most once.

    Args:
        endpoint: Where the daemon listens
        launch: Starts a daemon; None disables autostart
        connect_timeout: Timeout of each connection attempt
        deadline: Total time to wait for a launched daemon

    Returns:
        A connected client

    Raises:
        DaemonUnavailableError: If no daemon answers before the deadline
    """
    try:
        return await DaemonClient.connect(endpoint.socket_path, connect_timeout)
    except DaemonConnectionError as exc:
        if launch is None:
            raise DaemonUnavailableError(str(exc)) from exc
        logger.debug("No daemon at %s (%s); launching one", endpoint.socket_path, exc)

    try:
        launch()
    except OSError as exc:
        raise DaemonUnavailableError(f"failed to launch daemon: {exc}") from exc

    loop = asyncio.get_running_loop()
    give_up_at = loop.time() + deadline
    last_error: Optional[Exception] = None
    while loop.time() < give_up_at:
        if endpoint.socket_path.exists():
            remaining = max(0.05, min(connect_timeout, give_up_at - loop.time()))
            try:
                return await DaemonClient.connect(endpoint.socket_path, remaining)
            except DaemonConnectionError as exc:
                last_error = exc
        await asyncio.sleep(POLL_INTERVAL)

    detail = f": {last_error}" if last_error is not None else ""
    raise DaemonUnavailableError(
        f"daemon did not become available within {deadline:g}s at {endpoint.socket_path}{detail}"
    )


async def wait_for_socket_gone(path: Path | str, timeout: float) -> bool:
    """Wait for a socket file to disappear.

    Returns:
        True if the path no longer exists within the timeout
    """
    path = Path(path)
    loop = asyncio.get_running_loop()
    give_up_at = loop.time() + timeout
    while path.exists():
        if loop.time() >= give_up_at:
            return False
        await asyncio.sleep(POLL_INTERVAL / 2)
    return True
