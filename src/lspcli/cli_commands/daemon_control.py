"""
Commands that run, inspect and control the workspace daemon.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from lspcli.cli_commands import get_action_success_string, render
from lspcli.cli_commands.invocation import Invocation
from lspcli.daemon import protocol
from lspcli.daemon.autostart import DaemonUnavailableError, wait_for_socket_gone
from lspcli.daemon.server import run_daemon

SOCKET_GONE_TIMEOUT = 2.0


def daemon(inv: Invocation, log_file: Optional[Path]) -> None:
    """
    Run the daemon for this workspace in the foreground until stopped.
    """
    if not inv.use_daemon:
        inv.fail("the daemon command cannot be combined with --no-daemon")

    async def serve() -> None:
        await run_daemon(inv.root, inv.profile(), runtime_dir=inv.runtime_dir, log_file=log_file)

    inv.run(serve())


async def _daemon_command(inv: Invocation, cmd: str, **fields: Any) -> Any:
    client = await inv.daemon_client()
    async with client:
        return await client.request(cmd, **fields)


def daemon_status(inv: Invocation) -> None:
    """
    Show the daemon's status, starting it if needed.
    """
    status = inv.run(_daemon_command(inv, protocol.DAEMON_STATUS))
    inv.emit(status, render.render_mapping(status))


async def _daemon_stop(inv: Invocation) -> dict[str, Any]:
    socket_path = inv.endpoint().socket_path
    try:
        client = await inv.daemon_client(autostart=False)
    except DaemonUnavailableError:
        return {"stopped": False, "socketGone": not socket_path.exists()}

    async with client:
        await client.request(protocol.DAEMON_STOP)
    gone = await wait_for_socket_gone(socket_path, SOCKET_GONE_TIMEOUT)
    return {"stopped": True, "socketGone": gone}


def daemon_stop(inv: Invocation) -> None:
    """
    Stop the daemon if one is running; never starts one.
    """
    result = inv.run(_daemon_stop(inv))
    if result["stopped"]:
        pretty = f"{get_action_success_string()} Daemon stopped"
    else:
        pretty = "No daemon running"
    inv.emit(result, pretty)


def daemon_log(inv: Invocation, file: Optional[Path], default_file: bool, discard: bool) -> None:
    """
    Show or switch the daemon's diagnostic log sink.
    """
    chosen = sum(1 for flag in (file is not None, default_file, discard) if flag)
    if chosen > 1:
        inv.fail("use only one of --file, --default-file and --discard")

    if discard:
        cmd, fields = protocol.DAEMON_LOG_SET, {"mode": "discard"}
    elif file is not None:
        cmd, fields = protocol.DAEMON_LOG_SET, {"mode": "file", "path": str(Path(file).absolute())}
    elif default_file:
        path = inv.endpoint().default_log_path
        cmd, fields = protocol.DAEMON_LOG_SET, {"mode": "file", "path": str(path)}
    else:
        cmd, fields = protocol.DAEMON_LOG_GET, {}

    status = inv.run(_daemon_command(inv, cmd, **fields))
    inv.emit(status, render.render_mapping(status))


def events(inv: Invocation, kind: Optional[str], since: int, limit: Optional[int]) -> None:
    """
    Fetch events the daemon buffered after a cursor.
    """
    batch = inv.run(_daemon_command(inv, protocol.EVENTS_GET, kind=kind, since=since, limit=limit))
    inv.emit(batch, render.render_events(batch))


def server_status(inv: Invocation) -> None:
    status = inv.run(_daemon_command(inv, protocol.SERVER_STATUS))
    inv.emit(status, render.render_mapping(status))


def server_stop(inv: Invocation) -> None:
    """
    Stop the daemon's language server while keeping the daemon alive.
    """
    result = inv.run(_daemon_command(inv, protocol.SERVER_STOP))
    inv.emit(result, render.render_mapping(result))


def server_restart(inv: Invocation) -> None:
    result = inv.run(_daemon_command(inv, protocol.SERVER_RESTART))
    inv.emit(result, f"{get_action_success_string()} Language server restarted")
