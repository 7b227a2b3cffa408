"""
State shared by every command of one CLI invocation.
"""

from __future__ import annotations

import asyncio
import enum
import json
from contextlib import contextmanager
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any, Awaitable, Iterator, NoReturn, Optional, TypeVar

import typer
from rich.markup import escape

from lspcli.cli_commands import get_action_failure_string
from lspcli.config import ConfigError, resolve_server_profile
from lspcli.daemon.autostart import (
    DaemonUnavailableError,
    connect_or_autostart,
    spawn_daemon_detached,
)
from lspcli.daemon.client import DaemonClient
from lspcli.daemon.endpoint import Endpoint, resolve_endpoint
from lspcli.daemon.protocol import DaemonError
from lspcli.gateway import Gateway
from lspcli.logging import Logger
from lspcli.lsp.jsonrpc import ConnectionClosedError, ResponseError
from lspcli.lsp.position_utils import PositionError
from lspcli.lsp.session import SessionError
from lspcli.lsp.workspace_edit import WorkspaceEditError
from lspcli.profiles import ServerProfile

__all__ = ["CommandError", "Invocation", "OutputFormat", "REPORTED_ERRORS"]

T = TypeVar("T")


class OutputFormat(str, enum.Enum):
    JSON = "json"
    PRETTY = "pretty"


class CommandError(Exception):
    """
    Raised by a command for invalid input or an unusable result.
    """

    pass


# Failures reported as a one-line error with exit status 1
REPORTED_ERRORS = (
    CommandError,
    ConfigError,
    DaemonError,
    SessionError,
    ResponseError,
    ConnectionClosedError,
    WorkspaceEditError,
    PositionError,
    OSError,
)


@dataclass
class Invocation:
    """
    Global options of one CLI invocation and the helpers built from them.
    """

    root: Path
    server: str
    logger: Logger
    server_cmd: Optional[str] = None
    config: Optional[Path] = None
    output_format: OutputFormat = OutputFormat.JSON
    use_daemon: bool = True
    runtime_dir: Optional[Path] = None

    def profile(self) -> ServerProfile:
        return resolve_server_profile(self.server, self.root, self.config, self.server_cmd)

    def endpoint(self) -> Endpoint:
        return resolve_endpoint(self.root, self.server, self.runtime_dir)

    def launcher(self):
        """Callable that starts a detached daemon for this workspace."""
        return partial(
            spawn_daemon_detached,
            self.root,
            self.server,
            config=self.config,
            server_cmd=self.server_cmd,
            runtime_dir=self.runtime_dir,
        )

    def gateway(self) -> Gateway:
        return Gateway(
            self.root,
            self.profile(),
            use_daemon=self.use_daemon,
            launcher=self.launcher(),
            runtime_dir=self.runtime_dir,
        )

    async def daemon_client(self, autostart: bool = True) -> DaemonClient:
        """
        Connect to the workspace daemon for a daemon-only command.

        Raises:
            CommandError: If the invocation was started with --no-daemon
            DaemonUnavailableError: If the daemon cannot be reached
        """
        if not self.use_daemon:
            raise CommandError("this command requires the daemon (drop --no-daemon)")
        if autostart:
            # Validate the profile before launching anything in the background
            self.profile()
        launch = self.launcher() if autostart else None
        return await connect_or_autostart(self.endpoint(), launch)

    def emit(self, value: Any, pretty: Optional[str] = None) -> None:
        """
        Print a command result on stdout.

        Args:
            value: JSON-compatible result
            pretty: Human-readable rendering used with ``--format pretty``
        """
        if self.output_format is OutputFormat.PRETTY and pretty is not None:
            typer.echo(pretty)
            return
        typer.echo(json.dumps(value, indent=2, ensure_ascii=False))

    @contextmanager
    def reporting_errors(self) -> Iterator[None]:
        """
        Report known failures on stderr and turn them into exit status 1.
        """
        try:
            yield
        except REPORTED_ERRORS as e:
            self.fail(str(e))
        except KeyboardInterrupt:
            self.logger.warn("Interrupted")
            raise typer.Exit(130)

    def fail(self, message: str) -> NoReturn:
        """
        Report a failure as one line on stderr and exit with status 1.
        """
        self.logger.error(f"{escape(get_action_failure_string())} Error: {escape(message)}")
        raise typer.Exit(1)

    def run(self, coro: Awaitable[T]) -> T:
        """
        Run a command coroutine to completion, reporting its failures.
        """
        with self.reporting_errors():
            return asyncio.run(coro)
