"""The session daemon: one long-lived language server shared by many invocations.

The daemon listens on a Unix socket at the workspace's endpoint and speaks
the newline-delimited JSON protocol from :mod:`lspcli.daemon.protocol`.
Diagnostics the server pushes are buffered in an :class:`EventQueue` for
clients to poll.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from pathlib import Path
from typing import IO, Any, Awaitable, Callable, Optional

from lsprotocol import types

from lspcli.daemon import protocol
from lspcli.daemon.client import STREAM_LIMIT
from lspcli.daemon.endpoint import ensure_endpoint_dir, lock_endpoint, resolve_endpoint
from lspcli.daemon.events import EventQueue
from lspcli.daemon.log_sink import DaemonLog
from lspcli.daemon.protocol import DaemonError, ProtocolError, decode_line, encode_line
from lspcli.lsp.session import LanguageServerSession, SessionError
from lspcli.lsp.workspace_edit import WorkspaceEditError, handle_apply_edit_request, uri_to_path
from lspcli.profiles import ServerProfile

__all__ = [
    "DaemonAlreadyRunningError",
    "DaemonServer",
    "run_daemon",
]

logger = logging.getLogger(__name__)

SessionFactory = Callable[[Path, ServerProfile], LanguageServerSession]

STALE_CONNECT_TIMEOUT = 1.0


class DaemonAlreadyRunningError(DaemonError):
    """Raised when another daemon is already serving the endpoint."""

    pass


class DaemonCommandError(DaemonError):
    """Raised for a request the daemon cannot carry out."""

    pass


def _default_session_factory(root: Path, profile: ServerProfile) -> LanguageServerSession:
    return LanguageServerSession(root, profile)


def _describe(exc: BaseException) -> str:
    message = str(exc)
    return message if message else type(exc).__name__


def _document_uri(params: Any) -> Optional[str]:
    if not isinstance(params, dict):
        return None
    document = params.get("textDocument")
    if isinstance(document, dict) and isinstance(document.get("uri"), str):
        return document["uri"]
    if isinstance(document, str):
        return document
    return None


async def _read_request_line(reader: asyncio.StreamReader) -> bytes:
    """Read one request line; empty at end of stream.

    Raises:
        ProtocolError: For a line longer than the stream limit, once the
            rest of it has been skipped
    """
    try:
        return await reader.readuntil(b"\n")
    except asyncio.IncompleteReadError as exc:
        return exc.partial
    except asyncio.LimitOverrunError as exc:
        consumed = exc.consumed
    while True:
        await reader.readexactly(consumed)
        try:
            await reader.readuntil(b"\n")
        except asyncio.IncompleteReadError:
            pass
        except asyncio.LimitOverrunError as exc:
            consumed = exc.consumed
            continue
        raise ProtocolError("request line exceeds the size limit")


class DaemonServer:
    """Serves one workspace root and one language server profile.

    The daemon process stays up while the language server is stopped or
    restarted; only ``daemon/stop`` or a signal ends it.
    """

    def __init__(
        self,
        root: Path | str,
        profile: ServerProfile,
        *,
        runtime_dir: Optional[Path | str] = None,
        session_factory: SessionFactory = _default_session_factory,
        line_limit: int = STREAM_LIMIT,
    ):
        self.root = Path(root).absolute()
        self.profile = profile
        self.endpoint = resolve_endpoint(self.root, profile.name, runtime_dir)
        self.events = EventQueue()
        self.log = DaemonLog()

        self._session_factory = session_factory
        self._line_limit = line_limit
        self._session: Optional[LanguageServerSession] = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._writers: set[asyncio.StreamWriter] = set()
        self._background: set[asyncio.Task] = set()
        self._lifecycle_lock = asyncio.Lock()
        self._apply_lock = asyncio.Lock()
        self._stopped = asyncio.Event()
        self._stop_task: Optional[asyncio.Task] = None
        self._started_at: Optional[int] = None
        self._lock_file: Optional[IO[str]] = None
        self._socket_inode: Optional[int] = None

        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[Any]]] = {
            protocol.PING: self._handle_ping,
            protocol.DAEMON_STATUS: self._handle_daemon_status,
            protocol.DAEMON_STOP: self._handle_daemon_stop,
            protocol.DAEMON_LOG_GET: self._handle_log_get,
            protocol.DAEMON_LOG_SET: self._handle_log_set,
            protocol.EVENTS_GET: self._handle_events_get,
            protocol.LSP_REQUEST: self._handle_lsp_request,
            protocol.LSP_REQUEST_AND_APPLY: self._handle_lsp_request_and_apply,
            protocol.LSP_NOTIFY: self._handle_lsp_notify,
            protocol.LSP_SAVE: self._handle_lsp_save,
            protocol.SERVER_STATUS: self._handle_server_status,
            protocol.SERVER_STOP: self._handle_server_stop,
            protocol.SERVER_RESTART: self._handle_server_restart,
        }

    @property
    def socket_path(self) -> Path:
        return self.endpoint.socket_path

    @property
    def session(self) -> Optional[LanguageServerSession]:
        return self._session

    @property
    def is_serving(self) -> bool:
        return self._server is not None

    async def start(self) -> None:
        """Start the language server and begin listening.

        Raises:
            DaemonAlreadyRunningError: If a live daemon owns the socket
            ServerStartError: If the language server fails to start
        """
        if self._server is not None or self._stop_task is not None or self._lock_file is not None:
            return
        ensure_endpoint_dir(self.endpoint)
        # Held for the daemon's lifetime; a second daemon for the endpoint stops here
        self._lock_file = lock_endpoint(self.endpoint)
        if self._lock_file is None:
            raise DaemonAlreadyRunningError(f"another daemon holds {self.endpoint.lock_path}")

        try:
            await self._claim_socket()
            self._session = await self._start_session()
            try:
                self._server = await asyncio.start_unix_server(
                    self._handle_client, path=str(self.socket_path), limit=self._line_limit
                )
            except OSError:
                await self._shutdown_session()
                raise
        except BaseException:
            self._release_lock()
            raise
        self._socket_inode = self.socket_path.stat().st_ino
        self._started_at = int(time.time() * 1000)
        logger.info("Daemon for %s (%s) listening on %s", self.root, self.profile.name, self.socket_path)

    async def stop(self) -> None:
        """Stop serving, shut the language server down and remove the socket.

        Idempotent; concurrent callers wait for the same stop.
        """
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self._stop())
        await asyncio.shield(self._stop_task)

    def request_stop(self) -> None:
        """Schedule :meth:`stop` from synchronous code such as a signal handler."""
        task = asyncio.create_task(self.stop())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def _stop(self) -> None:
        logger.info("Stopping daemon at %s", self.socket_path)
        server = self._server
        self._server = None
        if server is not None:
            server.close()
        for writer in list(self._writers):
            writer.close()
        self._writers.clear()

        async with self._lifecycle_lock:
            await self._shutdown_session()

        self.log.close()
        self._remove_socket()
        self._release_lock()
        self._stopped.set()

    def _remove_socket(self) -> None:
        inode = self._socket_inode
        self._socket_inode = None
        if inode is None:
            return
        try:
            # Only the socket this daemon bound
            if self.socket_path.stat().st_ino == inode:
                self.socket_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove socket %s: %s", self.socket_path, exc)

    def _release_lock(self) -> None:
        lock_file = self._lock_file
        self._lock_file = None
        if lock_file is not None:
            lock_file.close()

    async def _claim_socket(self) -> None:
        path = self.socket_path
        if not path.exists() and not path.is_symlink():
            return
        try:
            _, writer = await asyncio.wait_for(asyncio.open_unix_connection(str(path)), STALE_CONNECT_TIMEOUT)
        except (OSError, asyncio.TimeoutError):
            logger.debug("Removing stale socket %s", path)
            path.unlink(missing_ok=True)
            return
        writer.close()
        raise DaemonAlreadyRunningError(f"a daemon is already listening on {path}")

    async def _start_session(self) -> LanguageServerSession:
        session = self._session_factory(self.root, self.profile)
        # Subscribe before the handshake so early diagnostics are kept
        session.on_notification(
            types.TEXT_DOCUMENT_PUBLISH_DIAGNOSTICS,
            lambda params: self.events.push("diagnostics", params),
        )
        await session.start()
        return session

    async def _shutdown_session(self) -> None:
        session = self._session
        self._session = None
        if session is None:
            return
        try:
            await session.shutdown()
        except SessionError as exc:
            logger.warning("Language server shutdown: %s", exc)

    # Connections

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.add(writer)
        try:
            while True:
                try:
                    line = await _read_request_line(reader)
                    if not line:
                        break
                    message = decode_line(line)
                except ConnectionError as exc:
                    logger.debug("Dropping client connection: %s", exc)
                    break
                except ProtocolError as exc:
                    if not await self._reply(writer, protocol.error_response(protocol.PARSE_ERROR_ID, str(exc))):
                        break
                    continue
                if message is None:
                    continue

                request_id = message.get("id")
                if not isinstance(request_id, (str, int)) or isinstance(request_id, bool):
                    request_id = "<no-id>"
                cmd = message.get("cmd")
                try:
                    result = await self._dispatch(cmd, message)
                    reply = protocol.ok_response(request_id, result)
                except Exception as exc:
                    logger.debug("Request %s (%s) failed: %s", request_id, cmd, exc)
                    reply = protocol.error_response(request_id, _describe(exc))

                if not await self._reply(writer, reply):
                    break
                if cmd == protocol.DAEMON_STOP and reply["ok"]:
                    self.request_stop()
        finally:
            self._writers.discard(writer)
            if not writer.is_closing():
                writer.close()

    async def _reply(self, writer: asyncio.StreamWriter, reply: dict[str, Any]) -> bool:
        try:
            writer.write(encode_line(reply))
            await writer.drain()
        except (ConnectionError, OSError) as exc:
            logger.debug("Could not write reply: %s", exc)
            return False
        return True

    async def _dispatch(self, cmd: Any, message: dict[str, Any]) -> Any:
        handler = self._handlers.get(cmd) if isinstance(cmd, str) else None
        if handler is None:
            raise DaemonCommandError(f"unsupported cmd: {cmd}")
        logger.debug("Handling %s", cmd)
        return await handler(message)

    # Commands

    def _require_session(self) -> LanguageServerSession:
        session = self._session
        if session is None or not session.is_ready:
            raise DaemonCommandError("LSP server is not running")
        return session

    @staticmethod
    def _require_method(message: dict[str, Any]) -> str:
        method = message.get("method")
        if not isinstance(method, str) or not method:
            raise DaemonCommandError(f"{message.get('cmd')} requires method")
        return method

    async def _sync_document(self, session: LanguageServerSession, params: Any) -> None:
        uri = _document_uri(params)
        if uri is None or not uri.startswith("file://"):
            return
        try:
            path = uri_to_path(uri)
            if path.is_file():
                await session.change_document(path)
        except (OSError, UnicodeDecodeError, WorkspaceEditError) as exc:
            logger.debug("Could not synchronize %s: %s", uri, exc)

    async def _handle_ping(self, message: dict[str, Any]) -> Any:
        return {"ok": True}

    async def _handle_daemon_status(self, message: dict[str, Any]) -> Any:
        session = self._session
        return {
            "alive": True,
            "pid": os.getpid(),
            "startedAt": self._started_at,
            "socketPath": str(self.socket_path),
            "rootPath": str(self.root),
            "serverName": self.profile.name,
            "lsp": {
                "running": session is not None and session.is_ready,
                "state": session.state.value if session is not None else "stopped",
            },
        }

    async def _handle_daemon_stop(self, message: dict[str, Any]) -> Any:
        return {"stopped": True}

    async def _handle_log_get(self, message: dict[str, Any]) -> Any:
        return self.log.status()

    async def _handle_log_set(self, message: dict[str, Any]) -> Any:
        mode = message.get("mode")
        if mode == "discard":
            self.log.set_discard()
        elif mode == "file":
            path = message.get("path")
            if not isinstance(path, str) or not path:
                raise DaemonCommandError("daemon/log/set mode=file requires path")
            self.log.set_file(path)
        else:
            raise DaemonCommandError(f"unsupported log mode: {mode}")
        return self.log.status()

    async def _handle_events_get(self, message: dict[str, Any]) -> Any:
        batch = self.events.get(
            kind=message.get("kind"),
            since=message.get("since", 0),
            limit=message.get("limit"),
        )
        return batch.to_json()

    async def _handle_lsp_request(self, message: dict[str, Any]) -> Any:
        session = self._require_session()
        method = self._require_method(message)
        params = message.get("params")
        await self._sync_document(session, params)
        return await session.request(method, params)

    async def _handle_lsp_request_and_apply(self, message: dict[str, Any]) -> Any:
        session = self._require_session()
        method = self._require_method(message)
        params = message.get("params")
        await self._sync_document(session, params)

        applied_edits: list[Any] = []

        def apply_edit(edit_params: Any) -> dict[str, Any]:
            return handle_apply_edit_request(edit_params, applied_edits)

        async with self._apply_lock:
            async with session.handling(types.WORKSPACE_APPLY_EDIT, apply_edit):
                result = await session.request(method, params)
        return {"result": result, "appliedEdits": applied_edits}

    async def _handle_lsp_notify(self, message: dict[str, Any]) -> Any:
        session = self._require_session()
        method = self._require_method(message)
        await session.notify(method, message.get("params"))
        return {"notified": True}

    async def _handle_lsp_save(self, message: dict[str, Any]) -> Any:
        session = self._require_session()
        uris = message.get("uris")
        if not isinstance(uris, list) or not all(isinstance(uri, str) for uri in uris):
            raise DaemonCommandError("lsp/save requires uris")
        # Diagnostics caused by the saves come after this cursor
        cursor = self.events.last_cursor
        saved = []
        for uri in uris:
            document = await session.save_document(uri_to_path(uri))
            saved.append(document.uri)
        return {"saved": saved, "cursor": cursor}

    async def _handle_server_status(self, message: dict[str, Any]) -> Any:
        session = self._session
        return {
            "running": session is not None and session.is_ready,
            "state": session.state.value if session is not None else "stopped",
            "serverName": self.profile.name,
        }

    async def _handle_server_stop(self, message: dict[str, Any]) -> Any:
        async with self._lifecycle_lock:
            if self._session is None:
                return {"stopped": False, "alreadyStopped": True}
            await self._shutdown_session()
            return {"stopped": True}

    async def _handle_server_restart(self, message: dict[str, Any]) -> Any:
        async with self._lifecycle_lock:
            await self._shutdown_session()
            self._session = await self._start_session()
            return {"restarted": True}


async def run_daemon(
    root: Path | str,
    profile: ServerProfile,
    runtime_dir: Optional[Path | str] = None,
    log_file: Optional[Path | str] = None,
) -> None:
    """Run a daemon in the foreground until it is stopped.

    SIGINT and SIGTERM stop the daemon cleanly.

    Args:
        root: Workspace root
        profile: Language server to run
        runtime_dir: Base directory for the endpoint
        log_file: Start with the diagnostic log sink writing to this file
    """
    daemon = DaemonServer(root, profile, runtime_dir=runtime_dir)
    if log_file is not None:
        daemon.log.set_file(log_file)
    try:
        await daemon.start()
    except BaseException:
        daemon.log.close()
        raise

    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, daemon.request_stop)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            logger.debug("Cannot install handler for %s", sig.name)
    try:
        await daemon.wait_stopped()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await daemon.stop()
