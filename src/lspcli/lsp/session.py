"""A client session with one spawned language server process."""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import signal
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Optional

from lsprotocol import types
from lsprotocol.types import TextDocumentSyncKind

from lspcli.lsp.jsonrpc import (
    ConnectionClosedError,
    JsonRpcConnection,
    NotificationCallback,
    RequestHandler,
    ResponseError,
)
from lspcli.lsp.position_utils import compute_incremental_change
from lspcli.profiles import ServerProfile

__all__ = [
    "LanguageServerSession",
    "OpenDocument",
    "SessionError",
    "SessionNotReadyError",
    "SessionState",
    "ServerStartError",
    "ServerExitedError",
    "ServerCrashedError",
    "read_document_text",
    "sync_kind_from_capabilities",
]

logger = logging.getLogger(__name__)

STDERR_CAPTURE_LIMIT = 8192

CLIENT_CAPABILITIES: dict[str, Any] = {
    "workspace": {
        "applyEdit": True,
        "workspaceEdit": {
            "documentChanges": True,
            "resourceOperations": ["create", "rename", "delete"],
        },
        "executeCommand": {},
        "symbol": {},
        "configuration": False,
    },
    "textDocument": {
        "synchronization": {"didSave": True},
        "documentSymbol": {"hierarchicalDocumentSymbolSupport": True},
        "references": {},
        "definition": {"linkSupport": True},
        "implementation": {},
        "typeDefinition": {},
        "hover": {"contentFormat": ["markdown", "plaintext"]},
        "completion": {"completionItem": {"snippetSupport": False}},
        "signatureHelp": {},
        "documentHighlight": {},
        "rename": {"prepareSupport": True},
        "codeAction": {
            "codeActionLiteralSupport": {
                "codeActionKind": {"valueSet": ["", "quickfix", "refactor", "source"]}
            }
        },
        "formatting": {},
        "rangeFormatting": {},
        "publishDiagnostics": {},
        "semanticTokens": {
            "requests": {"range": True, "full": {"delta": True}},
            "tokenTypes": [t.value for t in types.SemanticTokenTypes],
            "tokenModifiers": [m.value for m in types.SemanticTokenModifiers],
            "formats": ["relative"],
        },
    },
}


class SessionState(enum.Enum):
    """Lifecycle of a language server session."""

    UNSTARTED = "unstarted"
    STARTING = "starting"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class SessionError(Exception):
    """Base class for session failures."""

    pass


class SessionNotReadyError(SessionError):
    """Raised when the session is used outside the READY state."""

    pass


class ServerStartError(SessionError):
    """Raised when the server process cannot be started or initialized."""

    pass


class ServerExitedError(ServerStartError):
    """Raised when the server process exits before the handshake completes."""

    def __init__(self, returncode: Optional[int], stderr: str = ""):
        self.returncode = returncode
        self.signal = None
        if returncode is not None and returncode < 0:
            try:
                self.signal = signal.Signals(-returncode).name
            except ValueError:
                self.signal = str(-returncode)
        self.stderr = stderr
        detail = f"\n{stderr.rstrip()}" if stderr.strip() else ""
        super().__init__(
            f"language server exited before initialize "
            f"(code={returncode} signal={self.signal}){detail}"
        )


class ServerCrashedError(SessionError):
    """Raised by shutdown when the server process had already died."""

    pass


@dataclass
class OpenDocument:
    """A document whose content the server is tracking.

    ``text`` always equals the last text sent to the server.
    """

    uri: str
    language_id: str
    version: int
    text: str


def read_document_text(path: Path) -> str:
    """Read a UTF-8 file without newline translation."""
    with open(path, "r", encoding="utf-8", newline="") as f:
        return f.read()


def sync_kind_from_capabilities(capabilities: Any) -> TextDocumentSyncKind:
    """Extract the document sync kind from server capabilities.

    ``textDocumentSync`` may be a bare kind, an options object with a
    ``change`` member, or missing.
    """
    if not isinstance(capabilities, dict):
        return TextDocumentSyncKind.None_
    sync = capabilities.get("textDocumentSync")
    if isinstance(sync, dict):
        sync = sync.get("change")
    if isinstance(sync, bool) or not isinstance(sync, int):
        return TextDocumentSyncKind.None_
    try:
        return TextDocumentSyncKind(sync)
    except ValueError:
        return TextDocumentSyncKind.None_


class LanguageServerSession:
    """Owns one language server process and the documents open in it.

    All state lives on the instance; any number of sessions can run in one
    process. Requests are plain pass-throughs: the caller decides which
    documents to synchronize before asking the server anything.
    """

    def __init__(
        self,
        root: Path,
        profile: ServerProfile,
        *,
        request_timeout: Optional[float] = None,
        shutdown_timeout: float = 1.0,
    ):
        self.root = Path(root)
        self.profile = profile
        self.request_timeout = request_timeout
        self.shutdown_timeout = shutdown_timeout

        self._state = SessionState.UNSTARTED
        self._process: Optional[asyncio.subprocess.Process] = None
        self._connection: Optional[JsonRpcConnection] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._stderr = ""
        self._shutdown_task: Optional[asyncio.Task] = None

        self._documents: dict[str, OpenDocument] = {}
        self._notification_callbacks: list[tuple[str, NotificationCallback]] = []
        self._request_handlers: dict[str, RequestHandler] = {}

        self.sync_kind = TextDocumentSyncKind.None_
        self.server_capabilities: dict[str, Any] = {}
        self.server_info: Optional[dict[str, Any]] = None

    @property
    def state(self) -> SessionState:
        """Current lifecycle state; a READY session whose server died reads as TERMINATED."""
        if self._state is SessionState.READY and self._server_gone():
            return SessionState.TERMINATED
        return self._state

    @property
    def is_ready(self) -> bool:
        return self.state is SessionState.READY

    def _server_gone(self) -> bool:
        if self._connection is not None and self._connection.closed:
            return True
        return self._process is not None and self._process.returncode is not None

    @property
    def stderr_output(self) -> str:
        """Captured head of the server's stderr."""
        return self._stderr

    @property
    def documents(self) -> dict[str, OpenDocument]:
        """Open documents keyed by URI (read-only view by convention)."""
        return dict(self._documents)

    async def __aenter__(self) -> "LanguageServerSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await self.shutdown()
        except ServerCrashedError:
            if exc is None:
                raise
            logger.debug("Ignoring crashed server during unwind")

    async def start(self) -> None:
        """Spawn the server and complete the initialize handshake.

        Raises:
            ServerStartError: If the process cannot be spawned or the
                handshake fails
            ServerExitedError: If the process exits before answering
        """
        if self._state is not SessionState.UNSTARTED:
            return
        self._state = SessionState.STARTING

        cwd = self.profile.cwd or str(self.root)
        logger.debug("Starting %s: %s %s", self.profile.name, self.profile.command, " ".join(self.profile.args))
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.profile.command,
                *self.profile.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=self.profile.process_env(),
            )
        except OSError as exc:
            self._state = SessionState.TERMINATED
            raise ServerStartError(f"failed to spawn {self.profile.command!r}: {exc}") from exc

        process = self._process
        self._stderr_task = asyncio.create_task(self._drain_stderr(process.stderr))
        self._connection = JsonRpcConnection(process.stdout, process.stdin)
        for method, callback in self._notification_callbacks:
            self._connection.on_notification(method, callback)
        for method, handler in self._request_handlers.items():
            self._connection.on_request(method, handler)
        self._connection.listen()

        try:
            result = await self._handshake(process)
        except BaseException:
            await self._terminate()
            raise

        if not isinstance(result, dict):
            result = {}
        capabilities = result.get("capabilities")
        self.server_capabilities = capabilities if isinstance(capabilities, dict) else {}
        self.server_info = result.get("serverInfo")
        self.sync_kind = sync_kind_from_capabilities(self.server_capabilities)

        try:
            await self._connection.send_notification(types.INITIALIZED, {})
        except ConnectionClosedError as exc:
            await self._terminate()
            raise ServerStartError(f"language server closed the connection: {exc}") from exc

        self._state = SessionState.READY
        logger.debug("%s ready (sync=%s)", self.profile.name, self.sync_kind.name)

    async def _handshake(self, process: asyncio.subprocess.Process) -> Any:
        root_uri = self.root.absolute().as_uri()
        params = {
            "processId": os.getpid(),
            "clientInfo": {"name": "lsp-cli"},
            "rootUri": root_uri,
            "rootPath": str(self.root),
            "workspaceFolders": [{"uri": root_uri, "name": self.root.name or str(self.root)}],
            "capabilities": CLIENT_CAPABILITIES,
        }
        if self.profile.initialization_options is not None:
            params["initializationOptions"] = self.profile.initialization_options

        initialize = asyncio.create_task(self._connection.send_request(types.INITIALIZE, params))
        exited = asyncio.create_task(process.wait())
        try:
            await asyncio.wait({initialize, exited}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            exited.cancel()

        if initialize.done():
            try:
                return initialize.result()
            except ConnectionClosedError:
                # stdout closed; the exit status is about to be available
                pass
            except ResponseError as exc:
                raise ServerStartError(f"initialize failed: {exc}") from exc
        else:
            initialize.cancel()

        try:
            returncode = await asyncio.wait_for(process.wait(), self.shutdown_timeout)
        except asyncio.TimeoutError:
            returncode = process.returncode
        await self._finish_stderr()
        raise ServerExitedError(returncode, self._stderr)

    async def shutdown(self) -> None:
        """Shut the server down politely, then forcefully.

        Idempotent; the final state is always TERMINATED.

        Raises:
            ServerCrashedError: If the server process had already died
        """
        if self._state is SessionState.UNSTARTED:
            self._state = SessionState.TERMINATED
            return
        if self._state is SessionState.TERMINATED and (
            self._shutdown_task is None or self._shutdown_task.done()
        ):
            return
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.create_task(self._shutdown())
        await asyncio.shield(self._shutdown_task)

    async def _shutdown(self) -> None:
        self._state = SessionState.SHUTTING_DOWN
        process = self._process
        failure: Optional[BaseException] = None
        try:
            if process is None or process.returncode is not None or self._connection.closed:
                failure = ServerCrashedError(
                    f"language server is not running (code={process.returncode if process else None})"
                )
            else:
                await asyncio.wait_for(
                    self._connection.send_request(types.SHUTDOWN), self.shutdown_timeout
                )
                await self._connection.send_notification(types.EXIT)
                try:
                    await asyncio.wait_for(process.wait(), self.shutdown_timeout)
                except asyncio.TimeoutError:
                    logger.debug("%s did not exit in time; killing", self.profile.name)
        except (ConnectionClosedError, ResponseError, asyncio.TimeoutError) as exc:
            if process is not None and process.returncode is not None:
                failure = ServerCrashedError(f"language server crashed (code={process.returncode})")
                failure.__cause__ = exc
            else:
                logger.debug("Orderly shutdown of %s failed: %s", self.profile.name, exc)
        finally:
            await self._terminate()
        if failure is not None:
            raise failure

    async def _terminate(self) -> None:
        process = self._process
        if process is not None and process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        if self._connection is not None:
            await self._connection.close()
        await self._finish_stderr()
        self._documents.clear()
        self._state = SessionState.TERMINATED

    async def _drain_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace")
            if len(self._stderr) < STDERR_CAPTURE_LIMIT:
                self._stderr += text[: STDERR_CAPTURE_LIMIT - len(self._stderr)]
            logger.debug("[%s stderr] %s", self.profile.name, text.rstrip())

    async def _finish_stderr(self) -> None:
        task = self._stderr_task
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), 0.5)
        except asyncio.TimeoutError:
            task.cancel()

    def _require_ready(self, what: str) -> JsonRpcConnection:
        state = self.state
        if state is not SessionState.READY:
            raise SessionNotReadyError(f"cannot {what}: session is {state.value}")
        return self._connection

    async def request(self, method: str, params: Any = None) -> Any:
        """Send a request to the server and return its result.

        Raises:
            SessionNotReadyError: If called before start() completed or after shutdown
            ResponseError: If the server answers with an error
            ConnectionClosedError: If the server dies first
        """
        connection = self._require_ready(f"request {method}")
        call = connection.send_request(method, params)
        if self.request_timeout is None:
            return await call
        return await asyncio.wait_for(call, self.request_timeout)

    async def notify(self, method: str, params: Any = None) -> None:
        """Send a notification to the server."""
        connection = self._require_ready(f"notify {method}")
        await connection.send_notification(method, params)

    def on_notification(self, method: str, callback: NotificationCallback) -> Callable[[], None]:
        """Subscribe to server notifications; may be called before start().

        Returns:
            A callable that removes the subscription
        """
        entry = (method, callback)
        self._notification_callbacks.append(entry)
        unsubscribe_connection = None
        if self._connection is not None:
            unsubscribe_connection = self._connection.on_notification(method, callback)

        def unsubscribe() -> None:
            if entry in self._notification_callbacks:
                self._notification_callbacks.remove(entry)
            if unsubscribe_connection is not None:
                unsubscribe_connection()

        return unsubscribe

    @asynccontextmanager
    async def handling(self, method: str, handler: RequestHandler) -> AsyncIterator[None]:
        """Answer a server-initiated request method for the duration of a block."""
        previous = self._request_handlers.get(method)
        self._request_handlers[method] = handler
        unregister = None
        if self._connection is not None:
            unregister = self._connection.on_request(method, handler)
        try:
            yield
        finally:
            if unregister is not None:
                unregister()
            if previous is None:
                self._request_handlers.pop(method, None)
            else:
                self._request_handlers[method] = previous
                if self._connection is not None:
                    self._connection.on_request(method, previous)

    def _resolve(self, path: Path | str) -> Path:
        path = Path(path)
        if not path.is_absolute():
            path = self.root / path
        return path

    def uri_for(self, path: Path | str) -> str:
        """File URI for a path (relative paths are taken from the workspace root)."""
        return self._resolve(path).absolute().as_uri()

    def get_document(self, path: Path | str) -> Optional[OpenDocument]:
        return self._documents.get(self.uri_for(path))

    async def open_document(self, path: Path | str) -> OpenDocument:
        """Make the server track a file, or resync it if already open.

        Returns:
            The tracked document after the call
        """
        self._require_ready("open document")
        resolved = self._resolve(path)
        text = read_document_text(resolved)
        uri = resolved.absolute().as_uri()
        if uri in self._documents:
            return await self.change_document(resolved, text)

        document = OpenDocument(
            uri=uri,
            language_id=self.profile.language_id_for(resolved),
            version=1,
            text=text,
        )
        await self.notify(
            types.TEXT_DOCUMENT_DID_OPEN,
            {
                "textDocument": {
                    "uri": document.uri,
                    "languageId": document.language_id,
                    "version": document.version,
                    "text": document.text,
                }
            },
        )
        self._documents[uri] = document
        return document

    async def change_document(self, path: Path | str, text: Optional[str] = None) -> OpenDocument:
        """Send the server a document's new content.

        Unchanged text sends nothing and keeps the version. Untracked
        documents are opened instead.

        Args:
            path: File to synchronize
            text: New content; read from disk when omitted

        Returns:
            The tracked document after the call
        """
        self._require_ready("change document")
        resolved = self._resolve(path)
        uri = resolved.absolute().as_uri()
        document = self._documents.get(uri)
        if document is None:
            return await self.open_document(resolved)

        new_text = read_document_text(resolved) if text is None else text
        if new_text == document.text:
            return document

        if self.sync_kind is TextDocumentSyncKind.Incremental:
            change_range, replacement = compute_incremental_change(document.text, new_text)
            content_changes = [
                {
                    "range": {
                        "start": {"line": change_range.start.line, "character": change_range.start.character},
                        "end": {"line": change_range.end.line, "character": change_range.end.character},
                    },
                    "text": replacement,
                }
            ]
        else:
            content_changes = [{"text": new_text}]

        version = document.version + 1
        await self.notify(
            types.TEXT_DOCUMENT_DID_CHANGE,
            {
                "textDocument": {"uri": uri, "version": version},
                "contentChanges": content_changes,
            },
        )
        document.version = version
        document.text = new_text
        return document

    async def save_document(self, path: Path | str) -> OpenDocument:
        """Tell the server a document was saved, including its text."""
        document = await self.open_document(path)
        await self.notify(
            types.TEXT_DOCUMENT_DID_SAVE,
            {"textDocument": {"uri": document.uri}, "text": document.text},
        )
        return document

    async def close_document(self, path: Path | str) -> None:
        """Stop tracking a document."""
        self._require_ready("close document")
        uri = self.uri_for(path)
        if self._documents.pop(uri, None) is None:
            return
        await self.notify(types.TEXT_DOCUMENT_DID_CLOSE, {"textDocument": {"uri": uri}})
