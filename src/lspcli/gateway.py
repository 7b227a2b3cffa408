"""Per-invocation access to a language server, through the daemon or directly."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from lsprotocol import types

from lspcli.daemon import protocol
from lspcli.daemon.autostart import DaemonUnavailableError, connect_or_autostart
from lspcli.daemon.client import DaemonClient
from lspcli.daemon.endpoint import resolve_endpoint
from lspcli.lsp.session import LanguageServerSession, ServerCrashedError
from lspcli.lsp.workspace_edit import handle_apply_edit_request
from lspcli.profiles import ServerProfile

__all__ = ["Gateway", "VIA_DAEMON", "VIA_DIRECT"]

logger = logging.getLogger(__name__)

VIA_DAEMON = "daemon"
VIA_DIRECT = "direct"

DIAGNOSTICS_POLL_INTERVAL = 0.05


class Gateway:
    """Routes one invocation's LSP traffic.

    With ``use_daemon`` the gateway connects to the workspace daemon,
    launching it if needed. If the daemon stays unavailable it falls back
    to a one-shot session started just for this invocation. Use as an
    async context manager.
    """

    def __init__(
        self,
        root: Path | str,
        profile: ServerProfile,
        *,
        use_daemon: bool = True,
        launcher: Optional[Callable[[], object]] = None,
        runtime_dir: Optional[Path | str] = None,
        connect_timeout: float = 1.5,
        autostart_deadline: float = 5.0,
    ):
        self.root = Path(root).absolute()
        self.profile = profile
        self.use_daemon = use_daemon
        self.launcher = launcher
        self.runtime_dir = runtime_dir
        self.connect_timeout = connect_timeout
        self.autostart_deadline = autostart_deadline

        self._client: Optional[DaemonClient] = None
        self._session: Optional[LanguageServerSession] = None

    @property
    def via(self) -> Optional[str]:
        """``"daemon"`` or ``"direct"`` once opened."""
        if self._client is not None:
            return VIA_DAEMON
        if self._session is not None:
            return VIA_DIRECT
        return None

    async def __aenter__(self) -> "Gateway":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await self.close()
        except ServerCrashedError:
            if exc is None:
                raise
            logger.debug("Ignoring crashed server during unwind")

    async def open(self) -> None:
        if self.via is not None:
            return
        if self.use_daemon:
            endpoint = resolve_endpoint(self.root, self.profile.name, self.runtime_dir)
            try:
                self._client = await connect_or_autostart(
                    endpoint,
                    self.launcher,
                    connect_timeout=self.connect_timeout,
                    deadline=self.autostart_deadline,
                )
                return
            except DaemonUnavailableError as exc:
                logger.info("Daemon unavailable, using a direct session: %s", exc)

        session = LanguageServerSession(self.root, self.profile)
        await session.start()
        self._session = session

    async def close(self) -> None:
        client, self._client = self._client, None
        session, self._session = self._session, None
        if client is not None:
            await client.close()
        if session is not None:
            await session.shutdown()

    async def _open_documents(self, documents: Iterable[Path | str]) -> LanguageServerSession:
        session = self._session
        for document in documents:
            await session.open_document(document)
        return session

    async def request(self, method: str, params: Any = None, documents: Iterable[Path | str] = ()) -> Any:
        """Send an LSP request.

        Args:
            method: LSP method name
            params: Request params
            documents: Files to synchronize first (the daemon synchronizes
                the request's own text document itself)
        """
        if self._client is not None:
            return await self._client.request(protocol.LSP_REQUEST, method=method, params=params)
        session = await self._open_documents(documents)
        return await session.request(method, params)

    async def request_and_apply(
        self, method: str, params: Any = None, documents: Iterable[Path | str] = ()
    ) -> tuple[Any, list[Any]]:
        """Send a request, applying every edit the server pushes meanwhile.

        Returns:
            Tuple of (request result, workspace edits applied during the call)
        """
        if self._client is not None:
            reply = await self._client.request(protocol.LSP_REQUEST_AND_APPLY, method=method, params=params)
            return reply.get("result"), list(reply.get("appliedEdits") or [])

        session = await self._open_documents(documents)
        applied_edits: list[Any] = []

        def apply_edit(edit_params: Any) -> dict[str, Any]:
            return handle_apply_edit_request(edit_params, applied_edits)

        async with session.handling(types.WORKSPACE_APPLY_EDIT, apply_edit):
            result = await session.request(method, params)
        return result, applied_edits

    async def notify(self, method: str, params: Any = None, documents: Iterable[Path | str] = ()) -> None:
        if self._client is not None:
            await self._client.request(protocol.LSP_NOTIFY, method=method, params=params)
            return
        session = await self._open_documents(documents)
        await session.notify(method, params)

    async def daemon(self, cmd: str, **fields: Any) -> Any:
        """Issue a daemon-only command.

        Raises:
            DaemonUnavailableError: If this invocation runs without a daemon
        """
        if self._client is None:
            raise DaemonUnavailableError(f"{cmd} requires a running daemon")
        return await self._client.request(cmd, **fields)

    async def save_documents(self, paths: Iterable[Path | str], wait: float = 0.0) -> dict[str, list[Any]]:
        """Send ``didSave`` for files changed on disk and collect the diagnostics that follow.

        Each file is resynchronized from disk before its save notification.

        Args:
            paths: Files to save
            wait: Seconds to wait for ``publishDiagnostics``; 0 skips waiting

        Returns:
            The latest diagnostics per document URI, for the saved documents
            the server published within the wait
        """
        paths = [Path(p).absolute() for p in paths]
        uris = [p.as_uri() for p in paths]
        if self._client is not None:
            reply = await self._client.request(protocol.LSP_SAVE, uris=uris)
            if wait <= 0:
                return {}
            return await self._poll_diagnostics(set(uris), reply.get("cursor", 0), wait)

        session = self._session
        wanted = set(uris)
        collected: dict[str, list[Any]] = {}
        complete = asyncio.Event()

        def on_diagnostics(params: Any) -> None:
            if isinstance(params, dict) and params.get("uri") in wanted:
                collected[params["uri"]] = list(params.get("diagnostics") or [])
                if len(collected) == len(wanted):
                    complete.set()

        unsubscribe = session.on_notification(types.TEXT_DOCUMENT_PUBLISH_DIAGNOSTICS, on_diagnostics)
        try:
            for path in paths:
                await session.save_document(path)
            if wait > 0 and wanted:
                try:
                    await asyncio.wait_for(complete.wait(), wait)
                except asyncio.TimeoutError:
                    logger.debug("Diagnostics wait ended with %d of %d documents", len(collected), len(wanted))
        finally:
            unsubscribe()
        return collected if wait > 0 else {}

    async def _poll_diagnostics(self, uris: set[str], cursor: int, wait: float) -> dict[str, list[Any]]:
        collected: dict[str, list[Any]] = {}
        deadline = asyncio.get_running_loop().time() + wait
        while True:
            batch = await self._client.request(protocol.EVENTS_GET, kind="diagnostics", since=cursor)
            for event in batch.get("events", []):
                payload = event.get("payload")
                if isinstance(payload, dict) and payload.get("uri") in uris:
                    collected[payload["uri"]] = list(payload.get("diagnostics") or [])
            cursor = batch.get("nextCursor", cursor)
            remaining = deadline - asyncio.get_running_loop().time()
            if len(collected) == len(uris) or remaining <= 0:
                return collected
            await asyncio.sleep(min(DIAGNOSTICS_POLL_INTERVAL, remaining))
