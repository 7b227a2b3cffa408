"""Client side of the daemon channel."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

from lspcli.daemon.protocol import DaemonError, ProtocolError, decode_line, encode_line, new_request_id

__all__ = [
    "DaemonClient",
    "DaemonConnectionError",
    "DaemonRequestError",
    "STREAM_LIMIT",
]

logger = logging.getLogger(__name__)

# Replies can carry large LSP results on a single line
STREAM_LIMIT = 64 * 1024 * 1024


class DaemonConnectionError(DaemonError):
    """Raised when the daemon connection cannot be made or is lost."""

    pass


class DaemonRequestError(DaemonError):
    """Raised when the daemon answers ``ok: false``."""

    def __init__(self, cmd: str, error: str):
        super().__init__(error)
        self.cmd = cmd
        self.error = error


class DaemonClient:
    """One connection to a running daemon.

    Requests may be issued concurrently; replies are matched by id.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._reader = reader
        self._writer = writer
        self._pending: dict[str, asyncio.Future] = {}
        self._closed = False
        self._reader_task = asyncio.create_task(self._read_loop())

    @classmethod
    async def connect(cls, socket_path: Path | str, timeout: float = 1.5) -> "DaemonClient":
        """Open a connection to the daemon socket.

        Raises:
            DaemonConnectionError: If nothing accepts the connection in time
        """
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_unix_connection(str(socket_path), limit=STREAM_LIMIT), timeout
            )
        except asyncio.TimeoutError as exc:
            raise DaemonConnectionError(f"timeout connecting to daemon: {socket_path}") from exc
        except OSError as exc:
            raise DaemonConnectionError(f"cannot connect to daemon at {socket_path}: {exc}") from exc
        return cls(reader, writer)

    @property
    def closed(self) -> bool:
        return self._closed

    async def request(self, cmd: str, **fields: Any) -> Any:
        """Send a command and wait for its reply.

        Args:
            cmd: Daemon command name
            **fields: Command-specific request fields

        Returns:
            The reply's ``result``

        Raises:
            DaemonRequestError: If the daemon reports a failure
            DaemonConnectionError: If the connection is lost first
        """
        if self._closed:
            raise DaemonConnectionError("daemon connection closed")
        request_id = new_request_id()
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        message = {"id": request_id, "cmd": cmd}
        message.update({k: v for k, v in fields.items() if v is not None})
        try:
            self._writer.write(encode_line(message))
            await self._writer.drain()
        except (ConnectionError, OSError) as exc:
            self._pending.pop(request_id, None)
            self._fail_pending(f"daemon connection lost: {exc}")
            raise DaemonConnectionError(f"daemon connection lost: {exc}") from exc
        try:
            reply = await future
        finally:
            self._pending.pop(request_id, None)
        if not reply.get("ok"):
            raise DaemonRequestError(cmd, str(reply.get("error") or "unknown daemon error"))
        return reply.get("result")

    async def close(self) -> None:
        self._fail_pending("daemon connection closed")
        self._reader_task.cancel()
        try:
            await self._reader_task
        except asyncio.CancelledError:
            pass
        if not self._writer.is_closing():
            self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    async def __aenter__(self) -> "DaemonClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _fail_pending(self, reason: str) -> None:
        self._closed = True
        for future in self._pending.values():
            if not future.done():
                future.set_exception(DaemonConnectionError(reason))

    async def _read_loop(self) -> None:
        try:
            while True:
                line = await self._reader.readline()
                if not line:
                    break
                try:
                    message = decode_line(line)
                except ProtocolError as exc:
                    logger.debug("Ignoring malformed daemon reply: %s", exc)
                    continue
                if message is None:
                    continue
                reply_id = message.get("id")
                if not isinstance(reply_id, (int, str)) or isinstance(reply_id, bool):
                    logger.debug("Ignoring daemon reply with invalid id: %r", reply_id)
                    continue
                future = self._pending.get(reply_id)
                if future is not None and not future.done():
                    future.set_result(message)
        except (ConnectionError, OSError, ValueError) as exc:
            logger.debug("Daemon connection error: %s", exc)
        finally:
            self._fail_pending("daemon connection closed")
