"""JSON-RPC 2.0 over ``Content-Length`` framed streams.

This is the wire layer under a language server session: it frames
messages, keeps the table of in-flight requests, and demultiplexes
everything the server sends (responses, server-initiated requests and
notifications) as it arrives.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import json
import logging
import re
from typing import Any, Awaitable, Callable, Optional, Union

__all__ = [
    "ConnectionClosedError",
    "JsonRpcConnection",
    "ResponseError",
    "encode_message",
    "read_message",
]

logger = logging.getLogger(__name__)

# JSON-RPC error codes used when answering server-initiated requests
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603

_CONTENT_LENGTH = re.compile(rb"^content-length:\s*(\d+)\s*$", re.IGNORECASE | re.MULTILINE)

NotificationCallback = Callable[[Any], None]
RequestHandler = Callable[[Any], Union[Any, Awaitable[Any]]]


class ResponseError(Exception):
    """Raised when the peer answers a request with a JSON-RPC error."""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"{message} (code={code})")
        self.code = code
        self.message = message
        self.data = data


class ConnectionClosedError(ConnectionError):
    """Raised for requests that cannot complete because the stream ended."""

    pass


def encode_message(payload: dict[str, Any]) -> bytes:
    """Serialize a JSON-RPC message with its ``Content-Length`` header.

    Args:
        payload: The JSON-RPC message object

    Returns:
        Header and UTF-8 body ready to be written to the stream
    """
    body = json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    return f"Content-Length: {len(body)}\r\n\r\n".encode("ascii") + body


async def read_message(reader: asyncio.StreamReader) -> Optional[dict[str, Any]]:
    """Read the next well-formed message from a framed stream.

    Header blocks without a usable ``Content-Length`` and bodies that are
    not JSON objects are dropped; reading resumes at the next header.

    Args:
        reader: Stream connected to the peer's output

    Returns:
        The decoded message object, or None once the stream is exhausted
    """
    while True:
        try:
            header = await reader.readuntil(b"\r\n\r\n")
        except asyncio.IncompleteReadError:
            return None
        except asyncio.LimitOverrunError as exc:
            # Oversized header garbage: discard what was scanned and resync
            await reader.readexactly(exc.consumed)
            continue

        match = None
        for match in _CONTENT_LENGTH.finditer(header):
            pass
        if match is None:
            logger.debug("Dropping frame without Content-Length: %r", header[:200])
            continue

        try:
            body = await reader.readexactly(int(match.group(1)))
        except asyncio.IncompleteReadError:
            return None

        try:
            message = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            logger.debug("Dropping malformed message body: %r", body[:200])
            continue
        if not isinstance(message, dict):
            logger.debug("Dropping non-object message: %r", message)
            continue
        return message


def _is_request_id(value: Any) -> bool:
    """Whether a value can be a JSON-RPC id (bools are not)."""
    return isinstance(value, (int, str)) and not isinstance(value, bool)


class JsonRpcConnection:
    """A bidirectional JSON-RPC connection over a pair of asyncio streams.

    Outgoing requests are matched to responses strictly by id; responses
    may arrive in any order. Notifications are delivered from the read loop
    in arrival order, so subscribers observe them in the order the peer
    sent them.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._reader = reader
        self._writer = writer
        self._ids = itertools.count(1)
        self._pending: dict[Union[int, str], asyncio.Future] = {}
        self._notification_callbacks: dict[str, list[NotificationCallback]] = {}
        self._request_handlers: dict[str, RequestHandler] = {}
        self._handler_tasks: set[asyncio.Task] = set()
        self._reader_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def listen(self) -> None:
        """Start the background read loop."""
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._read_loop())

    def on_notification(self, method: str, callback: NotificationCallback) -> Callable[[], None]:
        """Subscribe to a notification method.

        Returns:
            A callable that removes the subscription
        """
        callbacks = self._notification_callbacks.setdefault(method, [])
        callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def on_request(self, method: str, handler: RequestHandler) -> Callable[[], None]:
        """Register the handler for a server-initiated request method.

        Returns:
            A callable that unregisters the handler
        """
        self._request_handlers[method] = handler

        def unregister() -> None:
            if self._request_handlers.get(method) is handler:
                del self._request_handlers[method]

        return unregister

    async def send_request(self, method: str, params: Any = None) -> Any:
        """Send a request and wait for its response.

        Raises:
            ResponseError: If the peer answers with an error
            ConnectionClosedError: If the stream ends first
        """
        if self._closed:
            raise ConnectionClosedError(f"connection closed before request: {method}")

        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params
        try:
            await self._write(message)
            return await future
        finally:
            self._pending.pop(request_id, None)

    async def send_notification(self, method: str, params: Any = None) -> None:
        """Send a notification (no response expected)."""
        if self._closed:
            raise ConnectionClosedError(f"connection closed before notification: {method}")

        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._write(message)

    async def close(self) -> None:
        """Stop reading, fail outstanding requests and close the writer."""
        self._mark_closed()
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        for task in list(self._handler_tasks):
            task.cancel()
        if not self._writer.is_closing():
            self._writer.close()

    async def _write(self, message: dict[str, Any]) -> None:
        self._writer.write(encode_message(message))
        try:
            await self._writer.drain()
        except (ConnectionError, BrokenPipeError) as exc:
            self._mark_closed()
            raise ConnectionClosedError(str(exc)) from exc

    def _mark_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        for future in self._pending.values():
            if not future.done():
                future.set_exception(ConnectionClosedError("connection closed"))

    async def _read_loop(self) -> None:
        try:
            while True:
                message = await read_message(self._reader)
                if message is None:
                    break
                try:
                    self._dispatch(message)
                except Exception:
                    logger.exception("Dropping message that could not be dispatched: %r", message)
        finally:
            self._mark_closed()

    def _dispatch(self, message: dict[str, Any]) -> None:
        method = message.get("method")
        if method is None:
            self._handle_response(message)
        elif not isinstance(method, str):
            logger.debug("Ignoring message with invalid method: %r", method)
        elif "id" in message:
            task = asyncio.create_task(self._handle_request(message["id"], method, message.get("params")))
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)
        else:
            for callback in list(self._notification_callbacks.get(method, ())):
                try:
                    callback(message.get("params"))
                except Exception:
                    logger.exception("Notification callback for %s failed", method)

    def _handle_response(self, message: dict[str, Any]) -> None:
        request_id = message.get("id")
        future = self._pending.get(request_id) if _is_request_id(request_id) else None
        if future is None:
            logger.debug("Ignoring response with unknown id: %r", request_id)
            return
        if future.done():
            return
        error = message.get("error")
        if error is not None:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            code = error.get("code")
            if not isinstance(code, int) or isinstance(code, bool):
                code = INTERNAL_ERROR
            future.set_exception(
                ResponseError(
                    code,
                    str(error.get("message", "unknown error")),
                    error.get("data"),
                )
            )
        else:
            future.set_result(message.get("result"))

    async def _handle_request(self, request_id: Any, method: str, params: Any) -> None:
        handler = self._request_handlers.get(method)
        if handler is None:
            response: dict[str, Any] = {
                "jsonrpc": "2.0",
                "id": request_id,
                "error": {"code": METHOD_NOT_FOUND, "message": f"unhandled method: {method}"},
            }
        else:
            try:
                result = handler(params)
                if inspect.isawaitable(result):
                    result = await result
                response = {"jsonrpc": "2.0", "id": request_id, "result": result}
            except Exception as exc:
                logger.exception("Handler for server request %s failed", method)
                response = {
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "error": {"code": INTERNAL_ERROR, "message": str(exc)},
                }
        if self._closed:
            return
        try:
            await self._write(response)
        except ConnectionClosedError:
            logger.debug("Could not answer %s: connection closed", method)
