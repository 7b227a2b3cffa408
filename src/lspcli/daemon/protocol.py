"""Wire protocol between daemon clients and the session daemon.

Messages are newline-delimited JSON objects. A request carries ``id`` and
``cmd`` plus command-specific fields; every request gets exactly one reply,
``{id, ok: true, result}`` or ``{id, ok: false, error}``.
"""

from __future__ import annotations

import json
import uuid
from typing import Any, Optional, Union

__all__ = [
    "COMMANDS",
    "DaemonError",
    "PARSE_ERROR_ID",
    "ProtocolError",
    "decode_line",
    "encode_line",
    "error_response",
    "new_request_id",
    "ok_response",
]

PING = "ping"
DAEMON_STATUS = "daemon/status"
DAEMON_STOP = "daemon/stop"
DAEMON_LOG_GET = "daemon/log/get"
DAEMON_LOG_SET = "daemon/log/set"
EVENTS_GET = "events/get"
LSP_REQUEST = "lsp/request"
LSP_REQUEST_AND_APPLY = "lsp/requestAndApply"
LSP_NOTIFY = "lsp/notify"
LSP_SAVE = "lsp/save"
SERVER_STATUS = "server/status"
SERVER_STOP = "server/stop"
SERVER_RESTART = "server/restart"

COMMANDS = frozenset(
    {
        PING,
        DAEMON_STATUS,
        DAEMON_STOP,
        DAEMON_LOG_GET,
        DAEMON_LOG_SET,
        EVENTS_GET,
        LSP_REQUEST,
        LSP_REQUEST_AND_APPLY,
        LSP_NOTIFY,
        LSP_SAVE,
        SERVER_STATUS,
        SERVER_STOP,
        SERVER_RESTART,
    }
)

# Reply id used when a request line could not be decoded
PARSE_ERROR_ID = "<parse>"


class DaemonError(Exception):
    """Base class for daemon failures."""

    pass


class ProtocolError(DaemonError):
    """Raised for a line that is not a valid protocol message."""

    pass


def new_request_id(prefix: str = "req") -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


def encode_line(message: dict[str, Any]) -> bytes:
    """Serialize a message as one JSON line."""
    return json.dumps(message, ensure_ascii=False, separators=(",", ":")).encode("utf-8") + b"\n"


def decode_line(line: Union[bytes, str]) -> Optional[dict[str, Any]]:
    """Decode one JSON line.

    Returns:
        The message object, or None for a blank line

    Raises:
        ProtocolError: If the line is not a JSON object
    """
    if isinstance(line, bytes):
        try:
            line = line.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError(f"invalid UTF-8: {exc}") from exc
    line = line.strip()
    if not line:
        return None
    try:
        message = json.loads(line)
    except ValueError as exc:
        raise ProtocolError(f"invalid JSON: {exc}") from exc
    if not isinstance(message, dict):
        raise ProtocolError("message must be a JSON object")
    return message


def ok_response(request_id: Any, result: Any) -> dict[str, Any]:
    return {"id": request_id, "ok": True, "result": result}


def error_response(request_id: Any, error: str) -> dict[str, Any]:
    return {"id": request_id, "ok": False, "error": error}
