"""
Several commands read as JSON lines, run against one language server
session. Each input line gets one output line, in input order.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import typer
from lsprotocol import types

from lspcli.cli_commands.edits import save_applied
from lspcli.cli_commands.invocation import REPORTED_ERRORS, CommandError, Invocation
from lspcli.cli_commands.queries import document_path, position_params, text_document
from lspcli.gateway import Gateway
from lspcli.lsp.shapes import normalize_locations
from lspcli.lsp.workspace_edit import apply_workspace_edit, workspace_edit_to_json

# Commands taking file, line and col whose raw result is returned as-is
POSITION_METHODS = {
    "hover": types.TEXT_DOCUMENT_HOVER,
    "completion": types.TEXT_DOCUMENT_COMPLETION,
    "signature-help": types.TEXT_DOCUMENT_SIGNATURE_HELP,
    "document-highlight": types.TEXT_DOCUMENT_DOCUMENT_HIGHLIGHT,
    "prepare-rename": types.TEXT_DOCUMENT_PREPARE_RENAME,
}


def _path(line: dict[str, Any]) -> Path:
    file = line.get("file")
    if not isinstance(file, str) or not file:
        raise CommandError("file must be a non-empty string")
    return document_path(Path(file))


def _position(line: dict[str, Any], name: str) -> int:
    value = line.get(name)
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise CommandError(f"{name} must be a non-negative integer")
    return value


def _flag(line: dict[str, Any], name: str, default: bool) -> bool:
    value = line.get(name, default)
    if not isinstance(value, bool):
        raise CommandError(f"{name} must be true or false")
    return value


async def _edit_outcome(gateway: Gateway, line: dict[str, Any], edit: Any, apply: bool) -> dict[str, Any]:
    apply = _flag(line, "apply", apply)
    save = _flag(line, "saveAfterApply", False)
    wait_ms = line.get("waitDiagnosticsMs", 0)
    if not isinstance(wait_ms, int) or isinstance(wait_ms, bool) or wait_ms < 0:
        raise CommandError("waitDiagnosticsMs must be a non-negative integer")
    if save and not apply:
        raise CommandError("saveAfterApply requires apply")

    if edit is None:
        return {"applied": False} if apply else {"result": None}
    if not apply:
        return {"result": workspace_edit_to_json(edit)}
    applied = apply_workspace_edit(edit).to_json()
    if save:
        applied.update(await save_applied(gateway, applied, wait_ms))
    return {"applied": True, **applied}


async def run_line(gateway: Gateway, line: dict[str, Any], apply: bool) -> dict[str, Any]:
    """
    Run one batch command.

    Args:
        gateway: Open gateway shared by the batch
        line: Decoded input line
        apply: Whether edits are applied when the line does not say

    Returns:
        The fields reported next to ``id`` and ``ok``

    Raises:
        CommandError: If the line is not a valid command
    """
    cmd = line.get("cmd")

    if cmd == "symbols":
        path = _path(line)
        params = {"textDocument": text_document(path)}
        return {"result": await gateway.request(types.TEXT_DOCUMENT_DOCUMENT_SYMBOL, params, documents=[path])}

    if cmd in ("definition", "references"):
        path = _path(line)
        params = position_params(path, _position(line, "line"), _position(line, "col"))
        method = types.TEXT_DOCUMENT_DEFINITION
        if cmd == "references":
            method = types.TEXT_DOCUMENT_REFERENCES
            params["context"] = {"includeDeclaration": _flag(line, "includeDeclaration", True)}
        result = await gateway.request(method, params, documents=[path])
        return {"result": normalize_locations(result)}

    if cmd in POSITION_METHODS:
        path = _path(line)
        params = position_params(path, _position(line, "line"), _position(line, "col"))
        return {"result": await gateway.request(POSITION_METHODS[cmd], params, documents=[path])}

    if cmd == "rename":
        path = _path(line)
        new_name = line.get("newName")
        if not isinstance(new_name, str) or not new_name:
            raise CommandError("newName must be a non-empty string")
        params = position_params(path, _position(line, "line"), _position(line, "col"))
        params["newName"] = new_name
        edit = await gateway.request(types.TEXT_DOCUMENT_RENAME, params, documents=[path])
        return await _edit_outcome(gateway, line, edit, apply)

    if cmd == "format":
        path = _path(line)
        params = {
            "textDocument": text_document(path),
            "options": {
                "tabSize": _position(line, "tabSize") if "tabSize" in line else 4,
                "insertSpaces": _flag(line, "insertSpaces", True),
            },
        }
        edits = await gateway.request(types.TEXT_DOCUMENT_FORMATTING, params, documents=[path])
        edit = {"changes": {path.as_uri(): edits}} if edits else None
        return await _edit_outcome(gateway, line, edit, apply)

    if cmd in ("request", "notify"):
        method = line.get("method")
        if not isinstance(method, str) or not method:
            raise CommandError("method must be a non-empty string")
        files = line.get("files", [])
        if not isinstance(files, list) or not all(isinstance(f, str) for f in files):
            raise CommandError("files must be a list of paths")
        documents = [document_path(Path(f)) for f in files]
        if cmd == "notify":
            await gateway.notify(method, line.get("params"), documents=documents)
            return {"notified": True}
        if _flag(line, "apply", apply):
            result, applied = await gateway.request_and_apply(method, line.get("params"), documents=documents)
            return {"result": result, "appliedEdits": applied}
        return {"result": await gateway.request(method, line.get("params"), documents=documents)}

    raise CommandError(f"unsupported batch cmd: {cmd!r}")


def _decode(raw: str) -> dict[str, Any]:
    try:
        line = json.loads(raw)
    except json.JSONDecodeError as e:
        raise CommandError(f"invalid JSON: {e}") from e
    if not isinstance(line, dict):
        raise CommandError("expected a JSON object")
    return line


async def _run_batch(inv: Invocation, lines: list[str], apply: bool) -> int:
    failed = 0
    async with inv.gateway() as gateway:
        for raw in lines:
            request_id = None
            try:
                line = _decode(raw)
                request_id = line.get("id")
                reply = {"id": request_id, "ok": True, **await run_line(gateway, line, apply)}
            except REPORTED_ERRORS as e:
                failed += 1
                reply = {"id": request_id, "ok": False, "error": str(e)}
            typer.echo(json.dumps(reply, ensure_ascii=False))
    return failed


def batch(inv: Invocation, text: str, apply: bool) -> None:
    """
    Run the JSON-lines commands in ``text`` and print one JSON line per command.

    A failing command is reported in its output line and does not stop the
    batch; the exit status is 1 when any command failed.
    """
    lines = [raw for raw in text.splitlines() if raw.strip()]
    failed = inv.run(_run_batch(inv, lines, apply))
    if failed:
        inv.fail(f"{failed} of {len(lines)} batch commands failed")
