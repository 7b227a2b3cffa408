"""
Read-only language queries: symbols, navigation, hover, completion and
semantic tokens.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from lsprotocol import types

from lspcli.cli_commands import render
from lspcli.cli_commands.invocation import Invocation
from lspcli.daemon import protocol
from lspcli.gateway import VIA_DAEMON
from lspcli.lsp.shapes import normalize_locations


def document_path(file: Path) -> Path:
    """Absolute path of a file argument (relative to the current directory)."""
    return Path(file).absolute()


def text_document(path: Path) -> dict[str, str]:
    return {"uri": path.as_uri()}


def position_params(path: Path, line: int, character: int) -> dict[str, Any]:
    return {
        "textDocument": text_document(path),
        "position": {"line": line, "character": character},
    }


async def _ping(inv: Invocation) -> dict[str, Any]:
    async with inv.gateway() as gateway:
        if gateway.via == VIA_DAEMON:
            await gateway.daemon(protocol.PING)
        return {"ok": True, "via": gateway.via}


def ping(inv: Invocation) -> None:
    """
    Check that a language server is reachable for the workspace.
    """
    result = inv.run(_ping(inv))
    inv.emit(result, f"ok (via {result['via']})")


async def _request_for_file(inv: Invocation, path: Path, method: str, params: Any) -> Any:
    async with inv.gateway() as gateway:
        return await gateway.request(method, params, documents=[path])


def symbols(inv: Invocation, file: Path) -> None:
    """
    List the symbols of a document.
    """
    path = document_path(file)
    result = inv.run(
        _request_for_file(
            inv, path, types.TEXT_DOCUMENT_DOCUMENT_SYMBOL, {"textDocument": text_document(path)}
        )
    )
    result = result if result is not None else []
    inv.emit(result, render.render_symbols(result))


def definition(inv: Invocation, file: Path, line: int, character: int) -> None:
    """
    Find where the symbol at a position is defined.
    """
    path = document_path(file)
    result = inv.run(
        _request_for_file(
            inv, path, types.TEXT_DOCUMENT_DEFINITION, position_params(path, line, character)
        )
    )
    locations = normalize_locations(result)
    inv.emit(locations, render.render_locations(locations))


def references(inv: Invocation, file: Path, line: int, character: int, include_declaration: bool) -> None:
    """
    Find every reference to the symbol at a position.
    """
    path = document_path(file)
    params = position_params(path, line, character)
    params["context"] = {"includeDeclaration": include_declaration}
    result = inv.run(_request_for_file(inv, path, types.TEXT_DOCUMENT_REFERENCES, params))
    locations = normalize_locations(result)
    inv.emit(locations, render.render_locations(locations))


def hover(inv: Invocation, file: Path, line: int, character: int) -> None:
    """
    Show hover information for a position.
    """
    path = document_path(file)
    result = inv.run(
        _request_for_file(inv, path, types.TEXT_DOCUMENT_HOVER, position_params(path, line, character))
    )
    inv.emit(result, render.render_hover(result))


def _position_query(inv: Invocation, file: Path, line: int, character: int, method: str) -> Any:
    path = document_path(file)
    return inv.run(_request_for_file(inv, path, method, position_params(path, line, character)))


def completion(inv: Invocation, file: Path, line: int, character: int) -> None:
    """
    List completions at a position.
    """
    result = _position_query(inv, file, line, character, types.TEXT_DOCUMENT_COMPLETION)
    inv.emit(result, render.render_completion(result))


def signature_help(inv: Invocation, file: Path, line: int, character: int) -> None:
    """
    Show the signatures of the call around a position.
    """
    result = _position_query(inv, file, line, character, types.TEXT_DOCUMENT_SIGNATURE_HELP)
    inv.emit(result, render.render_signature_help(result))


def document_highlight(inv: Invocation, file: Path, line: int, character: int) -> None:
    """
    List the occurrences of the symbol at a position within its document.
    """
    result = _position_query(inv, file, line, character, types.TEXT_DOCUMENT_DOCUMENT_HIGHLIGHT)
    result = result if result is not None else []
    inv.emit(result, render.render_highlights(result))


def prepare_rename(inv: Invocation, file: Path, line: int, character: int) -> None:
    """
    Check whether the symbol at a position can be renamed, and what range a
    rename would replace.
    """
    result = _position_query(inv, file, line, character, types.TEXT_DOCUMENT_PREPARE_RENAME)
    inv.emit(result, render.render_prepare_rename(result))


def semantic_tokens_full(inv: Invocation, file: Path) -> None:
    """
    Fetch the semantic tokens of a whole document.
    """
    path = document_path(file)
    params = {"textDocument": text_document(path)}
    result = inv.run(_request_for_file(inv, path, types.TEXT_DOCUMENT_SEMANTIC_TOKENS_FULL, params))
    inv.emit(result, render.render_semantic_tokens(result))


def semantic_tokens_range(
    inv: Invocation, file: Path, start_line: int, start_character: int, end_line: int, end_character: int
) -> None:
    """
    Fetch the semantic tokens of a range.
    """
    path = document_path(file)
    params = {
        "textDocument": text_document(path),
        "range": {
            "start": {"line": start_line, "character": start_character},
            "end": {"line": end_line, "character": end_character},
        },
    }
    result = inv.run(_request_for_file(inv, path, types.TEXT_DOCUMENT_SEMANTIC_TOKENS_RANGE, params))
    inv.emit(result, render.render_semantic_tokens(result))


def semantic_tokens_delta(inv: Invocation, file: Path, previous_result_id: str) -> None:
    """
    Fetch the changes to a document's semantic tokens since an earlier result.

    The server may answer with full tokens instead of edits.
    """
    path = document_path(file)
    params = {"textDocument": text_document(path), "previousResultId": previous_result_id}
    result = inv.run(_request_for_file(inv, path, types.TEXT_DOCUMENT_SEMANTIC_TOKENS_FULL_DELTA, params))
    inv.emit(result, render.render_semantic_tokens(result))
