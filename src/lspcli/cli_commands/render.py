"""
Human-readable renderings for ``--format pretty``.
"""

from __future__ import annotations

from typing import Any, Optional

from lsprotocol.types import SymbolKind

from lspcli.lsp.shapes import CodeActionItem
from lspcli.lsp.workspace_edit import WorkspaceEditError, uri_to_path


def display_uri(uri: str) -> str:
    if not uri.startswith("file://"):
        return uri
    try:
        return str(uri_to_path(uri))
    except WorkspaceEditError:
        return uri


def _position(value: Any) -> str:
    if not isinstance(value, dict):
        return "?"
    return f"{value.get('line', '?')}:{value.get('character', '?')}"


def _symbol_kind(kind: Any) -> str:
    try:
        return SymbolKind(kind).name
    except ValueError:
        return str(kind)


def render_symbols(result: Any) -> str:
    """
    Render ``DocumentSymbol[]`` as an indented tree, or
    ``SymbolInformation[]`` as a flat list.
    """
    lines: list[str] = []

    def walk(symbols: list[Any], depth: int) -> None:
        for symbol in symbols:
            if not isinstance(symbol, dict):
                continue
            if "location" in symbol:
                where = symbol["location"].get("range", {}).get("start")
            else:
                where = (symbol.get("selectionRange") or symbol.get("range") or {}).get("start")
            lines.append(
                f"{'  ' * depth}{symbol.get('name', '?')} [{_symbol_kind(symbol.get('kind'))}] {_position(where)}"
            )
            walk(symbol.get("children") or [], depth + 1)

    walk(result if isinstance(result, list) else [], 0)
    return "\n".join(lines) if lines else "No symbols"


def render_locations(locations: list[dict[str, Any]]) -> str:
    if not locations:
        return "No locations"
    lines = []
    for location in locations:
        start = (location.get("range") or {}).get("start")
        lines.append(f"{display_uri(location['uri'])}:{_position(start)}")
    return "\n".join(lines)


def _marked_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return str(value.get("value", ""))
    return ""


def render_hover(result: Any) -> str:
    """Flatten ``MarkupContent``, ``MarkedString`` or a list of them."""
    if not isinstance(result, dict):
        return "No hover information"
    contents = result.get("contents")
    if isinstance(contents, list):
        text = "\n\n".join(_marked_string(c) for c in contents)
    else:
        text = _marked_string(contents)
    return text.strip() or "No hover information"


def render_code_actions(items: list[CodeActionItem]) -> str:
    if not items:
        return "No code actions"
    lines = []
    for item in items:
        suffix = f" ({item.kind})" if item.kind else ""
        marker = " *" if item.is_preferred else ""
        lines.append(f"[{item.index}] {item.title}{suffix}{marker}")
    return "\n".join(lines)


SEVERITIES = {1: "error", 2: "warning", 3: "info", 4: "hint"}


def render_diagnostics(by_uri: dict[str, list[Any]]) -> str:
    """Render diagnostics grouped by document as ``path:line:col severity message``."""
    lines = []
    for uri, diagnostics in by_uri.items():
        if not diagnostics:
            lines.append(f"{display_uri(uri)}: no diagnostics")
            continue
        for diagnostic in diagnostics:
            start = (diagnostic.get("range") or {}).get("start")
            severity = SEVERITIES.get(diagnostic.get("severity"), "diagnostic")
            lines.append(f"{display_uri(uri)}:{_position(start)} {severity} {diagnostic.get('message', '')}")
    return "\n".join(lines) if lines else "No diagnostics received"


def render_completion(result: Any) -> str:
    """Render ``CompletionItem[]`` or a ``CompletionList`` one label per line."""
    items = result.get("items") if isinstance(result, dict) else result
    if not isinstance(items, list) or not items:
        return "No completions"
    lines = []
    for item in items:
        if not isinstance(item, dict):
            continue
        detail = f"  {item['detail']}" if item.get("detail") else ""
        lines.append(f"{item.get('label', '?')}{detail}")
    if isinstance(result, dict) and result.get("isIncomplete"):
        lines.append("(incomplete)")
    return "\n".join(lines)


def render_signature_help(result: Any) -> str:
    if not isinstance(result, dict) or not result.get("signatures"):
        return "No signature help"
    active = result.get("activeSignature", 0)
    lines = []
    for number, signature in enumerate(result["signatures"]):
        marker = "> " if number == active else "  "
        lines.append(f"{marker}{signature.get('label', '?')}")
    return "\n".join(lines)


def render_highlights(result: Any) -> str:
    if not isinstance(result, list) or not result:
        return "No highlights"
    kinds = {1: "text", 2: "read", 3: "write"}
    lines = []
    for highlight in result:
        span = highlight.get("range") or {}
        kind = kinds.get(highlight.get("kind", 1), "text")
        lines.append(f"{_position(span.get('start'))}-{_position(span.get('end'))} {kind}")
    return "\n".join(lines)


def render_prepare_rename(result: Any) -> str:
    """Handle the three ``prepareRename`` result shapes."""
    if not isinstance(result, dict):
        return "Rename is not possible here"
    if result.get("defaultBehavior"):
        return "Rename allowed (default behavior)"
    span = result.get("range", result)
    text = f"{_position(span.get('start'))}-{_position(span.get('end'))}"
    if result.get("placeholder") is not None:
        text += f" {result['placeholder']!r}"
    return text


def render_semantic_tokens(result: Any) -> str:
    if not isinstance(result, dict):
        return "No semantic tokens"
    head = f"resultId: {_scalar(result.get('resultId'))}"
    if "edits" in result:
        return f"{head}\n{len(result['edits'])} edit(s)"
    # Five integers per token
    return f"{head}\n{len(result.get('data') or []) // 5} token(s)"


def render_events(batch: dict[str, Any]) -> str:
    lines = []
    for event in batch.get("events", []):
        payload = event.get("payload") or {}
        diagnostics = payload.get("diagnostics") if isinstance(payload, dict) else None
        detail = f" ({len(diagnostics)} diagnostics)" if isinstance(diagnostics, list) else ""
        uri = payload.get("uri", "") if isinstance(payload, dict) else ""
        lines.append(f"#{event.get('cursor')} {event.get('kind')} {display_uri(uri)}{detail}".rstrip())
    lines.append(f"next cursor: {batch.get('nextCursor')}")
    return "\n".join(lines)


def render_mapping(value: dict[str, Any], indent: int = 0) -> str:
    """Render a status object as ``key: value`` lines."""
    lines = []
    for key, item in value.items():
        if isinstance(item, dict):
            lines.append(f"{'  ' * indent}{key}:")
            lines.append(render_mapping(item, indent + 1))
        else:
            lines.append(f"{'  ' * indent}{key}: {_scalar(item)}")
    return "\n".join(lines)


def _scalar(value: Optional[Any]) -> str:
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)
