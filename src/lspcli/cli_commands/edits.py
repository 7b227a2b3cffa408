"""
Commands that produce workspace edits: rename, format, code actions and
applying edits given on stdin.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Callable, Optional

from lsprotocol import types

from lspcli.cli_commands import get_action_success_string, render
from lspcli.cli_commands.invocation import CommandError, Invocation
from lspcli.cli_commands.queries import document_path, position_params, text_document
from lspcli.gateway import Gateway
from lspcli.lsp.shapes import CodeActionItem, normalize_code_actions, select_code_actions
from lspcli.lsp.workspace_edit import (
    apply_workspace_edit,
    format_workspace_edit,
    workspace_edit_to_json,
)


def _applied_summary(result: dict[str, Any]) -> str:
    files = result.get("editedFiles", [])
    operations = result.get("operations", [])
    lines = [f"{get_action_success_string()} Applied edits to {len(files)} file(s)"]
    lines.extend(f"  {f}" for f in files)
    lines.extend(f"  {op}" for op in operations)
    if "saved" in result:
        lines.append(f"Saved {len(result['saved'])} file(s)")
    if "diagnostics" in result:
        lines.append(render.render_diagnostics(result["diagnostics"]))
    return "\n".join(lines)


def _emit_edit(inv: Invocation, edit: Any, apply: bool) -> None:
    """Print a planned edit, or apply it and print what changed."""
    if edit is None:
        inv.emit({"applied": False} if apply else None, "No changes")
        return

    with inv.reporting_errors():
        if not apply:
            inv.emit(workspace_edit_to_json(edit), format_workspace_edit(edit) or "No changes")
            return
        result = apply_workspace_edit(edit).to_json()

    inv.emit({"applied": True, **result}, _applied_summary(result))


async def _request(inv: Invocation, path: Path, method: str, params: Any) -> Any:
    async with inv.gateway() as gateway:
        return await gateway.request(method, params, documents=[path])


def check_save_options(inv: Invocation, apply: bool, save_after_apply: bool, wait_diagnostics_ms: int) -> None:
    """Reject save options that would have no effect."""
    if save_after_apply and not apply:
        inv.fail("--save-after-apply requires --apply")
    if wait_diagnostics_ms and not save_after_apply:
        inv.fail("--wait-diagnostics-ms requires --save-after-apply")


async def save_applied(gateway: Gateway, applied: dict[str, Any], wait_diagnostics_ms: int) -> dict[str, Any]:
    """
    Save the files an applied edit changed and collect the diagnostics that follow.

    Returns:
        ``saved`` paths, plus ``diagnostics`` by URI when a wait was requested
    """
    saved = list(applied.get("editedFiles", []))
    diagnostics = await gateway.save_documents(saved, wait_diagnostics_ms / 1000)
    out: dict[str, Any] = {"saved": saved}
    if wait_diagnostics_ms > 0:
        out["diagnostics"] = diagnostics
    return out


async def _request_apply_save(
    inv: Invocation,
    path: Path,
    method: str,
    params: Any,
    to_edit: Callable[[Any], Any],
    wait_diagnostics_ms: int,
) -> Optional[dict[str, Any]]:
    async with inv.gateway() as gateway:
        edit = to_edit(await gateway.request(method, params, documents=[path]))
        if edit is None:
            return None
        applied = apply_workspace_edit(edit).to_json()
        applied.update(await save_applied(gateway, applied, wait_diagnostics_ms))
        return {"applied": True, **applied}


def _edit_command(
    inv: Invocation,
    path: Path,
    method: str,
    params: Any,
    to_edit: Callable[[Any], Any],
    apply: bool,
    save_after_apply: bool,
    wait_diagnostics_ms: int,
) -> None:
    check_save_options(inv, apply, save_after_apply, wait_diagnostics_ms)
    if not save_after_apply:
        edit = to_edit(inv.run(_request(inv, path, method, params)))
        _emit_edit(inv, edit, apply)
        return

    # The edit is applied and saved while the server is still reachable
    result = inv.run(_request_apply_save(inv, path, method, params, to_edit, wait_diagnostics_ms))
    if result is None:
        inv.emit({"applied": False}, "No changes")
        return
    inv.emit(result, _applied_summary(result))


def _as_edit(result: Any) -> Any:
    return result


def rename(
    inv: Invocation,
    file: Path,
    line: int,
    character: int,
    new_name: str,
    apply: bool,
    save_after_apply: bool = False,
    wait_diagnostics_ms: int = 0,
) -> None:
    """
    Rename the symbol at a position.

    Without ``apply`` the planned edit is printed and nothing is written.
    With ``save_after_apply`` the changed files are saved to the server
    afterwards, optionally waiting for the diagnostics it publishes.
    """
    path = document_path(file)
    params = position_params(path, line, character)
    params["newName"] = new_name
    _edit_command(
        inv, path, types.TEXT_DOCUMENT_RENAME, params, _as_edit, apply, save_after_apply, wait_diagnostics_ms
    )


def format_document(
    inv: Invocation,
    file: Path,
    tab_size: int,
    insert_spaces: bool,
    apply: bool,
    save_after_apply: bool = False,
    wait_diagnostics_ms: int = 0,
) -> None:
    """
    Format a whole document.
    """
    path = document_path(file)
    params = {
        "textDocument": text_document(path),
        "options": {"tabSize": tab_size, "insertSpaces": insert_spaces},
    }

    def to_edit(edits: Any) -> Any:
        return {"changes": {path.as_uri(): edits}} if edits else None

    _edit_command(
        inv, path, types.TEXT_DOCUMENT_FORMATTING, params, to_edit, apply, save_after_apply, wait_diagnostics_ms
    )


def choose_code_action(
    selected: list[CodeActionItem], index: Optional[int], first: bool, apply: bool
) -> Optional[CodeActionItem]:
    """
    Pick the action to preview or apply.

    Returns:
        The chosen action, or None when the selection should just be listed

    Raises:
        CommandError: If nothing matches, or applying is ambiguous
    """
    if index is not None:
        for item in selected:
            if item.index == index:
                return item
        raise CommandError(f"No matching code action with index {index}")
    if first:
        if not selected:
            raise CommandError("No matching code action")
        return selected[0]
    if apply:
        if len(selected) != 1:
            raise CommandError(
                f"{len(selected)} code actions match; narrow the selection or use --first/--index"
            )
        return selected[0]
    return None


def _execute_params(command: dict[str, Any]) -> dict[str, Any]:
    params: dict[str, Any] = {"command": command.get("command")}
    if command.get("arguments") is not None:
        params["arguments"] = command["arguments"]
    return params


async def _apply_code_action(gateway: Gateway, item: CodeActionItem) -> dict[str, Any]:
    out: dict[str, Any] = {"applied": True, "index": item.index, "title": item.title}
    if item.edit is not None:
        out["via"] = "edit"
        out.update(apply_workspace_edit(item.edit).to_json())
    else:
        out["via"] = "command"

    # An action with both an edit and a command runs the command after the edit
    if item.command is not None:
        command_result, applied = await gateway.request_and_apply(
            types.WORKSPACE_EXECUTE_COMMAND, _execute_params(item.command)
        )
        out["commandResult"] = command_result
        out["appliedEdits"] = applied
    return out


async def _code_actions(
    inv: Invocation,
    path: Path,
    params: dict[str, Any],
    kind: Optional[str],
    title_regex: Optional[str],
    preferred: bool,
    first: bool,
    index: Optional[int],
    apply: bool,
) -> tuple[list[CodeActionItem], Optional[CodeActionItem], Optional[dict[str, Any]]]:
    async with inv.gateway() as gateway:
        result = await gateway.request(types.TEXT_DOCUMENT_CODE_ACTION, params, documents=[path])
        selected = select_code_actions(normalize_code_actions(result), kind, title_regex, preferred)
        chosen = choose_code_action(selected, index, first, apply)
        if chosen is None or not apply:
            return selected, chosen, None
        return selected, chosen, await _apply_code_action(gateway, chosen)


def code_actions(
    inv: Invocation,
    file: Path,
    start_line: int,
    start_character: int,
    end_line: int,
    end_character: int,
    kind: Optional[str] = None,
    title_regex: Optional[str] = None,
    preferred: bool = False,
    first: bool = False,
    index: Optional[int] = None,
    apply: bool = False,
) -> None:
    """
    List, select and optionally apply the code actions for a range.

    A selected action is applied through its edit when it has one and
    through ``workspace/executeCommand`` otherwise.
    """
    if title_regex is not None:
        try:
            re.compile(title_regex)
        except re.error as e:
            with inv.reporting_errors():
                raise CommandError(f"Invalid --title-regex: {e}") from e

    path = document_path(file)
    params: dict[str, Any] = {
        "textDocument": text_document(path),
        "range": {
            "start": {"line": start_line, "character": start_character},
            "end": {"line": end_line, "character": end_character},
        },
        "context": {"diagnostics": []},
    }
    if kind is not None:
        params["context"]["only"] = [kind]

    selected, chosen, outcome = inv.run(
        _code_actions(inv, path, params, kind, title_regex, preferred, first, index, apply)
    )

    if chosen is None:
        inv.emit([item.to_json() for item in selected], render.render_code_actions(selected))
        return

    if outcome is None:
        preview = f"[{chosen.index}] {chosen.title}"
        if chosen.edit is not None:
            with inv.reporting_errors():
                preview += "\n" + format_workspace_edit(chosen.edit)
        elif chosen.command is not None:
            preview += f"\nrun command {chosen.command.get('command')}"
        inv.emit({"dryRun": True, **chosen.to_json()}, preview)
        return

    inv.emit(
        outcome,
        f"{get_action_success_string()} Applied [{chosen.index}] {chosen.title} (via {outcome['via']})",
    )


def apply_edits(inv: Invocation, raw: str, apply: bool) -> None:
    """
    Preview or apply a WorkspaceEdit given as JSON text.

    The params of a ``workspace/applyEdit`` request are accepted too.
    """
    with inv.reporting_errors():
        try:
            edit = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CommandError(f"Invalid workspace edit JSON: {e}") from e
        if edit is None:
            raise CommandError("Expected a WorkspaceEdit object, got null")

    if isinstance(edit, dict) and isinstance(edit.get("edit"), dict):
        edit = edit["edit"]
    _emit_edit(inv, edit, apply)
