"""Applying LSP workspace edits to the filesystem.

A workspace edit is parsed once into a :class:`ParsedWorkspaceEdit` and then
either previewed (pure) or applied. Application is two-phase: every text
edit is first planned against an in-memory view of the files, so an
overlapping or out-of-bounds edit rejects the whole description before any
file is written. File operations then run in their given order; a failed
precondition stops at that operation without undoing earlier ones.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union
from urllib.parse import unquote, urlparse

from lsprotocol.types import (
    CreateFile,
    CreateFileOptions,
    DeleteFile,
    DeleteFileOptions,
    Position,
    Range,
    RenameFile,
    RenameFileOptions,
    TextEdit,
)

from lspcli.lsp.position_utils import PositionError, offset_at

__all__ = [
    "ApplyResult",
    "DocumentTextEdits",
    "EditConflictError",
    "FileOperationError",
    "ParsedWorkspaceEdit",
    "WorkspaceEditError",
    "apply_text_edits",
    "apply_workspace_edit",
    "format_workspace_edit",
    "handle_apply_edit_request",
    "parse_workspace_edit",
    "uri_to_path",
    "workspace_edit_to_json",
]

logger = logging.getLogger(__name__)


class WorkspaceEditError(Exception):
    """Raised for malformed or inapplicable workspace edits."""

    pass


class EditConflictError(WorkspaceEditError):
    """Raised when text edits for one document overlap."""

    pass


class FileOperationError(WorkspaceEditError):
    """Raised when a create/rename/delete precondition does not hold."""

    pass


@dataclass(frozen=True)
class DocumentTextEdits:
    """Text edits targeting one document."""

    uri: str
    edits: tuple[TextEdit, ...]
    version: Optional[int] = None


DocumentChange = Union[DocumentTextEdits, CreateFile, RenameFile, DeleteFile]


@dataclass(frozen=True)
class ParsedWorkspaceEdit:
    """Canonical form of a workspace edit.

    Attributes:
        document_changes: Ordered ``documentChanges`` entries, or None when absent
        changes: Entries of the ``changes`` map in their given order, or None when absent
    """

    document_changes: Optional[tuple[DocumentChange, ...]] = None
    changes: Optional[tuple[DocumentTextEdits, ...]] = None

    def text_edit_groups(self) -> list[DocumentTextEdits]:
        """All text edit groups in application order."""
        groups = [c for c in self.document_changes or () if isinstance(c, DocumentTextEdits)]
        groups.extend(self.changes or ())
        return groups

    def file_operations(self) -> list[Union[CreateFile, RenameFile, DeleteFile]]:
        return [c for c in self.document_changes or () if not isinstance(c, DocumentTextEdits)]

    @property
    def is_empty(self) -> bool:
        return not self.document_changes and not self.changes


@dataclass
class ApplyResult:
    """What an applied workspace edit touched."""

    edited_files: list[str] = field(default_factory=list)
    operations: list[str] = field(default_factory=list)

    def to_json(self) -> dict[str, Any]:
        return {"editedFiles": list(self.edited_files), "operations": list(self.operations)}


def uri_to_path(uri: str) -> Path:
    """Convert a ``file://`` URI to a filesystem path.

    Raises:
        WorkspaceEditError: If the URI does not use the file scheme
    """
    parsed = urlparse(uri)
    if parsed.scheme != "file":
        raise WorkspaceEditError(f"unsupported URI scheme: {uri}")
    return Path(unquote(parsed.path))


# Parsing


def _require_dict(value: Any, what: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise WorkspaceEditError(f"{what} must be an object")
    return value


def _require_str(value: Any, what: str) -> str:
    if not isinstance(value, str):
        raise WorkspaceEditError(f"{what} must be a string")
    return value


def _parse_position(value: Any) -> Position:
    value = _require_dict(value, "position")
    line = value.get("line")
    character = value.get("character")
    for name, number in (("line", line), ("character", character)):
        if isinstance(number, bool) or not isinstance(number, int):
            raise WorkspaceEditError(f"position {name} must be an integer")
        if number < 0:
            raise PositionError("invalid position: negative")
    return Position(line=line, character=character)


def _parse_text_edit(value: Any) -> TextEdit:
    value = _require_dict(value, "text edit")
    range_value = _require_dict(value.get("range"), "text edit range")
    return TextEdit(
        range=Range(
            start=_parse_position(range_value.get("start")),
            end=_parse_position(range_value.get("end")),
        ),
        new_text=_require_str(value.get("newText"), "newText"),
    )


def _parse_edits(value: Any) -> tuple[TextEdit, ...]:
    if not isinstance(value, list):
        raise WorkspaceEditError("edits must be an array")
    return tuple(_parse_text_edit(item) for item in value)


def _flag(options: dict[str, Any], name: str) -> Optional[bool]:
    value = options.get(name)
    if value is None:
        return None
    if not isinstance(value, bool):
        raise WorkspaceEditError(f"option {name} must be a boolean")
    return value


def _parse_document_change(value: Any) -> DocumentChange:
    value = _require_dict(value, "documentChanges entry")
    kind = value.get("kind")
    options = value.get("options") or {}
    if not isinstance(options, dict):
        raise WorkspaceEditError("file operation options must be an object")

    if kind is None:
        document = _require_dict(value.get("textDocument"), "textDocument")
        version = document.get("version")
        if version is not None and (isinstance(version, bool) or not isinstance(version, int)):
            raise WorkspaceEditError("textDocument version must be an integer or null")
        return DocumentTextEdits(
            uri=_require_str(document.get("uri"), "textDocument uri"),
            edits=_parse_edits(value.get("edits")),
            version=version,
        )
    if kind == "create":
        return CreateFile(
            uri=_require_str(value.get("uri"), "create uri"),
            options=CreateFileOptions(
                overwrite=_flag(options, "overwrite"),
                ignore_if_exists=_flag(options, "ignoreIfExists"),
            ),
        )
    if kind == "rename":
        return RenameFile(
            old_uri=_require_str(value.get("oldUri"), "rename oldUri"),
            new_uri=_require_str(value.get("newUri"), "rename newUri"),
            options=RenameFileOptions(
                overwrite=_flag(options, "overwrite"),
                ignore_if_exists=_flag(options, "ignoreIfExists"),
            ),
        )
    if kind == "delete":
        return DeleteFile(
            uri=_require_str(value.get("uri"), "delete uri"),
            options=DeleteFileOptions(
                recursive=_flag(options, "recursive"),
                ignore_if_not_exists=_flag(options, "ignoreIfNotExists"),
            ),
        )
    raise WorkspaceEditError(f"unsupported documentChanges kind: {kind}")


def parse_workspace_edit(value: Any) -> ParsedWorkspaceEdit:
    """Resolve a ``WorkspaceEdit`` JSON value into its canonical form.

    Args:
        value: Decoded JSON, or an already parsed edit (returned unchanged)

    Returns:
        The parsed edit

    Raises:
        WorkspaceEditError: If the value is malformed or uses an unknown kind
    """
    if isinstance(value, ParsedWorkspaceEdit):
        return value
    value = _require_dict(value, "workspace edit")

    document_changes = None
    raw_document_changes = value.get("documentChanges")
    if raw_document_changes is not None:
        if not isinstance(raw_document_changes, list):
            raise WorkspaceEditError("documentChanges must be an array")
        document_changes = tuple(_parse_document_change(item) for item in raw_document_changes)

    changes = None
    raw_changes = value.get("changes")
    if raw_changes is not None:
        raw_changes = _require_dict(raw_changes, "changes")
        changes = tuple(
            DocumentTextEdits(uri=uri, edits=_parse_edits(edits)) for uri, edits in raw_changes.items()
        )

    return ParsedWorkspaceEdit(document_changes=document_changes, changes=changes)


# Text edits


def apply_text_edits(text: str, edits: tuple[TextEdit, ...] | list[TextEdit]) -> str:
    """Apply a set of non-overlapping text edits to a string.

    All positions are resolved against the original text. Inserts at the
    same position are applied in their given order.

    Raises:
        PositionError: If any position lies outside the text
        EditConflictError: If two edits overlap
    """
    resolved = []
    for index, edit in enumerate(edits):
        start = offset_at(text, edit.range.start)
        end = offset_at(text, edit.range.end)
        if end < start:
            raise PositionError("invalid edit range: end before start")
        resolved.append((start, end, index, edit.new_text))

    resolved.sort()
    for previous, current in zip(resolved, resolved[1:]):
        if previous[1] > current[0]:
            raise EditConflictError("overlapping text edits are not supported (conflict detected)")

    result = text
    for start, end, _, new_text in reversed(resolved):
        result = result[:start] + new_text + result[end:]
    return result


def _read_text(path: Path) -> str:
    with open(path, "r", encoding="utf-8", newline="") as f:
        return f.read()


def _write_text(path: Path, text: str) -> None:
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(text)


def _is_within(path: Path, prefix: Path) -> bool:
    return path == prefix or prefix in path.parents


class _Overlay:
    """In-memory view of the files a workspace edit touches.

    ``_files`` holds simulated file contents (None for a known-absent path).
    ``_history`` records directory removals and moves so paths that are not
    in ``_files`` can be traced back to where they live on disk.
    """

    def __init__(self) -> None:
        self._files: dict[Path, Optional[str]] = {}
        self._history: list[tuple[str, Path, Optional[Path]]] = []

    def _disk_path(self, path: Path) -> Optional[Path]:
        for action, target, source in reversed(self._history):
            if action == "removed" and _is_within(path, target):
                return None
            if action == "moved":
                if _is_within(path, target):
                    path = source / path.relative_to(target)
                elif _is_within(path, source):
                    return None
        return path

    def _live_files_under(self, prefix: Path) -> list[Path]:
        return [p for p, text in self._files.items() if text is not None and prefix in p.parents]

    def exists(self, path: Path) -> bool:
        if path in self._files:
            return self._files[path] is not None
        if self._live_files_under(path):
            return True
        disk = self._disk_path(path)
        return disk is not None and disk.exists()

    def is_dir(self, path: Path) -> bool:
        if path in self._files:
            return False
        if self._live_files_under(path):
            return True
        disk = self._disk_path(path)
        return disk is not None and disk.is_dir()

    def is_empty_dir(self, path: Path) -> bool:
        if self._live_files_under(path):
            return False
        disk = self._disk_path(path)
        if disk is None or not disk.is_dir():
            return True
        for child in disk.iterdir():
            if self.exists(path / child.name):
                return False
        return True

    def read(self, path: Path) -> str:
        if path in self._files:
            text = self._files[path]
            if text is None:
                raise WorkspaceEditError(f"cannot edit missing file: {path}")
            return text
        disk = self._disk_path(path)
        if disk is None or not disk.is_file():
            raise WorkspaceEditError(f"cannot edit missing file: {path}")
        return _read_text(disk)

    def write(self, path: Path, text: str) -> None:
        self._files[path] = text

    def remove(self, path: Path) -> None:
        for p in list(self._files):
            if _is_within(p, path):
                self._files[p] = None
        self._files[path] = None
        self._history.append(("removed", path, None))

    def move(self, old: Path, new: Path) -> None:
        if not self.is_dir(old):
            text = self.read(old)
            self.remove(old)
            self._files[new] = text
            return
        moved = {new / p.relative_to(old): text for p, text in self._files.items() if old in p.parents}
        self.remove(new)
        for p in list(self._files):
            if _is_within(p, old):
                del self._files[p]
        self._history.append(("moved", new, old))
        self._files.pop(new, None)
        self._files.update(moved)


def _simulate_operation(overlay: _Overlay, operation: Union[CreateFile, RenameFile, DeleteFile]) -> bool:
    """Apply a file operation to the overlay.

    Returns:
        False if the operation's preconditions fail; planning stops there
    """
    if isinstance(operation, CreateFile):
        path = uri_to_path(operation.uri)
        options = operation.options or CreateFileOptions()
        if overlay.exists(path):
            if options.overwrite:
                overlay.write(path, "")
                return True
            return bool(options.ignore_if_exists)
        overlay.write(path, "")
        return True

    if isinstance(operation, RenameFile):
        old = uri_to_path(operation.old_uri)
        new = uri_to_path(operation.new_uri)
        options = operation.options or RenameFileOptions()
        if not overlay.exists(old):
            return False
        if overlay.exists(new):
            if not options.overwrite:
                return bool(options.ignore_if_exists)
            overlay.remove(new)
        overlay.move(old, new)
        return True

    path = uri_to_path(operation.uri)
    options = operation.options or DeleteFileOptions()
    if not overlay.exists(path):
        return bool(options.ignore_if_not_exists)
    if overlay.is_dir(path) and not options.recursive and not overlay.is_empty_dir(path):
        return False
    overlay.remove(path)
    return True


def _plan(edit: ParsedWorkspaceEdit) -> None:
    """Validate every text edit against the simulated file state."""
    overlay = _Overlay()
    for change in edit.document_changes or ():
        if isinstance(change, DocumentTextEdits):
            path = uri_to_path(change.uri)
            overlay.write(path, apply_text_edits(overlay.read(path), change.edits))
        elif not _simulate_operation(overlay, change):
            # Execution fails at this operation; later edits never run
            return
    for group in edit.changes or ():
        path = uri_to_path(group.uri)
        overlay.write(path, apply_text_edits(overlay.read(path), group.edits))


# Execution


def _apply_text_document(group: DocumentTextEdits, result: ApplyResult) -> None:
    path = uri_to_path(group.uri)
    try:
        before = _read_text(path)
    except OSError as exc:
        raise WorkspaceEditError(f"cannot read {path}: {exc}") from exc
    after = apply_text_edits(before, group.edits)
    if after != before:
        _write_text(path, after)
    if str(path) not in result.edited_files:
        result.edited_files.append(str(path))
    logger.debug("Applied %d edits to %s", len(group.edits), path)


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def _create_file(operation: CreateFile, result: ApplyResult) -> None:
    path = uri_to_path(operation.uri)
    options = operation.options or CreateFileOptions()
    if path.exists():
        if not options.overwrite:
            if options.ignore_if_exists:
                return
            raise FileOperationError(f"create failed: file exists: {path}")
        if path.is_dir():
            raise FileOperationError(f"create failed: path is a directory: {path}")
    else:
        path.parent.mkdir(parents=True, exist_ok=True)
    _write_text(path, "")
    result.operations.append(f"create {path}")


def _rename_file(operation: RenameFile, result: ApplyResult) -> None:
    old = uri_to_path(operation.old_uri)
    new = uri_to_path(operation.new_uri)
    options = operation.options or RenameFileOptions()
    if not old.exists():
        raise FileOperationError(f"rename failed: source does not exist: {old}")
    if new.exists():
        if not options.overwrite:
            if options.ignore_if_exists:
                return
            raise FileOperationError(f"rename failed: destination exists: {new}")
        _remove_path(new)
    new.parent.mkdir(parents=True, exist_ok=True)
    old.rename(new)
    result.operations.append(f"rename {old} -> {new}")


def _delete_file(operation: DeleteFile, result: ApplyResult) -> None:
    path = uri_to_path(operation.uri)
    options = operation.options or DeleteFileOptions()
    if not path.exists() and not path.is_symlink():
        if options.ignore_if_not_exists:
            return
        raise FileOperationError(f"delete failed: path does not exist: {path}")
    if path.is_dir() and not path.is_symlink():
        if options.recursive:
            shutil.rmtree(path)
        else:
            os.rmdir(path)
    else:
        path.unlink()
    result.operations.append(f"delete {path}")


_OPERATIONS = {
    CreateFile: _create_file,
    RenameFile: _rename_file,
    DeleteFile: _delete_file,
}


def apply_workspace_edit(edit: Any) -> ApplyResult:
    """Apply a workspace edit to the filesystem.

    Args:
        edit: ``WorkspaceEdit`` JSON or a :class:`ParsedWorkspaceEdit`

    Returns:
        The files edited and the file operations performed

    Raises:
        WorkspaceEditError: If the edit is malformed; nothing is written
        PositionError: If a text edit is out of bounds; nothing is written
        EditConflictError: If text edits overlap; nothing is written
        FileOperationError: If a file operation's precondition fails;
            operations before it stay applied
    """
    parsed = parse_workspace_edit(edit)
    _plan(parsed)

    result = ApplyResult()
    for change in parsed.document_changes or ():
        if isinstance(change, DocumentTextEdits):
            _apply_text_document(change, result)
            continue
        try:
            _OPERATIONS[type(change)](change, result)
        except FileOperationError:
            raise
        except OSError as exc:
            raise FileOperationError(f"{change.kind} failed: {exc}") from exc
    for group in parsed.changes or ():
        _apply_text_document(group, result)
    return result


# Preview


def _display_uri(uri: str) -> str:
    try:
        return str(uri_to_path(uri))
    except WorkspaceEditError:
        return uri


def format_workspace_edit(edit: Any) -> str:
    """Render a human-readable preview of a workspace edit.

    File operations are listed first, then each document's edits.
    """
    parsed = parse_workspace_edit(edit)
    lines: list[str] = []

    for operation in parsed.file_operations():
        if isinstance(operation, CreateFile):
            lines.append(f"create {_display_uri(operation.uri)}")
        elif isinstance(operation, RenameFile):
            lines.append(f"rename {_display_uri(operation.old_uri)} -> {_display_uri(operation.new_uri)}")
        else:
            lines.append(f"delete {_display_uri(operation.uri)}")

    per_file: dict[str, list[TextEdit]] = {}
    for group in list(parsed.changes or ()) + [
        c for c in parsed.document_changes or () if isinstance(c, DocumentTextEdits)
    ]:
        per_file.setdefault(group.uri, []).extend(group.edits)

    for uri, edits in per_file.items():
        lines.append(f"{_display_uri(uri)} ({len(edits)} edits)")
        for e in edits:
            start, end = e.range.start, e.range.end
            lines.append(
                f"  [{start.line}:{start.character} -> {end.line}:{end.character}] "
                f"{json.dumps(e.new_text, ensure_ascii=False)}"
            )
    return "\n".join(lines)


def _position_to_json(position: Position) -> dict[str, int]:
    return {"line": position.line, "character": position.character}


def _text_edit_to_json(edit: TextEdit) -> dict[str, Any]:
    return {
        "range": {"start": _position_to_json(edit.range.start), "end": _position_to_json(edit.range.end)},
        "newText": edit.new_text,
    }


def _options_to_json(options: Any, names: dict[str, str]) -> Optional[dict[str, bool]]:
    if options is None:
        return None
    out = {key: getattr(options, attr) for attr, key in names.items() if getattr(options, attr) is not None}
    return out or None


def _document_change_to_json(change: DocumentChange) -> dict[str, Any]:
    if isinstance(change, DocumentTextEdits):
        return {
            "textDocument": {"uri": change.uri, "version": change.version},
            "edits": [_text_edit_to_json(e) for e in change.edits],
        }
    if isinstance(change, CreateFile):
        out: dict[str, Any] = {"kind": "create", "uri": change.uri}
        options = _options_to_json(change.options, {"overwrite": "overwrite", "ignore_if_exists": "ignoreIfExists"})
    elif isinstance(change, RenameFile):
        out = {"kind": "rename", "oldUri": change.old_uri, "newUri": change.new_uri}
        options = _options_to_json(change.options, {"overwrite": "overwrite", "ignore_if_exists": "ignoreIfExists"})
    else:
        out = {"kind": "delete", "uri": change.uri}
        options = _options_to_json(
            change.options, {"recursive": "recursive", "ignore_if_not_exists": "ignoreIfNotExists"}
        )
    if options:
        out["options"] = options
    return out


def workspace_edit_to_json(edit: Any) -> dict[str, Any]:
    """Canonical JSON form of a workspace edit (no disk access)."""
    parsed = parse_workspace_edit(edit)
    out: dict[str, Any] = {}
    if parsed.changes is not None:
        out["changes"] = {g.uri: [_text_edit_to_json(e) for e in g.edits] for g in parsed.changes}
    if parsed.document_changes is not None:
        out["documentChanges"] = [_document_change_to_json(c) for c in parsed.document_changes]
    return out


def handle_apply_edit_request(params: Any, applied_edits: list[Any]) -> dict[str, Any]:
    """Answer a server's ``workspace/applyEdit`` request by applying the edit.

    Successfully applied edits are appended to ``applied_edits``.

    Returns:
        ``{applied: true}``, or ``{applied: false, failureReason}``
    """
    edit = params.get("edit") if isinstance(params, dict) else None
    if edit is None:
        return {"applied": False, "failureReason": "missing edit"}
    try:
        apply_workspace_edit(edit)
    except (WorkspaceEditError, ValueError, OSError) as exc:
        logger.info("Rejected workspace/applyEdit: %s", exc)
        return {"applied": False, "failureReason": str(exc) or type(exc).__name__}
    applied_edits.append(edit)
    return {"applied": True}
