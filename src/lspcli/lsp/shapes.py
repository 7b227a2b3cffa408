"""Normalization of the response shapes language servers may return."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional

__all__ = [
    "CodeActionItem",
    "normalize_code_actions",
    "normalize_locations",
    "select_code_actions",
]


def normalize_locations(result: Any) -> list[dict[str, Any]]:
    """Flatten ``Location | Location[] | LocationLink[] | null``.

    Links resolve to their target selection range (or target range).

    Returns:
        A list of ``{uri, range}`` objects
    """
    if result is None:
        return []
    items = result if isinstance(result, list) else [result]
    locations = []
    for item in items:
        if not isinstance(item, dict):
            continue
        if "targetUri" in item:
            target_range = item.get("targetSelectionRange") or item.get("targetRange")
            locations.append({"uri": item["targetUri"], "range": target_range})
        elif "uri" in item:
            locations.append({"uri": item["uri"], "range": item.get("range")})
    return locations


@dataclass(frozen=True)
class CodeActionItem:
    """A code action (or bare command) offered by the server.

    ``index`` is the position in the server's original list, used to pick
    an action on a later invocation.
    """

    index: int
    title: str
    kind: Optional[str] = None
    is_preferred: bool = False
    edit: Optional[dict[str, Any]] = None
    command: Optional[dict[str, Any]] = None

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {"index": self.index, "title": self.title}
        if self.kind is not None:
            out["kind"] = self.kind
        if self.is_preferred:
            out["isPreferred"] = True
        if self.edit is not None:
            out["edit"] = self.edit
        if self.command is not None:
            out["command"] = self.command
        return out


def normalize_code_actions(result: Any) -> list[CodeActionItem]:
    """Convert a ``(Command | CodeAction)[] | null`` result to items."""
    if not isinstance(result, list):
        return []
    items = []
    for index, entry in enumerate(result):
        if not isinstance(entry, dict):
            continue
        title = str(entry.get("title", ""))
        # A bare Command carries its command name as a string
        if isinstance(entry.get("command"), str):
            items.append(
                CodeActionItem(
                    index=index,
                    title=title,
                    command={
                        "title": title,
                        "command": entry["command"],
                        "arguments": entry.get("arguments", []),
                    },
                )
            )
            continue
        command = entry.get("command")
        items.append(
            CodeActionItem(
                index=index,
                title=title,
                kind=entry.get("kind"),
                is_preferred=bool(entry.get("isPreferred", False)),
                edit=entry.get("edit"),
                command=command if isinstance(command, dict) else None,
            )
        )
    return items


def _kind_matches(kind: Optional[str], wanted: str) -> bool:
    if kind is None:
        return False
    return kind == wanted or kind.startswith(wanted + ".")


def select_code_actions(
    items: list[CodeActionItem],
    kind: Optional[str] = None,
    title_regex: Optional[str] = None,
    preferred: bool = False,
) -> list[CodeActionItem]:
    """Filter code actions.

    Args:
        items: Normalized code actions
        kind: Hierarchical kind prefix (``refactor`` matches ``refactor.extract``)
        title_regex: Regular expression searched in the title
        preferred: Keep only actions marked preferred

    Returns:
        Matching items in their original order

    Raises:
        re.error: If title_regex does not compile
    """
    pattern = re.compile(title_regex) if title_regex else None
    selected = []
    for item in items:
        if kind is not None and not _kind_matches(item.kind, kind):
            continue
        if pattern is not None and not pattern.search(item.title):
            continue
        if preferred and not item.is_preferred:
            continue
        selected.append(item)
    return selected
