"""Utilities for converting between text offsets and LSP positions.

LSP positions count characters in UTF-16 code units while Python strings
index by code point, so every conversion goes through the line's UTF-16
length. Lines are split on ``\\n``; a ``\\r`` directly before it belongs to
the line terminator.
"""

from __future__ import annotations

from lsprotocol.types import Position, Range

__all__ = [
    "PositionError",
    "utf16_length",
    "offset_at",
    "position_at",
    "compute_incremental_change",
    "apply_change",
]


class PositionError(ValueError):
    """Raised when a position does not address a location inside the text."""

    pass


def utf16_length(text: str) -> int:
    """Return the length of text in UTF-16 code units.

    Characters outside the Basic Multilingual Plane are encoded as a
    surrogate pair and count as two units.

    Args:
        text: The string to measure

    Returns:
        Number of UTF-16 code units
    """
    return sum(2 if ord(char) > 0xFFFF else 1 for char in text)


def _line_bounds(text: str, line: int) -> tuple[int, int]:
    """Find the start and content end offsets of a line.

    Args:
        text: The full document text
        line: Zero-based line number

    Returns:
        Tuple of (line_start, line_end) where line_end excludes the terminator

    Raises:
        PositionError: If the line does not exist
    """
    line_start = 0
    for _ in range(line):
        newline = text.find("\n", line_start)
        if newline == -1:
            raise PositionError(f"position line out of range: {line}")
        line_start = newline + 1

    raw_end = text.find("\n", line_start)
    if raw_end == -1:
        return line_start, len(text)
    if raw_end > line_start and text[raw_end - 1] == "\r":
        return line_start, raw_end - 1
    return line_start, raw_end


def offset_at(text: str, position: Position) -> int:
    """Convert an LSP position to an index into text.

    Out-of-range positions are rejected rather than clamped.

    Args:
        text: The full document text
        position: Zero-based line and UTF-16 character

    Returns:
        Index into text addressing the same location

    Raises:
        PositionError: If the line or character is out of range, or the
            character points into the middle of a surrogate pair
    """
    if position.line < 0 or position.character < 0:
        raise PositionError("invalid position: negative")

    line_start, line_end = _line_bounds(text, position.line)

    units = 0
    index = line_start
    while units < position.character:
        if index >= line_end:
            raise PositionError(
                f"position character out of range: line={position.line} "
                f"character={position.character} "
                f"(line length={utf16_length(text[line_start:line_end])})"
            )
        units += 2 if ord(text[index]) > 0xFFFF else 1
        index += 1

    if units != position.character:
        raise PositionError(
            f"position splits a surrogate pair: line={position.line} "
            f"character={position.character}"
        )
    return index


def position_at(text: str, offset: int) -> Position:
    """Convert an index into text to an LSP position.

    Args:
        text: The full document text
        offset: Index in the range [0, len(text)]

    Returns:
        Position with the character measured in UTF-16 code units
    """
    if offset < 0 or offset > len(text):
        raise PositionError(f"offset out of range: {offset}")

    line = text.count("\n", 0, offset)
    line_start = text.rfind("\n", 0, offset) + 1
    return Position(line=line, character=utf16_length(text[line_start:offset]))


def compute_incremental_change(old: str, new: str) -> tuple[Range, str]:
    """Compute a single-hunk replacement turning old into new.

    Uses the longest common prefix and suffix, so the hunk is minimal for a
    single contiguous change. The hunk boundaries never fall between the
    ``\\r`` and ``\\n`` of a CRLF terminator.

    Args:
        old: Text the server currently holds
        new: Text the server should hold afterwards

    Returns:
        Tuple of (range in old, replacement text)
    """
    limit = min(len(old), len(new))

    prefix = 0
    while prefix < limit and old[prefix] == new[prefix]:
        prefix += 1
    if prefix > 0 and old[prefix - 1] == "\r" and old[prefix:prefix + 1] == "\n":
        prefix -= 1

    suffix = 0
    while (
        suffix < limit - prefix
        and old[len(old) - 1 - suffix] == new[len(new) - 1 - suffix]
    ):
        suffix += 1
    end = len(old) - suffix
    if suffix > 0 and end > 0 and old[end - 1] == "\r" and old[end] == "\n":
        suffix -= 1
        end += 1

    change_range = Range(start=position_at(old, prefix), end=position_at(old, end))
    return change_range, new[prefix:len(new) - suffix]


def apply_change(text: str, change_range: Range, replacement: str) -> str:
    """Replace the text covered by a range.

    Args:
        text: The full document text
        change_range: Range to replace, in LSP coordinates
        replacement: Text inserted in place of the range

    Returns:
        The updated text

    Raises:
        PositionError: If the range is out of bounds or reversed
    """
    start = offset_at(text, change_range.start)
    end = offset_at(text, change_range.end)
    if end < start:
        raise PositionError("invalid range: end before start")
    return text[:start] + replacement + text[end:]
