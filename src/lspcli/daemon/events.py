"""Buffering of server push notifications for pull-based retrieval."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Optional

__all__ = [
    "DaemonEvent",
    "EVENT_KINDS",
    "EventBatch",
    "EventQueryError",
    "EventQueue",
]

EVENT_KINDS = frozenset({"diagnostics"})

DEFAULT_LIMIT = 200
MAX_LIMIT = 1000


class EventQueryError(ValueError):
    """Raised for an invalid event query (bad kind, cursor or limit)."""

    pass


@dataclass(frozen=True)
class DaemonEvent:
    """One buffered notification.

    Attributes:
        cursor: Position in the queue, starting at 1
        kind: Event kind (``diagnostics``)
        payload: Raw notification params
        ts: Arrival time in milliseconds since the epoch
    """

    cursor: int
    kind: str
    payload: Any
    ts: int

    def to_json(self) -> dict[str, Any]:
        return {"cursor": self.cursor, "kind": self.kind, "payload": self.payload, "ts": self.ts}


@dataclass(frozen=True)
class EventBatch:
    """Result of one retrieval; pass ``next_cursor`` as ``since`` to continue."""

    next_cursor: int
    events: tuple[DaemonEvent, ...]

    def to_json(self) -> dict[str, Any]:
        return {"nextCursor": self.next_cursor, "events": [e.to_json() for e in self.events]}


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class EventQueue:
    """Append-only event log addressed by monotonically increasing cursors.

    Retrieval is a pure filter over what has already arrived and never
    waits for new events.
    """

    def __init__(self) -> None:
        self._events: list[DaemonEvent] = []
        self._next_cursor = 1

    def __len__(self) -> int:
        return len(self._events)

    @property
    def last_cursor(self) -> int:
        """Cursor of the newest event, 0 while the queue is empty."""
        return self._next_cursor - 1

    def push(self, kind: str, payload: Any) -> DaemonEvent:
        """Append an event and assign it the next cursor."""
        if kind not in EVENT_KINDS:
            raise EventQueryError(f"unknown event kind: {kind!r}")
        event = DaemonEvent(
            cursor=self._next_cursor,
            kind=kind,
            payload=payload,
            ts=int(time.time() * 1000),
        )
        self._next_cursor += 1
        self._events.append(event)
        return event

    def get(self, kind: Optional[str] = None, since: Any = 0, limit: Any = DEFAULT_LIMIT) -> EventBatch:
        """Return events after a cursor.

        Args:
            kind: Only return events of this kind
            since: Return events with a cursor greater than this
            limit: Maximum number of events, clamped to [1, 1000]

        Returns:
            The batch; ``next_cursor`` is the last returned cursor, or
            ``since`` when nothing matched

        Raises:
            EventQueryError: If kind is unknown, since is not a non-negative
                integer, or limit is not an integer
        """
        if kind is not None and kind not in EVENT_KINDS:
            raise EventQueryError(f"unknown event kind: {kind!r}")
        if since is None:
            since = 0
        if not _is_int(since) or since < 0:
            raise EventQueryError(f"since must be a non-negative integer, got {since!r}")
        if limit is None:
            limit = DEFAULT_LIMIT
        if not _is_int(limit):
            raise EventQueryError(f"limit must be an integer, got {limit!r}")
        limit = max(1, min(MAX_LIMIT, limit))

        # Cursors are dense from 1, so the first candidate sits at index `since`
        selected = []
        for event in self._events[since:]:
            if kind is not None and event.kind != kind:
                continue
            selected.append(event)
            if len(selected) == limit:
                break

        next_cursor = selected[-1].cursor if selected else since
        return EventBatch(next_cursor=next_cursor, events=tuple(selected))
