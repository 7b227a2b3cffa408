"""
Arbitrary LSP requests and notifications.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

from lspcli.cli_commands.invocation import CommandError, Invocation
from lspcli.cli_commands.queries import document_path


def parse_params(inv: Invocation, params: Optional[str]) -> Any:
    """Decode a ``--params`` JSON value (None when omitted)."""
    if params is None:
        return None
    with inv.reporting_errors():
        try:
            return json.loads(params)
        except json.JSONDecodeError as e:
            raise CommandError(f"Invalid --params JSON: {e}") from e


async def _request(inv: Invocation, method: str, params: Any, documents: list[Path], apply: bool) -> Any:
    async with inv.gateway() as gateway:
        if apply:
            result, applied = await gateway.request_and_apply(method, params, documents=documents)
            return {"result": result, "appliedEdits": applied}
        return await gateway.request(method, params, documents=documents)


def request(inv: Invocation, method: str, params: Optional[str], files: list[Path], apply: bool) -> None:
    """
    Send any request and print its raw result.

    With ``apply``, workspace edits the server pushes while the request is
    in flight are applied and reported next to the result.
    """
    decoded = parse_params(inv, params)
    documents = [document_path(f) for f in files]
    inv.emit(inv.run(_request(inv, method, decoded, documents, apply)))


async def _notify(inv: Invocation, method: str, params: Any, documents: list[Path]) -> dict[str, Any]:
    async with inv.gateway() as gateway:
        await gateway.notify(method, params, documents=documents)
    return {"notified": True}


def notify(inv: Invocation, method: str, params: Optional[str], files: list[Path]) -> None:
    """
    Send any notification.
    """
    decoded = parse_params(inv, params)
    documents = [document_path(f) for f in files]
    inv.emit(inv.run(_notify(inv, method, decoded, documents)), "notified")
