"""Command modules for the lsp-cli app and the markers they print."""

from __future__ import annotations

import os
import sys
from typing import Optional, TextIO

SUCCESS_MARKER = "✓"
FAILURE_MARKER = "✗"


def _can_print(marker: str, stream: Optional[TextIO]) -> bool:
    """Whether ``stream`` can show ``marker`` as-is."""
    # Legacy Windows consoles mangle these glyphs whatever their code page says
    if os.name == "nt" and "WT_SESSION" not in os.environ:
        return False
    encoding = getattr(stream, "encoding", None)
    if not encoding:
        return False
    try:
        marker.encode(encoding)
    except UnicodeEncodeError:
        return False
    return True


def get_action_success_string() -> str:
    """
    Marker for a completed action in stdout output ("[ OK ]" when stdout can't show a tick).
    """
    return SUCCESS_MARKER if _can_print(SUCCESS_MARKER, sys.stdout) else "[ OK ]"


def get_action_failure_string() -> str:
    """
    Marker for a failure reported on stderr ("[ FAIL ]" when stderr can't show a cross).
    """
    return FAILURE_MARKER if _can_print(FAILURE_MARKER, sys.stderr) else "[ FAIL ]"
