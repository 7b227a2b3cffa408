"""Language server profiles: how to launch a server and label its files."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping, Optional

__all__ = [
    "ServerProfile",
    "BUILTIN_PROFILES",
    "get_builtin_profile",
]


@dataclass(frozen=True)
class ServerProfile:
    """Immutable description of a language server launch.

    Attributes:
        name: Profile name (also scopes the daemon endpoint)
        command: Executable to spawn
        args: Arguments passed to the executable
        initialization_options: Sent as ``initializationOptions`` during the handshake
        language_ids: File extension (with leading dot) to LSP language id
        default_language_id: Language id for extensions not in ``language_ids``
        cwd: Working directory for the server process (defaults to the workspace root)
        env: Extra environment variables for the server process
    """

    name: str
    command: str
    args: tuple[str, ...] = ()
    initialization_options: Any = None
    language_ids: Mapping[str, str] = field(default_factory=dict)
    default_language_id: str = "plaintext"
    cwd: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)

    def language_id_for(self, path: Path | str) -> str:
        """Resolve the LSP language id for a file by its extension."""
        suffix = Path(path).suffix
        return self.language_ids.get(suffix, self.default_language_id)

    def process_env(self) -> Optional[dict[str, str]]:
        """Environment for the server process, or None to inherit unchanged."""
        if not self.env:
            return None
        return {**os.environ, **self.env}

    def with_command(self, command: str, args: tuple[str, ...] | list[str] = ()) -> "ServerProfile":
        """Return a copy launching a different command."""
        return replace(self, command=command, args=tuple(args))


BUILTIN_PROFILES: dict[str, ServerProfile] = {
    "rust-analyzer": ServerProfile(
        name="rust-analyzer",
        command="rust-analyzer",
        language_ids={".rs": "rust"},
        default_language_id="rust",
    ),
    "typescript-language-server": ServerProfile(
        name="typescript-language-server",
        command="npx",
        args=("-y", "typescript-language-server", "--stdio"),
        language_ids={
            ".ts": "typescript",
            ".tsx": "typescriptreact",
            ".js": "javascript",
            ".jsx": "javascriptreact",
            ".json": "json",
        },
    ),
}


def get_builtin_profile(name: str) -> Optional[ServerProfile]:
    """Look up a built-in profile by name."""
    return BUILTIN_PROFILES.get(name)
