"""lsp-cli - Drive language servers from the command line."""

__version__ = "0.1.0"

from lspcli.config import ConfigError, resolve_server_profile
from lspcli.gateway import Gateway
from lspcli.lsp.session import LanguageServerSession, SessionState
from lspcli.lsp.workspace_edit import apply_workspace_edit, parse_workspace_edit
from lspcli.profiles import BUILTIN_PROFILES, ServerProfile, get_builtin_profile

__all__ = [
    "__version__",
    "BUILTIN_PROFILES",
    "ConfigError",
    "Gateway",
    "LanguageServerSession",
    "ServerProfile",
    "SessionState",
    "apply_workspace_edit",
    "get_builtin_profile",
    "parse_workspace_edit",
    "resolve_server_profile",
]
