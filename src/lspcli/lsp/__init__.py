"""Language Server Protocol client implementation.

This package speaks LSP to an external language server: JSON-RPC framing,
the session lifecycle with incremental document synchronization, and the
engine that applies workspace edits to disk.
"""

__all__ = ["jsonrpc", "position_utils", "session", "shapes", "workspace_edit"]
