"""Session daemon: one language server shared by many CLI invocations."""

__all__ = ["autostart", "client", "endpoint", "events", "log_sink", "protocol", "server"]
