from rich.console import Console

from lspcli.logging import Logger, LogLevel

# Styles for user-facing diagnostics; INFO prints unstyled
LEVEL_STYLES = {
    LogLevel.FATAL: "bold red",
    LogLevel.ERROR: "red",
    LogLevel.WARN: "yellow",
    LogLevel.DEBUG: "dim",
    LogLevel.TRACE: "dim",
}


class ConsoleLogger(Logger):
    """Writes lsp-cli's own diagnostics to a Rich console.

    The console is stderr in the CLI so diagnostics never mix with the JSON
    a command prints on stdout. Each level has a default style; a ``style``
    passed by the caller wins.
    """

    def __init__(self, console: Console, level: LogLevel = LogLevel.INFO) -> None:
        self._console = console
        self.level = level

    def log(self, level: LogLevel = LogLevel.INFO, *args, **kwargs) -> None:
        if level.value > self.level.value:
            return
        style = LEVEL_STYLES.get(level)
        if style is not None:
            kwargs.setdefault("style", style)
        self._console.print(*args, **kwargs)
