"""Command-line interface for lsp-cli."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console

from lspcli import __version__
from lspcli.cli_commands import batch as batch_commands
from lspcli.cli_commands import daemon_control, edits, queries, raw
from lspcli.cli_commands.invocation import Invocation, OutputFormat
from lspcli.console_logger import ConsoleLogger
from lspcli.logging import LogLevel, configure_logging

app = typer.Typer(
    help="lsp-cli - Drive language servers from the command line",
    add_completion=False,
    no_args_is_help=True,
    epilog="Positions are 0-based (LSP compliant): line 0, column 0 is the first character.",
)

LOG_LEVEL_NAMES = [level.name.lower() for level in LogLevel]


def _parse_log_level(value: str) -> LogLevel:
    try:
        return LogLevel[value.upper()]
    except KeyError:
        raise typer.BadParameter(f"must be one of: {', '.join(LOG_LEVEL_NAMES)}")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"lsp-cli version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    root: Optional[Path] = typer.Option(
        None, "--root", help="Workspace root (default: current directory)", file_okay=False
    ),
    server: str = typer.Option("rust-analyzer", "--server", help="Server profile name"),
    server_cmd: Optional[str] = typer.Option(
        None, "--server-cmd", help="Override the server command line (e.g. 'rust-analyzer')"
    ),
    config: Optional[Path] = typer.Option(
        None, "--config", help="Config file replacing the project config (relative to --root)"
    ),
    output_format: OutputFormat = typer.Option(
        OutputFormat.JSON, "--format", case_sensitive=False, help="Output format"
    ),
    no_daemon: bool = typer.Option(
        False, "--no-daemon", help="Run a one-shot server instead of using the workspace daemon"
    ),
    log_level: str = typer.Option(
        "info",
        "--log-level",
        "-L",
        help=f"Diagnostic verbosity ({', '.join(LOG_LEVEL_NAMES)})",
    ),
    version: Optional[bool] = typer.Option(
        None, "--version", "-v", callback=_version_callback, is_eager=True, help="Show version and exit"
    ),
) -> None:
    """
    Drive language servers from the command line.
    """
    level = _parse_log_level(log_level)
    console = Console(stderr=True)
    configure_logging(level, console)

    ctx.obj = Invocation(
        root=(root or Path.cwd()).absolute(),
        server=server,
        logger=ConsoleLogger(console, level),
        server_cmd=server_cmd,
        config=config,
        output_format=output_format,
        use_daemon=not no_daemon,
    )


def _file_argument():
    return typer.Argument(..., help="File path", dir_okay=False)


@app.command()
def ping(ctx: typer.Context) -> None:
    """Start (or reach) the server and report that it answers."""
    queries.ping(ctx.obj)


@app.command()
def symbols(ctx: typer.Context, file: Path = _file_argument()) -> None:
    """List document symbols (textDocument/documentSymbol)."""
    queries.symbols(ctx.obj, file)


@app.command()
def definition(
    ctx: typer.Context,
    file: Path = _file_argument(),
    line: int = typer.Argument(..., min=0, help="0-based line"),
    col: int = typer.Argument(..., min=0, help="0-based column"),
) -> None:
    """Go to definition (textDocument/definition)."""
    queries.definition(ctx.obj, file, line, col)


@app.command()
def references(
    ctx: typer.Context,
    file: Path = _file_argument(),
    line: int = typer.Argument(..., min=0, help="0-based line"),
    col: int = typer.Argument(..., min=0, help="0-based column"),
    include_declaration: bool = typer.Option(
        True, "--include-declaration/--exclude-declaration", help="Include the declaration itself"
    ),
) -> None:
    """Find references (textDocument/references)."""
    queries.references(ctx.obj, file, line, col, include_declaration)


@app.command()
def hover(
    ctx: typer.Context,
    file: Path = _file_argument(),
    line: int = typer.Argument(..., min=0, help="0-based line"),
    col: int = typer.Argument(..., min=0, help="0-based column"),
) -> None:
    """Show hover information (textDocument/hover)."""
    queries.hover(ctx.obj, file, line, col)


@app.command()
def completion(
    ctx: typer.Context,
    file: Path = _file_argument(),
    line: int = typer.Argument(..., min=0, help="0-based line"),
    col: int = typer.Argument(..., min=0, help="0-based column"),
) -> None:
    """List completions (textDocument/completion)."""
    queries.completion(ctx.obj, file, line, col)


@app.command("signature-help")
def signature_help(
    ctx: typer.Context,
    file: Path = _file_argument(),
    line: int = typer.Argument(..., min=0, help="0-based line"),
    col: int = typer.Argument(..., min=0, help="0-based column"),
) -> None:
    """Show call signatures (textDocument/signatureHelp)."""
    queries.signature_help(ctx.obj, file, line, col)


@app.command("document-highlight")
def document_highlight(
    ctx: typer.Context,
    file: Path = _file_argument(),
    line: int = typer.Argument(..., min=0, help="0-based line"),
    col: int = typer.Argument(..., min=0, help="0-based column"),
) -> None:
    """Highlight a symbol's occurrences (textDocument/documentHighlight)."""
    queries.document_highlight(ctx.obj, file, line, col)


@app.command("prepare-rename")
def prepare_rename(
    ctx: typer.Context,
    file: Path = _file_argument(),
    line: int = typer.Argument(..., min=0, help="0-based line"),
    col: int = typer.Argument(..., min=0, help="0-based column"),
) -> None:
    """Check that a rename is possible (textDocument/prepareRename)."""
    queries.prepare_rename(ctx.obj, file, line, col)


@app.command("semantic-tokens-full")
def semantic_tokens_full(ctx: typer.Context, file: Path = _file_argument()) -> None:
    """Semantic tokens of a document (textDocument/semanticTokens/full)."""
    queries.semantic_tokens_full(ctx.obj, file)


@app.command("semantic-tokens-range")
def semantic_tokens_range(
    ctx: typer.Context,
    file: Path = _file_argument(),
    start_line: int = typer.Argument(..., min=0, help="0-based start line"),
    start_col: int = typer.Argument(..., min=0, help="0-based start column"),
    end_line: int = typer.Argument(..., min=0, help="0-based end line"),
    end_col: int = typer.Argument(..., min=0, help="0-based end column"),
) -> None:
    """Semantic tokens of a range (textDocument/semanticTokens/range)."""
    queries.semantic_tokens_range(ctx.obj, file, start_line, start_col, end_line, end_col)


@app.command("semantic-tokens-delta")
def semantic_tokens_delta(
    ctx: typer.Context,
    file: Path = _file_argument(),
    previous_result_id: str = typer.Argument(..., help="resultId of an earlier semantic tokens result"),
) -> None:
    """Semantic token changes (textDocument/semanticTokens/full/delta)."""
    queries.semantic_tokens_delta(ctx.obj, file, previous_result_id)


def _save_after_apply_option():
    return typer.Option(
        False, "--save-after-apply", help="Send didSave for the changed files after applying (needs --apply)"
    )


def _wait_diagnostics_option():
    return typer.Option(
        0,
        "--wait-diagnostics-ms",
        min=0,
        help="After saving, wait up to this long for the server's diagnostics",
    )


@app.command()
def rename(
    ctx: typer.Context,
    file: Path = _file_argument(),
    line: int = typer.Argument(..., min=0, help="0-based line"),
    col: int = typer.Argument(..., min=0, help="0-based column"),
    new_name: str = typer.Argument(..., help="New name"),
    apply: bool = typer.Option(False, "--apply", help="Apply the edit (default: dry run)"),
    save_after_apply: bool = _save_after_apply_option(),
    wait_diagnostics_ms: int = _wait_diagnostics_option(),
) -> None:
    """Rename a symbol (textDocument/rename)."""
    edits.rename(ctx.obj, file, line, col, new_name, apply, save_after_apply, wait_diagnostics_ms)


@app.command("format")
def format_command(
    ctx: typer.Context,
    file: Path = _file_argument(),
    tab_size: int = typer.Option(4, "--tab-size", min=1, help="Indentation width"),
    insert_spaces: bool = typer.Option(True, "--spaces/--tabs", help="Indent with spaces or tabs"),
    apply: bool = typer.Option(False, "--apply", help="Apply the edits (default: dry run)"),
    save_after_apply: bool = _save_after_apply_option(),
    wait_diagnostics_ms: int = _wait_diagnostics_option(),
) -> None:
    """Format a document (textDocument/formatting)."""
    edits.format_document(ctx.obj, file, tab_size, insert_spaces, apply, save_after_apply, wait_diagnostics_ms)


@app.command("code-actions")
def code_actions(
    ctx: typer.Context,
    file: Path = _file_argument(),
    start_line: int = typer.Argument(..., min=0, help="0-based start line"),
    start_col: int = typer.Argument(..., min=0, help="0-based start column"),
    end_line: int = typer.Argument(..., min=0, help="0-based end line"),
    end_col: int = typer.Argument(..., min=0, help="0-based end column"),
    kind: Optional[str] = typer.Option(None, "--kind", help="Only actions of this kind (prefix match)"),
    title_regex: Optional[str] = typer.Option(None, "--title-regex", help="Only actions whose title matches"),
    preferred: bool = typer.Option(False, "--preferred", help="Only preferred actions"),
    first: bool = typer.Option(False, "--first", help="Select the first matching action"),
    index: Optional[int] = typer.Option(None, "--index", min=0, help="Select the action with this index"),
    apply: bool = typer.Option(False, "--apply", help="Apply the selected action"),
) -> None:
    """List, select and apply code actions (textDocument/codeAction)."""
    edits.code_actions(
        ctx.obj,
        file,
        start_line,
        start_col,
        end_line,
        end_col,
        kind=kind,
        title_regex=title_regex,
        preferred=preferred,
        first=first,
        index=index,
        apply=apply,
    )


@app.command("apply-edits")
def apply_edits(
    ctx: typer.Context,
    input_file: Optional[Path] = typer.Option(
        None, "--input", "-i", dir_okay=False, help="Read the edit from a file instead of stdin"
    ),
    apply: bool = typer.Option(False, "--apply", help="Apply the edit (default: dry run)"),
) -> None:
    """Preview or apply a WorkspaceEdit given as JSON."""
    inv: Invocation = ctx.obj
    with inv.reporting_errors():
        if input_file is not None:
            text = input_file.read_text(encoding="utf-8")
        else:
            text = typer.get_text_stream("stdin").read()
    edits.apply_edits(inv, text, apply)


@app.command()
def batch(
    ctx: typer.Context,
    input_file: Optional[Path] = typer.Option(
        None, "--input", "-i", dir_okay=False, help="Read commands from a file instead of stdin"
    ),
    apply: bool = typer.Option(False, "--apply", help="Apply edits unless a line sets apply"),
) -> None:
    """Run JSON-lines commands in one session; prints one JSON line per command."""
    inv: Invocation = ctx.obj
    with inv.reporting_errors():
        if input_file is not None:
            text = input_file.read_text(encoding="utf-8")
        else:
            text = typer.get_text_stream("stdin").read()
    batch_commands.batch(inv, text, apply)


@app.command()
def request(
    ctx: typer.Context,
    method: str = typer.Argument(..., help="LSP method, e.g. textDocument/hover"),
    params: Optional[str] = typer.Option(None, "--params", help="Params as JSON"),
    files: List[Path] = typer.Option([], "--file", "-f", help="Synchronize this file first (repeatable)"),
    apply: bool = typer.Option(False, "--apply", help="Apply edits the server pushes meanwhile"),
) -> None:
    """Send an arbitrary LSP request and print the raw result."""
    raw.request(ctx.obj, method, params, files, apply)


@app.command()
def notify(
    ctx: typer.Context,
    method: str = typer.Argument(..., help="LSP method, e.g. workspace/didChangeConfiguration"),
    params: Optional[str] = typer.Option(None, "--params", help="Params as JSON"),
    files: List[Path] = typer.Option([], "--file", "-f", help="Synchronize this file first (repeatable)"),
) -> None:
    """Send an arbitrary LSP notification."""
    raw.notify(ctx.obj, method, params, files)


@app.command()
def events(
    ctx: typer.Context,
    kind: Optional[str] = typer.Option(None, "--kind", help="Event kind (diagnostics)"),
    since: int = typer.Option(0, "--since", min=0, help="Return events after this cursor"),
    limit: Optional[int] = typer.Option(None, "--limit", help="Maximum number of events (1-1000)"),
) -> None:
    """Fetch events buffered by the daemon."""
    daemon_control.events(ctx.obj, kind, since, limit)


@app.command()
def daemon(
    ctx: typer.Context,
    log_file: Optional[Path] = typer.Option(
        None, "--log-file", dir_okay=False, help="Write the daemon log to this file"
    ),
) -> None:
    """Run the workspace daemon in the foreground."""
    daemon_control.daemon(ctx.obj, log_file)


@app.command("daemon-status")
def daemon_status(ctx: typer.Context) -> None:
    """Show daemon status (starts the daemon if needed)."""
    daemon_control.daemon_status(ctx.obj)


@app.command("daemon-stop")
def daemon_stop(ctx: typer.Context) -> None:
    """Stop the workspace daemon."""
    daemon_control.daemon_stop(ctx.obj)


@app.command("daemon-log")
def daemon_log(
    ctx: typer.Context,
    file: Optional[Path] = typer.Option(None, "--file", dir_okay=False, help="Log to this file"),
    default_file: bool = typer.Option(False, "--default-file", help="Log to the endpoint's default file"),
    discard: bool = typer.Option(False, "--discard", help="Discard the daemon log"),
) -> None:
    """Show or change where the daemon writes its log."""
    daemon_control.daemon_log(ctx.obj, file, default_file, discard)


@app.command("server-status")
def server_status(ctx: typer.Context) -> None:
    """Show the daemon's language server status."""
    daemon_control.server_status(ctx.obj)


@app.command("server-stop")
def server_stop(ctx: typer.Context) -> None:
    """Stop the daemon's language server (the daemon keeps running)."""
    daemon_control.server_stop(ctx.obj)


@app.command("server-restart")
def server_restart(ctx: typer.Context) -> None:
    """Restart the daemon's language server."""
    daemon_control.server_restart(ctx.obj)


if __name__ == "__main__":
    app()
