"""Allow running lsp-cli as ``python -m lspcli``."""

from lspcli.cli import app

if __name__ == "__main__":
    app(prog_name="lsp-cli")
