"""Pytest fixtures for lsp-cli tests."""

import shutil
import tempfile

import pytest


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Keep daemon endpoints and user config of every test in temp dirs.

    Unix socket paths are length-limited, so the runtime directory lives
    directly under the system temp dir with a short name.
    """
    runtime_dir = tempfile.mkdtemp(prefix="lspt")
    config_dir = tempfile.mkdtemp(prefix="lspc")
    monkeypatch.setenv("LSP_CLI_RUNTIME_DIR", runtime_dir)
    monkeypatch.setenv("XDG_CONFIG_HOME", config_dir)
    monkeypatch.setenv("XDG_CONFIG_DIRS", config_dir)
    yield runtime_dir
    shutil.rmtree(runtime_dir, ignore_errors=True)
    shutil.rmtree(config_dir, ignore_errors=True)
