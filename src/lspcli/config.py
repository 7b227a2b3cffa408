"""
Configuration file parsing for language server profiles.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import platformdirs
import yaml

from lspcli.profiles import ServerProfile, get_builtin_profile

__all__ = [
    "ConfigError",
    "ConfigFile",
    "PROJECT_CONFIG_NAMES",
    "find_project_config",
    "get_machine_config_path",
    "get_user_config_path",
    "load_config_layers",
    "parse_config_file",
    "resolve_server_profile",
]

APP_NAME = "lsp-cli"

# Checked in this order in each directory while walking up from the root
PROJECT_CONFIG_NAMES = (".lsp-cli.yml", ".lsp-cli.yaml", ".lsp-cli.json", "lsp-cli.config.json")

# Accepted spellings of each server entry field
_FIELD_ALIASES = {
    "command": ("command",),
    "preset": ("preset",),
    "args": ("args",),
    "initialization_options": ("initialization_options", "initializationOptions"),
    "language_ids": ("language_ids", "languageIds", "languageIdByExt"),
    "default_language_id": ("default_language_id", "defaultLanguageId"),
    "cwd": ("cwd",),
    "env": ("env",),
}


class ConfigError(Exception):
    """
    Raised when a configuration file is invalid or a server cannot be resolved.
    """

    pass


@dataclass
class ConfigFile:
    """
    Parsed contents of one configuration file.

    Each section maps a name to a normalized server entry whose keys are the
    canonical field names (``command``, ``args``, ``language_ids`` ...).
    """

    path: Optional[Path] = None
    presets: dict[str, dict[str, Any]] = field(default_factory=dict)
    augment: dict[str, dict[str, Any]] = field(default_factory=dict)
    servers: dict[str, dict[str, Any]] = field(default_factory=dict)


def get_machine_config_path() -> Path:
    """
    Get the path to the machine-level (system-wide) configuration file.

    Returns:
        Path to the machine config file (may not exist)
    """
    config_dir = Path(platformdirs.site_config_dir(APP_NAME))
    return config_dir / "config.yml"


def get_user_config_path() -> Path:
    """
    Get the path to the user-level configuration file.

    Uses platformdirs to determine the appropriate user config directory
    for the current platform, then appends 'lsp-cli/config.yml'.

    Returns:
        Path to the user config file (may not exist)

    Example:
        >>> user_config = get_user_config_path()
        >>> if user_config.exists():
        ...     config = parse_config_file(user_config)
    """
    config_dir: Path = Path(platformdirs.user_config_dir(APP_NAME))
    return config_dir / "config.yml"


def find_project_config(start_dir: Path) -> Optional[Path]:
    """
    Walk up the directory tree from start_dir to find a project config file.

    Args:
        start_dir: Directory to start searching from

    Returns:
        Path to the nearest project config file if found, None otherwise
    """
    try:
        current = start_dir.resolve()
    except (OSError, RuntimeError):
        return None

    # Safety limit against pathological mount setups
    max_depth = 100
    for _ in range(max_depth):
        for name in PROJECT_CONFIG_NAMES:
            try:
                config_path = current / name
                if config_path.is_file():
                    return config_path
            except OSError:
                pass

        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


def _normalize_entry(path: Path, section: str, name: Any, entry: Any) -> dict[str, Any]:
    """Validate one server entry and rename its fields to the canonical spelling."""
    where = f"config file '{path}': {section}.{name}"
    if not isinstance(name, str):
        raise ConfigError(f"Error in config file '{path}': {section} keys must be strings")
    if entry is None:
        return {}
    if not isinstance(entry, dict):
        raise ConfigError(f"Error in {where} must be a dictionary")

    known = {alias: canonical for canonical, aliases in _FIELD_ALIASES.items() for alias in aliases}
    unknown = [key for key in entry if key not in known]
    if unknown:
        raise ConfigError(f"Error in {where}: unknown field(s): {', '.join(map(str, unknown))}")

    normalized: dict[str, Any] = {}
    for key, value in entry.items():
        normalized[known[key]] = value

    for key in ("command", "preset", "default_language_id", "cwd"):
        if key in normalized and not isinstance(normalized[key], str):
            raise ConfigError(f"Error in {where}: Field '{key}' must be a string")

    args = normalized.get("args")
    if args is not None and (not isinstance(args, list) or not all(isinstance(a, str) for a in args)):
        raise ConfigError(f"Error in {where}: Field 'args' must be a list of strings")

    for key in ("language_ids", "env"):
        value = normalized.get(key)
        if value is None:
            continue
        if not isinstance(value, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in value.items()
        ):
            raise ConfigError(f"Error in {where}: Field '{key}' must be a dictionary of strings")

    return normalized


def parse_config_file(path: Path) -> Optional[ConfigFile]:
    """
    Parse an lsp-cli configuration file.

    YAML and JSON files are both accepted (JSON is valid YAML). Empty files
    are valid and yield an empty configuration.

    Args:
        path: Path to the configuration file

    Returns:
        The parsed configuration, or None if the file doesn't exist

    Raises:
        ConfigError: If the file is unreadable, malformed or has an invalid structure

    Config File Example (.lsp-cli.yml):
        ```yaml
        presets:
          node-stdio:
            args: ["--stdio"]
        servers:
          pyright:
            preset: node-stdio
            command: pyright-langserver
            language_ids:
              .py: python
        augment:
          rust-analyzer:
            initialization_options:
              checkOnSave: false
        ```
    """
    if not path.exists():
        return None

    try:
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()
    except OSError as e:
        raise ConfigError(f"Error reading config file '{path}': {e}") from e

    config = ConfigFile(path=path)
    if not content.strip():
        return config

    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing config file '{path}': {e}") from e

    if data is None:
        return config
    if not isinstance(data, dict):
        raise ConfigError(f"Error in config file '{path}': top level must be a dictionary")

    unknown = [key for key in data if key not in ("presets", "augment", "servers")]
    if unknown:
        raise ConfigError(
            f"Error in config file '{path}': unknown section(s): {', '.join(map(str, unknown))}"
        )

    for section in ("presets", "augment", "servers"):
        entries = data.get(section)
        if entries is None:
            continue
        if not isinstance(entries, dict):
            raise ConfigError(f"Error in config file '{path}': '{section}' must be a dictionary")
        getattr(config, section).update(
            {name: _normalize_entry(path, section, name, entry) for name, entry in entries.items()}
        )

    return config


def load_config_layers(root: Path, config_path: Optional[Path] = None) -> list[ConfigFile]:
    """
    Load configuration layers in increasing precedence.

    The layers are machine, user, then project. An explicit ``config_path``
    replaces the project layer; relative explicit paths are taken from the
    workspace root.

    Raises:
        ConfigError: If a file is invalid or the explicit file does not exist
    """
    paths: list[Path] = [get_machine_config_path(), get_user_config_path()]
    if config_path is not None:
        explicit = config_path if config_path.is_absolute() else root / config_path
        if not explicit.exists():
            raise ConfigError(f"Config file not found: '{explicit}'")
        paths.append(explicit)
    else:
        project = find_project_config(root)
        if project is not None:
            paths.append(project)

    layers = []
    for path in paths:
        parsed = parse_config_file(path)
        if parsed is not None:
            layers.append(parsed)
    return layers


def _merge_entries(base: Optional[dict[str, Any]], override: Optional[dict[str, Any]]) -> dict[str, Any]:
    """Overlay one entry on another; mappings merge key by key."""
    merged = dict(base or {})
    for key, value in (override or {}).items():
        if key in ("language_ids", "env") and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def _apply_preset(entry: Optional[dict[str, Any]], presets: dict[str, dict[str, Any]]) -> Optional[dict[str, Any]]:
    if not entry or "preset" not in entry:
        return entry
    preset_name = entry["preset"]
    if preset_name not in presets:
        raise ConfigError(f"Unknown server preset: {preset_name}")
    rest = {k: v for k, v in entry.items() if k != "preset"}
    return _merge_entries(presets[preset_name], rest)


def _apply_entry(profile: ServerProfile, name: str, entry: dict[str, Any], root: Path) -> ServerProfile:
    language_ids = dict(profile.language_ids)
    if "language_ids" in entry:
        language_ids = dict(entry["language_ids"])

    cwd = entry.get("cwd", profile.cwd)
    if cwd is not None and not os.path.isabs(cwd):
        cwd = str(root / cwd)

    return ServerProfile(
        name=name,
        command=entry.get("command", profile.command),
        args=tuple(entry.get("args", profile.args)),
        initialization_options=entry.get("initialization_options", profile.initialization_options),
        language_ids=language_ids,
        default_language_id=entry.get("default_language_id", profile.default_language_id),
        cwd=cwd,
        env={**profile.env, **entry.get("env", {})},
    )


def resolve_server_profile(
    name: str,
    root: Path,
    config_path: Optional[Path] = None,
    server_cmd: Optional[str] = None,
) -> ServerProfile:
    """
    Resolve the launch profile for a server name.

    Built-in profiles are augmented by ``augment`` entries; ``servers``
    entries define new servers or override built-ins. Presets are expanded
    in both. Later configuration layers win per field.

    Args:
        name: Server profile name
        root: Workspace root (used for config discovery and relative cwd)
        config_path: Explicit config file replacing the project layer
        server_cmd: Command line replacing the profile's command and args

    Returns:
        The resolved profile

    Raises:
        ConfigError: If configuration is invalid or the name cannot be resolved

    Example:
        >>> profile = resolve_server_profile("rust-analyzer", Path.cwd())
        >>> profile.command
        'rust-analyzer'
    """
    presets: dict[str, dict[str, Any]] = {}
    augment: Optional[dict[str, Any]] = None
    server: Optional[dict[str, Any]] = None
    for layer in load_config_layers(root, config_path):
        for preset_name, preset in layer.presets.items():
            presets[preset_name] = _merge_entries(presets.get(preset_name), preset)
        if name in layer.augment:
            augment = _merge_entries(augment, layer.augment[name])
        if name in layer.servers:
            server = _merge_entries(server, layer.servers[name])

    merged = _merge_entries(_apply_preset(augment, presets), _apply_preset(server, presets))

    builtin = get_builtin_profile(name)
    if builtin is not None:
        profile = _apply_entry(builtin, name, merged, root)
    elif "command" in merged:
        profile = _apply_entry(ServerProfile(name=name, command=merged["command"]), name, merged, root)
    elif server_cmd:
        profile = _apply_entry(ServerProfile(name=name, command=""), name, merged, root)
    else:
        raise ConfigError(f"Unknown server profile: {name}")

    if server_cmd:
        try:
            parts = shlex.split(server_cmd)
        except ValueError as e:
            raise ConfigError(f"Invalid --server-cmd '{server_cmd}': {e}") from e
        if not parts:
            raise ConfigError("--server-cmd must not be empty")
        profile = profile.with_command(parts[0], parts[1:])

    return profile
