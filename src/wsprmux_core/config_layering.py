"""Configuration layering support.

Merges a TOML configuration file with environment variables and CLI
overrides. Precedence: config file < environment variables < CLI args.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for <3.11
    import tomli as tomllib  # type: ignore[no-redef]

ENV_PREFIX = "WSPRMUX_"

# Environment variables under the prefix that are not configuration keys
_RESERVED_ENV_KEYS = {"config_path", "log_level", "data_dir"}


def load_layered_config(
    path: Path | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Load and merge configuration from multiple sources.

    Precedence (later overrides earlier):
    1. The TOML file at ``path`` (if present)
    2. Environment variables (WSPRMUX_* prefix)
    3. CLI overrides (passed as nested dict)

    Args:
        path: TOML configuration file; missing files contribute nothing.
        cli_overrides: Dictionary of CLI-provided overrides.

    Returns:
        Merged configuration dictionary.
    """
    result: dict[str, Any] = {}
    if path is not None and path.exists():
        result = _load_toml_file(path)

    env_overrides = _extract_env_overrides()
    if env_overrides:
        result = _deep_merge(result, env_overrides)

    if cli_overrides:
        result = _deep_merge(result, cli_overrides)

    return result


def _load_toml_file(path: Path) -> dict[str, Any]:
    """Load a TOML file and return its contents as a dictionary."""
    with path.open("rb") as handle:
        return tomllib.load(handle)  # type: ignore[no-any-return]


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base, preferring override values.

    For nested dicts, merge recursively. For all other types, override replaces base.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _extract_env_overrides() -> dict[str, Any]:
    """Extract WSPRMUX_* environment variables into a nested config dict.

    Env var naming convention:
    - WSPRMUX_SECTION__KEY → {"section": {"key": value}}
    - WSPRMUX_KEY → {"key": value}

    Example:
        WSPRMUX_MQTT__BROKER=broker.local → {"mqtt": {"broker": "broker.local"}}
    """
    overrides: dict[str, Any] = {}

    for env_key, env_value in os.environ.items():
        if not env_key.startswith(ENV_PREFIX):
            continue
        suffix = env_key[len(ENV_PREFIX) :]
        if not suffix:
            continue

        parts = suffix.lower().split("__")
        if len(parts) == 1:
            if parts[0] in _RESERVED_ENV_KEYS:
                continue
            overrides[parts[0]] = _parse_env_value(env_value)
        elif len(parts) == 2:
            section, key = parts
            if section not in overrides:
                overrides[section] = {}
            if isinstance(overrides[section], dict):
                overrides[section][key] = _parse_env_value(env_value)

    return overrides


def _parse_env_value(raw: str) -> Any:
    """Parse environment variable string into appropriate Python type.

    - "true"/"false" → bool
    - Numeric strings → int or float
    - Everything else → str
    """
    lower = raw.lower()
    if lower == "true":
        return True
    if lower == "false":
        return False
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        pass
    return raw
