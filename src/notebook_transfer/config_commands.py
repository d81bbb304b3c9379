"""Configuration commands for the nbt CLI."""

from typing import Any

import yaml
from cyclopts import App

from notebook_transfer.config import DEFAULTS, KNOWN_KEYS, get_config

config_app = App(name="config", help="Manage configuration")


def _check_key(key: str) -> None:
    if key not in KNOWN_KEYS:
        raise ValueError(f"Unknown config key '{key}'. Known keys: {', '.join(KNOWN_KEYS)}")


def _parse_value(value: str) -> Any:
    """Store YAML scalars typed, so `true` and `25` read back as bool and int."""
    try:
        parsed = yaml.safe_load(value)
    except yaml.YAMLError:
        return value
    return parsed if isinstance(parsed, (bool, int, float, str)) else value


@config_app.command
def set(key: str, value: str, global_: bool = False) -> None:
    """Set a configuration setting.

    Args:
        key: Configuration key, e.g. store.path or import.error_threshold
        value: Configuration value
        global_: If True, set in global config. If False, set in local config.
    """
    _check_key(key)
    config = get_config(use_global=global_)
    config.set(key, _parse_value(value))
    scope = "global" if global_ else "local"
    print(f"Set {key} = {value} ({scope})")


@config_app.command
def unset(key: str, global_: bool = False) -> None:
    """Unset a configuration setting.

    Args:
        key: Configuration key
        global_: If True, unset from global config. If False, unset from local config.
    """
    config = get_config(use_global=global_)
    config.unset(key)
    scope = "global" if global_ else "local"
    print(f"Unset {key} ({scope})")


@config_app.command
def get(key: str, global_: bool = False) -> None:
    """Get the value of a configuration setting, falling back to the built-in default.

    Args:
        key: Configuration key
        global_: If True, get from global config only. If False, get with global fallback.
    """
    config = get_config(use_global=global_)
    value = config.get(key)
    if value is None:
        print(f"{key} is not set")
    elif key in DEFAULTS and key not in config.list():
        print(f"{key} = {value} (default)")
    else:
        print(f"{key} = {value}")


@config_app.command(name="list")
def list_config(global_: bool = False, defaults: bool = False) -> None:
    """List all configuration settings.

    Args:
        global_: If True, list global config only. If False, list merged config.
        defaults: Also show built-in defaults for keys that are not set.
    """
    config = get_config(use_global=global_)
    settings = config.list()
    unset_defaults = {k: v for k, v in DEFAULTS.items() if k not in settings} if defaults else {}

    if not settings and not unset_defaults:
        scope = "global" if global_ else "local"
        print(f"No {scope} configuration settings")
        return

    print(f"{'Global' if global_ else 'Configuration'} settings:\n")
    for key, value in settings.items():
        print(f"{key} = {value}")
    for key, value in unset_defaults.items():
        print(f"{key} = {value} (default)")
