"""User configuration management for RMM-CLI."""

import json
import os
from pathlib import Path
from typing import Optional

from .core.env import EnvConfig


def _config_dir():
    return os.environ.get("RMM_CONFIG_DIR") or os.path.expanduser("~/.rmm")


def _config_file():
    return os.path.join(_config_dir(), "config.json")


def ensure_config_exists():
    """Ensure the configuration directory and file exist."""
    config_dir = _config_dir()
    if not os.path.exists(config_dir):
        os.makedirs(config_dir)

    config_file = _config_file()
    if not os.path.exists(config_file):
        with open(config_file, "w") as f:
            json.dump({}, f)


def get_config():
    """Get the current configuration.

    Returns:
        dict: Current configuration.
    """
    ensure_config_exists()
    with open(_config_file(), "r") as f:
        return json.load(f)


def update_config(updates):
    """Update the configuration with new values.

    Args:
        updates (dict): Dictionary of configuration values to update.
    """
    config = get_config()
    config.update(updates)

    with open(_config_file(), "w") as f:
        json.dump(config, f, indent=2, sort_keys=True)


def _peek_config():
    """Read the configuration without creating it."""
    config_file = _config_file()
    if not os.path.exists(config_file):
        return {}
    with open(config_file, "r") as f:
        return json.load(f)


def get_cache_dir(env_config: Optional[EnvConfig] = None) -> Path:
    """Get the artifact cache directory.

    The user configuration wins over RMM_CACHE_DIR and the default.
    """
    configured = _peek_config().get("cache_dir")
    if configured:
        return Path(configured).expanduser()
    return (env_config or EnvConfig.from_env()).cache_dir


def get_workers(env_config: Optional[EnvConfig] = None) -> int:
    """Get the size of the worker pool used for parallel fetches."""
    configured = _peek_config().get("workers")
    if isinstance(configured, int) and configured > 0:
        return configured
    return (env_config or EnvConfig.from_env()).workers
