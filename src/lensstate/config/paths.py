"""Centralized path management for lensstate.

All state (config, persisted sessions, logs) is stored under a single base
directory. The base directory can be overridden with the LENSSTATE_HOME
environment variable.

Default locations:
- Linux/macOS: ~/.lensstate
- Windows: %USERPROFILE%\\.lensstate
"""

import os
from functools import lru_cache
from pathlib import Path

ENV_VAR = "LENSSTATE_HOME"


@lru_cache(maxsize=1)
def get_lensstate_home() -> Path:
    """Get the base directory for all lensstate data.

    Resolution order:
    1. LENSSTATE_HOME environment variable (if set)
    2. Platform default (~/.lensstate)

    Returns:
        Path to the lensstate home directory.
    """
    if env_home := os.environ.get(ENV_VAR):
        return Path(env_home).expanduser().resolve()

    return Path.home() / ".lensstate"


def get_config_path() -> Path:
    """Get the default config file path."""
    return get_lensstate_home() / "config.toml"


def get_state_path() -> Path:
    """Get the default file-backend storage directory."""
    return get_lensstate_home() / "state"


def get_logs_path() -> Path:
    """Get the JSONL log directory."""
    return get_lensstate_home() / "logs"
