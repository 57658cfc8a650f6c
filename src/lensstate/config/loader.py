"""Configuration loading from TOML files and environment variables."""

import os
import tomllib
from pathlib import Path
from typing import Any

from lensstate.config.models import StateConfig
from lensstate.config.paths import get_config_path


def _get_default_config_paths() -> list[Path]:
    """Get ordered list of default config file locations."""
    return [
        Path("lensstate.toml"),  # Current directory
        get_config_path(),  # ~/.lensstate/config.toml (or LENSSTATE_HOME)
        Path("/etc/lensstate/config.toml"),  # System-wide
    ]


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    """Overlay persistence settings from the environment.

    Environment values win over the file so deployments can repoint storage
    without editing config.
    """
    persistence = config.setdefault("persistence", {})

    if backend := os.environ.get("PERSISTENCE_TYPE"):
        persistence["type"] = backend
    if location := os.environ.get("STATE_LOCATION"):
        persistence["location"] = location
    if (compression := os.environ.get("ENABLE_COMPRESSION")) is not None:
        persistence["compression"] = compression.strip().lower() == "true"

    return config


def load_config(path: Path | None = None) -> StateConfig:
    """Load configuration from a TOML file.

    Args:
        path: Explicit path to config file. If None, searches default locations
            and falls back to built-in defaults when none exists.

    Returns:
        Validated StateConfig instance.

    Raises:
        FileNotFoundError: If an explicit path does not exist.
        ValueError: If config file is invalid.
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path).expanduser()
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        for default_path in _get_default_config_paths():
            expanded = default_path.expanduser()
            if expanded.exists():
                config_path = expanded
                break

    raw_config: dict[str, Any] = {}
    if config_path is not None:
        with config_path.open("rb") as f:
            raw_config = tomllib.load(f)

    raw_config = _apply_env_overrides(raw_config)

    return StateConfig.model_validate(raw_config)


def get_default_config() -> StateConfig:
    """Get a default configuration for development/testing."""
    return StateConfig()
