"""Configuration management."""

from lensstate.config.loader import get_default_config, load_config
from lensstate.config.models import (
    AnalyticsConfig,
    CleanupConfig,
    ContextLimitsConfig,
    LimitsConfig,
    PersistenceConfig,
    StateConfig,
)

__all__ = [
    "AnalyticsConfig",
    "CleanupConfig",
    "ContextLimitsConfig",
    "LimitsConfig",
    "PersistenceConfig",
    "StateConfig",
    "get_default_config",
    "load_config",
]
