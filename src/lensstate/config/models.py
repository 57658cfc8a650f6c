"""Configuration models using Pydantic."""

import logging
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from lensstate.config.paths import get_state_path

logger = logging.getLogger(__name__)

PersistenceType = Literal["memory", "file", "redis"]


class PersistenceConfig(BaseModel):
    """Configuration for the durable session store.

    ``redis`` is accepted so configs can name it, but the backend is a
    placeholder that fails on every call.
    """

    type: PersistenceType = "file"
    location: Path = Field(default_factory=get_state_path)
    compression: bool = False
    # Seconds between background saves; None disables the timer
    auto_save_interval: float | None = Field(default=30.0, gt=0)


class LimitsConfig(BaseModel):
    """Resource bounds enforced by the state manager."""

    max_session_age: float = Field(default=7 * 24 * 60 * 60, gt=0)  # seconds
    max_snapshots: int = Field(default=50, gt=0)
    max_context_size: int = Field(default=100 * 1024, gt=0)  # bytes
    max_sessions: int = Field(default=1000, gt=0)


class CleanupConfig(BaseModel):
    """Inactivity sweep settings."""

    inactive_threshold: float = Field(default=60 * 60, gt=0)  # seconds
    run_interval: float = Field(default=15 * 60, gt=0)  # seconds


class ContextLimitsConfig(BaseModel):
    """Per-collection caps applied when merging or reconstructing context."""

    max_lenses: int = Field(default=100, gt=0)
    max_evolution_chains: int = Field(default=50, gt=0)
    max_hybrid_attempts: int = Field(default=100, gt=0)
    # Fraction of max_context_size at which the context-limit hook warns
    context_warning_ratio: float = Field(default=0.9, gt=0, le=1)


class AnalyticsConfig(BaseModel):
    """Tuning knobs for session analytics."""

    sample_window_size: int = Field(default=20, gt=0)
    success_threshold: float = Field(default=0.7, ge=0, le=1)


class StateConfig(BaseModel):
    """Root configuration model."""

    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)
    context: ContextLimitsConfig = Field(default_factory=ContextLimitsConfig)
    analytics: AnalyticsConfig = Field(default_factory=AnalyticsConfig)

    @model_validator(mode="after")
    def _check_cleanup_window(self) -> "StateConfig":
        """Warn when sessions would outlive the maximum session age."""
        if self.cleanup.inactive_threshold > self.limits.max_session_age:
            logger.warning(
                "Inactive threshold (%ss) exceeds max session age (%ss); "
                "the age-based cleanup will win.",
                self.cleanup.inactive_threshold,
                self.limits.max_session_age,
            )
        return self
