"""Shared test fixtures and factories."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from lensstate.config.models import (
    CleanupConfig,
    LimitsConfig,
    PersistenceConfig,
    StateConfig,
)
from lensstate.state import StateManager
from lensstate.state.types import LensRecord, SessionContext

START_TIME = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Settable clock returning timezone-aware UTC datetimes."""

    def __init__(self, start: datetime = START_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs: Any) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


class FakeMonotonic:
    """Settable stand-in for time.monotonic."""

    def __init__(self, start: float = 0.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value


# =============================================================================
# Configuration Fixtures
# =============================================================================


def build_config(
    location: Path,
    *,
    persistence_type: str = "memory",
    compression: bool = False,
    auto_save_interval: float | None = None,
    cleanup: CleanupConfig | None = None,
    **limits: Any,
) -> StateConfig:
    return StateConfig(
        persistence=PersistenceConfig(
            type=persistence_type,
            location=location,
            compression=compression,
            auto_save_interval=auto_save_interval,
        ),
        limits=LimitsConfig(**limits),
        cleanup=cleanup or CleanupConfig(),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def memory_config(state_dir: Path) -> StateConfig:
    """In-memory backend with background timers disabled."""
    return build_config(state_dir)


@pytest.fixture
def file_config(state_dir: Path) -> StateConfig:
    """File backend rooted in a temporary directory."""
    return build_config(state_dir, persistence_type="file")


# =============================================================================
# Manager Fixtures
# =============================================================================


@pytest.fixture
def manager(memory_config: StateConfig, clock: FakeClock) -> StateManager:
    return StateManager(memory_config, now=clock)


@pytest.fixture
def make_manager(state_dir: Path, clock: FakeClock) -> Callable[..., StateManager]:
    """Factory for managers with custom limits, e.g. ``make_manager(max_sessions=3)``."""

    def _make(**kwargs: Any) -> StateManager:
        return StateManager(build_config(state_dir, **kwargs), now=clock)

    return _make


# =============================================================================
# Data Factories
# =============================================================================


def make_lens(
    prompt: str = "look at it as a jazz standard",
    domains: list[str] | None = None,
    timestamp: datetime = START_TIME,
) -> LensRecord:
    return LensRecord(timestamp=timestamp, prompt=prompt, domains=domains or [])


def make_context(lens_count: int = 0, *, problem: str = "test") -> SessionContext:
    return SessionContext(
        current_problem=problem,
        generated_lenses=[
            make_lens(prompt=f"lens {i:03d}", timestamp=START_TIME + timedelta(minutes=i))
            for i in range(lens_count)
        ],
    )


# =============================================================================
# CLI Test Helpers
# =============================================================================


@pytest.fixture
def cli_runner():
    """Create a Typer CLI test runner with colors disabled."""
    from typer.testing import CliRunner

    return CliRunner(env={"NO_COLOR": "1", "COLUMNS": "200"})
