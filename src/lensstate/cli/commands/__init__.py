"""CLI command modules."""

from lensstate.cli.commands import config, sessions

__all__ = [
    "config",
    "sessions",
]
