"""Command-line interface."""

from lensstate.cli.app import app

__all__ = ["app"]
