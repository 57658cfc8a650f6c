"""Main CLI application."""

from pathlib import Path
from typing import Annotated

import typer

from lensstate.cli.commands import config, sessions

app = typer.Typer(
    name="lensstate",
    help="lensstate - creative session state manager",
    no_args_is_help=True,
)


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Path to configuration file",
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-v",
            help="Enable debug logging",
        ),
    ] = False,
) -> None:
    """Inspect and manage persisted creative sessions."""
    if verbose:
        from lensstate.logging import configure_logging

        configure_logging("DEBUG", use_rich=True)
    ctx.obj = {"config_path": config_path}


config.register(app)
sessions.register(app)
