"""Configuration commands."""

from pathlib import Path

import typer

from lensstate.cli.console import console, dim, error

app = typer.Typer(
    name="config",
    help="Inspect configuration.",
    no_args_is_help=True,
)


def register(root: typer.Typer) -> None:
    root.add_typer(app, name="config")


@app.command("show")
def show_cmd(ctx: typer.Context) -> None:
    """Print the effective configuration (file + defaults + environment)."""
    from pydantic import ValidationError

    from lensstate.config import load_config
    from lensstate.config.loader import _get_default_config_paths

    obj = ctx.find_root().obj
    config_path: Path | None = obj.get("config_path") if isinstance(obj, dict) else None

    try:
        config = load_config(config_path)
    except FileNotFoundError as e:
        error(str(e))
        raise typer.Exit(1) from None
    except ValidationError as e:
        error(f"Invalid configuration:\n{e}")
        raise typer.Exit(1) from None

    if config_path is not None:
        dim(f"Config file: {config_path}")
    else:
        found = next((p for p in _get_default_config_paths() if p.expanduser().exists()), None)
        dim(f"Config file: {found}" if found else "Config file: none (using defaults)")

    console.print_json(config.model_dump_json())
