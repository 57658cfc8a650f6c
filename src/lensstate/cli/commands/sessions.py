"""Session management commands."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer

from lensstate.cli.console import console, dim, error, success, warning

if TYPE_CHECKING:
    from lensstate.state import StateManager

app = typer.Typer(
    name="sessions",
    help="Inspect and manage stored creative sessions.",
    no_args_is_help=True,
)


def register(root: typer.Typer) -> None:
    root.add_typer(app, name="sessions")


def _run(coro) -> None:
    """Run an async session operation, turning state errors into exit 1."""
    from lensstate.state import StateError

    try:
        asyncio.run(coro)
    except StateError as e:
        error(str(e))
        raise typer.Exit(1) from None


def _config_path(ctx: typer.Context) -> Path | None:
    obj = ctx.find_root().obj
    return obj.get("config_path") if isinstance(obj, dict) else None


async def _open_manager(config_path: Path | None) -> StateManager:
    from lensstate.config import load_config
    from lensstate.state import StateManager

    try:
        config = load_config(config_path)
    except FileNotFoundError as e:
        error(str(e))
        raise typer.Exit(1) from None

    manager = StateManager(config)
    await manager.initialize(start_timers=False)
    return manager


async def _save(manager: StateManager) -> None:
    if not await manager.save_state():
        error("Failed to save state; see logs for details")
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


@app.command("list")
def list_cmd(
    ctx: typer.Context,
    user: Annotated[
        str | None, typer.Option("--user", "-u", help="Filter by user ID")
    ] = None,
) -> None:
    """List stored sessions, most recently active first."""
    _run(_sessions_list(_config_path(ctx), user_id=user))


@app.command("show")
def show_cmd(
    ctx: typer.Context,
    session_id: Annotated[str, typer.Argument(help="Session ID")],
) -> None:
    """Print a session as JSON."""
    _run(_sessions_show(_config_path(ctx), session_id))


@app.command("report")
def report_cmd(
    ctx: typer.Context,
    session_id: Annotated[str, typer.Argument(help="Session ID")],
) -> None:
    """Summarize a session's creative output."""
    _run(_sessions_report(_config_path(ctx), session_id))


@app.command("health")
def health_cmd(
    ctx: typer.Context,
    session_id: Annotated[str, typer.Argument(help="Session ID")],
) -> None:
    """Show a session's health score and issues."""
    _run(_sessions_health(_config_path(ctx), session_id))


@app.command("snapshots")
def snapshots_cmd(
    ctx: typer.Context,
    session_id: Annotated[str, typer.Argument(help="Session ID")],
) -> None:
    """List a session's snapshots and verify their checksums."""
    _run(_sessions_snapshots(_config_path(ctx), session_id))


@app.command("export")
def export_cmd(
    ctx: typer.Context,
    session_id: Annotated[str, typer.Argument(help="Session ID")],
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Write to file instead of stdout"),
    ] = None,
) -> None:
    """Export a session with its snapshots and report."""
    _run(_sessions_export(_config_path(ctx), session_id, output))


@app.command("import")
def import_cmd(
    ctx: typer.Context,
    path: Annotated[
        Path,
        typer.Argument(help="Export file", exists=True, dir_okay=False, readable=True),
    ],
) -> None:
    """Import an exported session under a new ID."""
    _run(_sessions_import(_config_path(ctx), path))


@app.command("delete")
def delete_cmd(
    ctx: typer.Context,
    session_id: Annotated[str, typer.Argument(help="Session ID")],
    force: Annotated[
        bool, typer.Option("--force", "-f", help="Skip confirmation")
    ] = False,
) -> None:
    """Delete a session and all of its snapshots."""
    _run(_sessions_delete(_config_path(ctx), session_id, force))


@app.command("cleanup")
def cleanup_cmd(
    ctx: typer.Context,
    older_than: Annotated[
        float | None,
        typer.Option(
            "--older-than",
            help="Inactivity threshold in seconds (default: cleanup.inactive_threshold)",
        ),
    ] = None,
) -> None:
    """Delete sessions idle for longer than the threshold."""
    _run(_sessions_cleanup(_config_path(ctx), older_than))


# ---------------------------------------------------------------------------
# Async implementations
# ---------------------------------------------------------------------------


async def _sessions_list(config_path: Path | None, *, user_id: str | None) -> None:
    from lensstate.cli.console import create_table, format_age

    manager = await _open_manager(config_path)
    sessions = manager.get_all_sessions()
    if user_id is not None:
        sessions = [s for s in sessions if s.user_id == user_id]

    if not sessions:
        warning("No sessions found")
        return

    sessions.sort(key=lambda s: s.last_activity, reverse=True)
    table = create_table(
        "Sessions",
        [
            ("ID", {"style": "cyan", "no_wrap": True}),
            ("User", "green"),
            ("Status", ""),
            ("Generations", {"justify": "right"}),
            ("Last Active", "dim"),
        ],
    )
    for session in sessions:
        table.add_row(
            session.id,
            session.user_id,
            manager.get_session_status(session.id).value,
            str(session.metrics.total_generations),
            format_age(session.last_activity),
        )
    console.print(table)
    dim(f"{len(sessions)} session(s)")


async def _sessions_show(config_path: Path | None, session_id: str) -> None:
    import json

    from lensstate.state import SessionNotFoundError

    manager = await _open_manager(config_path)
    session = manager.get_session(session_id)
    if session is None:
        raise SessionNotFoundError(session_id)
    console.print_json(json.dumps(session.to_dict()))


async def _sessions_report(config_path: Path | None, session_id: str) -> None:
    manager = await _open_manager(config_path)
    report = manager.get_session_report(session_id)
    summary = report.summary

    console.print(f"[bold]Session {report.session_id}[/bold]")
    console.print(f"Duration: {int(report.duration)}s")
    console.print(f"Ideas generated: {summary.total_ideas_generated}")
    console.print(f"Average madness: {summary.average_creativity:.1f}")
    console.print(f"Peak madness: {summary.peak_madness_level:g}")
    if summary.most_used_domains:
        console.print(f"Top domains: {', '.join(summary.most_used_domains)}")

    if report.highlights:
        console.print("\n[bold]Highlights[/bold]")
        for highlight in report.highlights:
            console.print(f"  - {highlight}")
    if report.recommendations:
        console.print("\n[bold]Recommendations[/bold]")
        for recommendation in report.recommendations:
            console.print(f"  - {recommendation}")


async def _sessions_health(config_path: Path | None, session_id: str) -> None:
    manager = await _open_manager(config_path)
    health = manager.get_session_health(session_id)

    color = "green" if health.score >= 80 else "yellow" if health.score >= 50 else "red"
    console.print(f"Health score: [{color}]{health.score}/100[/{color}]")
    if not health.issues:
        success("No issues found")
        return
    for issue in health.issues:
        warning(f"  - {issue}")


async def _sessions_snapshots(config_path: Path | None, session_id: str) -> None:
    from lensstate.cli.console import create_table
    from lensstate.state import SessionNotFoundError

    manager = await _open_manager(config_path)
    if manager.get_session(session_id) is None:
        raise SessionNotFoundError(session_id)

    snapshots = manager.list_snapshots(session_id)
    if not snapshots:
        warning("No snapshots found")
        return

    table = create_table(
        f"Snapshots for {session_id}",
        [
            ("ID", {"style": "cyan", "no_wrap": True}),
            ("Taken", "dim"),
            ("Generations", {"justify": "right"}),
            ("Checksum", ""),
        ],
    )
    for snapshot in snapshots:
        verified = manager.verify_snapshot(snapshot)
        table.add_row(
            snapshot.id,
            snapshot.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            str(snapshot.state.metrics.total_generations),
            "[green]ok[/green]" if verified else "[red]mismatch[/red]",
        )
    console.print(table)


async def _sessions_export(
    config_path: Path | None,
    session_id: str,
    output: Path | None,
) -> None:
    manager = await _open_manager(config_path)
    blob = manager.export_session(session_id)
    if output is None:
        typer.echo(blob)
        return
    await asyncio.to_thread(output.expanduser().write_text, blob, "utf-8")
    success(f"Exported session {session_id} to {output}")


async def _sessions_import(config_path: Path | None, path: Path) -> None:
    manager = await _open_manager(config_path)
    blob = await asyncio.to_thread(path.read_text, "utf-8")
    session = manager.import_session(blob)
    await _save(manager)
    success(f"Imported session {session.id}")


async def _sessions_delete(config_path: Path | None, session_id: str, force: bool) -> None:
    from lensstate.cli.console import confirm_or_cancel
    from lensstate.state import SessionNotFoundError

    manager = await _open_manager(config_path)
    if manager.get_session(session_id) is None:
        raise SessionNotFoundError(session_id)
    if not confirm_or_cancel(f"Delete session {session_id}?", force):
        return
    manager.delete_session(session_id)
    await _save(manager)
    success(f"Deleted session {session_id}")


async def _sessions_cleanup(config_path: Path | None, older_than: float | None) -> None:
    manager = await _open_manager(config_path)
    threshold = older_than if older_than is not None else manager.config.cleanup.inactive_threshold
    removed = manager.cleanup_inactive_sessions(threshold)
    if not removed:
        dim("No inactive sessions")
        return
    await _save(manager)
    success(f"Removed {removed} inactive session(s)")
