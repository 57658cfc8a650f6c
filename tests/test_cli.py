"""Tests for the lensstate CLI."""

import asyncio
import json

import pytest

from lensstate.cli.app import app
from lensstate.config import load_config
from lensstate.state import StateManager


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    for var in ("PERSISTENCE_TYPE", "STATE_LOCATION", "ENABLE_COMPRESSION"):
        monkeypatch.delenv(var, raising=False)
    path = tmp_path / "lensstate.toml"
    path.write_text(f'[persistence]\ntype = "file"\nlocation = "{tmp_path / "state"}"\n')
    return path


def _seed(config_file, *users: str) -> list[str]:
    """Persist sessions for the given users and return their ids."""

    async def seed() -> list[str]:
        manager = StateManager(load_config(config_file))
        await manager.initialize(start_timers=False)
        ids = []
        for user in users:
            session = manager.create_session(user, f"problem for {user}")
            manager.add_to_context(
                session.id, "lens", {"prompt": "as a beehive", "domains": ["biology"]}
            )
            manager.update_metrics(session.id, "total_generations")
            manager.create_snapshot(session.id)
            ids.append(session.id)
        await manager.save_state()
        return ids

    return asyncio.run(seed())


def _load(config_file) -> StateManager:
    async def load() -> StateManager:
        manager = StateManager(load_config(config_file))
        await manager.load_state()
        return manager

    return asyncio.run(load())


def _invoke(cli_runner, config_file, *args):
    return cli_runner.invoke(app, ["--config", str(config_file), *args])


class TestSessionsCommands:
    def test_list(self, cli_runner, config_file):
        session_id, _ = _seed(config_file, "alice", "bob")

        result = _invoke(cli_runner, config_file, "sessions", "list")

        assert result.exit_code == 0
        assert session_id in result.stdout
        assert "alice" in result.stdout
        assert "bob" in result.stdout

    def test_list_empty(self, cli_runner, config_file):
        result = _invoke(cli_runner, config_file, "sessions", "list")
        assert result.exit_code == 0
        assert "No sessions found" in result.stdout

    def test_show(self, cli_runner, config_file):
        (session_id,) = _seed(config_file, "alice")

        result = _invoke(cli_runner, config_file, "sessions", "show", session_id)

        assert result.exit_code == 0
        assert "problem for alice" in result.stdout

    def test_show_unknown_session(self, cli_runner, config_file):
        result = _invoke(cli_runner, config_file, "sessions", "show", "missing")
        assert result.exit_code == 1
        assert "Session missing not found" in result.stdout

    def test_report_and_health(self, cli_runner, config_file):
        (session_id,) = _seed(config_file, "alice")

        report = _invoke(cli_runner, config_file, "sessions", "report", session_id)
        health = _invoke(cli_runner, config_file, "sessions", "health", session_id)

        assert report.exit_code == 0
        assert "Ideas generated: 1" in report.stdout
        assert "Try exploring more diverse domains" in report.stdout
        assert health.exit_code == 0
        assert "Low domain diversity" in health.stdout

    def test_snapshots(self, cli_runner, config_file):
        (session_id,) = _seed(config_file, "alice")

        result = _invoke(cli_runner, config_file, "sessions", "snapshots", session_id)

        assert result.exit_code == 0
        assert "ok" in result.stdout
        assert "mismatch" not in result.stdout

    def test_export_and_import(self, cli_runner, config_file, tmp_path):
        (session_id,) = _seed(config_file, "alice")
        export_path = tmp_path / "export.json"

        exported = _invoke(
            cli_runner, config_file, "sessions", "export", session_id, "--output", str(export_path)
        )
        assert exported.exit_code == 0
        assert json.loads(export_path.read_text())["version"] == "1.0.0"

        imported = _invoke(cli_runner, config_file, "sessions", "import", str(export_path))
        assert imported.exit_code == 0
        assert "Imported session" in imported.stdout

        users = sorted(s.user_id for s in _load(config_file).get_all_sessions())
        assert users == ["alice", "alice"]

    def test_export_to_stdout(self, cli_runner, config_file):
        (session_id,) = _seed(config_file, "alice")

        result = _invoke(cli_runner, config_file, "sessions", "export", session_id)

        assert result.exit_code == 0
        assert json.loads(result.stdout)["session"]["user_id"] == "alice"

    def test_import_rejects_bad_file(self, cli_runner, config_file, tmp_path):
        bad = tmp_path / "bad.json"
        bad.write_text('{"session": {}}')

        result = _invoke(cli_runner, config_file, "sessions", "import", str(bad))

        assert result.exit_code == 1
        assert "version" in result.stdout

    def test_delete(self, cli_runner, config_file):
        keep, drop = _seed(config_file, "alice", "bob")

        result = _invoke(cli_runner, config_file, "sessions", "delete", drop, "--force")

        assert result.exit_code == 0
        remaining = [s.id for s in _load(config_file).get_all_sessions()]
        assert remaining == [keep]

    def test_delete_unknown(self, cli_runner, config_file):
        result = _invoke(cli_runner, config_file, "sessions", "delete", "missing", "--force")
        assert result.exit_code == 1

    def test_cleanup(self, cli_runner, config_file):
        _seed(config_file, "alice")

        kept = _invoke(cli_runner, config_file, "sessions", "cleanup")
        assert kept.exit_code == 0
        assert "No inactive sessions" in kept.stdout

        removed = _invoke(cli_runner, config_file, "sessions", "cleanup", "--older-than=-1")
        assert removed.exit_code == 0
        assert "Removed 1 inactive session(s)" in removed.stdout
        assert _load(config_file).get_all_sessions() == []


class TestConfigCommand:
    def test_show(self, cli_runner, config_file):
        result = _invoke(cli_runner, config_file, "config", "show")

        assert result.exit_code == 0
        data = json.loads(result.stdout[result.stdout.index("{") :])
        assert data["persistence"]["type"] == "file"
        assert data["limits"]["max_sessions"] == 1000

    def test_missing_config(self, cli_runner, tmp_path):
        result = cli_runner.invoke(app, ["--config", str(tmp_path / "nope.toml"), "config", "show"])
        assert result.exit_code == 1
        assert "Config file not found" in result.stdout
